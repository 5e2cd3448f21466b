# See LICENSE for licensing information

import ipaddress
import logging

from os import path

import yaml

from onionctl.errors import ControlFileError
from onionctl.log import log_error

AUTH_METHODS = ['auto', 'password', 'cookie', 'safecookie']

# The default control port listed in the tor manual
DEFAULT_CONTROL_PORT = 9051

def normalise_path(path_str):
    '''
    Return the abolute path corresponding to path_str, with user directories
    expanded, and the current working directory assumed for relative paths
    '''
    expanded_path = path.expanduser(path_str)
    return path.abspath(expanded_path)

def read_file(secret_file, min_len, max_len, binary=True):
    '''
    Read a value between min_len and max_len bytes long from secret_file.
    Return the value read from the file, as bytes if binary is True, and
    UTF-8 text otherwise. Line endings are returned unchanged.
    Raises ControlFileError if reading from the file fails, the value is
    not an acceptable length, or the text is not valid UTF-8.
    '''
    try:
        with open(secret_file, 'rb') as f:
            # Read one more byte to check that the file is actually
            # the right length
            secret_string = f.read(max_len + 1)
    except (IOError, OSError) as e:
        raise ControlFileError("reading file '{}' failed with error: {}"
                               .format(secret_file, e))
    if len(secret_string) < min_len:
        raise ControlFileError("file '{}' was wrong length {}, wanted at least {}"
                               .format(secret_file, len(secret_string),
                                       min_len))
    if len(secret_string) > max_len:
        raise ControlFileError("file '{}' was wrong length, wanted at most {}"
                               .format(secret_file, max_len))
    if binary:
        return secret_string
    try:
        return secret_string.decode('utf-8')
    except UnicodeDecodeError as e:
        raise ControlFileError("file '{}' is not valid UTF-8 text: {}"
                               .format(secret_file, e))

def strip_onion_str(onion_str):
    '''
    Strip onion_str of:
    * all non-domain URL components, and
    * all non-onion-address domain components.

    And return the resulting string, lowercased.
    If stripping removes the entire string, returns an empty string.
    '''
    onion_str = onion_str.strip()
    # remove the url scheme
    if '://' in onion_str:
        _, _, onion_str = onion_str.partition('://')
    # find the domain component
    # take the first non-empty string after splitting on slashes
    onion_url_components = onion_str.split('/')
    for onion_str in onion_url_components:
        if len(onion_str) > 0:
            break
    # remove any port
    onion_str, _, _ = onion_str.partition(':')
    # find the onion address itself
    # take the last non-empty, non-"onion" string after splitting on dots
    onion_domain_components = onion_str.split('.')
    for onion_str in reversed(onion_domain_components):
        if len(onion_str) == 0 or onion_str == "onion":
            continue
        else:
            return onion_str.lower()
    # if there is nothing left, return an empty string
    return ""

# v2 addresses are 16 characters, v3 addresses are 56
ONION_ADDRESS_LENGTHS = [16, 56]

def check_onion_address(onion_str, check_length=True):
    '''
    Check if onion_str is a potentially valid onion address.
    Assumes that the string has already been stripped using strip_onion_str().

    That is, onion_str should be a 16 or 56-character base32 string.
    If check_length is False, only the character set is checked.

    Returns True if it is valid, and False if it is not.
    '''
    # We check character sets and length
    onion_str = onion_str.lower()
    # RFC 4648, as implemented in tor
    bad_chars = onion_str.strip("abcdefghijklmnopqrstuvwxyz234567")
    if len(bad_chars) != 0 or len(onion_str) == 0:
        return False
    return not check_length or len(onion_str) in ONION_ADDRESS_LENGTHS

def validate_ip_address(address):
    '''
    If address is a valid IP address, return it as an ipaddress object.
    Otherwise, return None.
    '''
    try:
        return ipaddress.ip_address(str(address))
    except ValueError:
        return None

def check_port_map(port_map):
    '''
    Check that port_map is a dictionary of virtual ports to non-empty target
    addresses.
    Returns True if it is valid, and False if it is not.
    '''
    if not isinstance(port_map, dict) or len(port_map) == 0:
        return False
    for virt_port, target in port_map.items():
        try:
            virt_port = int(virt_port)
        except (TypeError, ValueError):
            return False
        if virt_port <= 0 or virt_port > 65535:
            return False
        if target is None or len(str(target).strip()) == 0:
            return False
    return True

def load_config(config_filepath=None, overrides=None):
    '''
    Read the onionctl section of the YAML config file at config_filepath
    (or start with an empty section if it is None), apply overrides, fill in
    defaults, and check it.
    overrides is a dictionary: its control section replaces the file's, and
    its auth section is merged into the file's.
    Returns the config dictionary, or None if the file can not be read, or
    the config is invalid.
    '''
    try:
        logging.debug("reading config file from '%s'", config_filepath)

        # read in the config from the given path
        if config_filepath is None:
            conf = { 'onionctl' : {} }
        else:
            with open(config_filepath, 'r') as fin:
                conf = yaml.safe_load(fin)
        assert isinstance(conf, dict)
        oc_conf = conf['onionctl']
        if oc_conf is None:
            oc_conf = {}
        assert isinstance(oc_conf, dict)

        overrides = overrides or {}
        if overrides.get('control'):
            oc_conf['control'] = dict(overrides['control'])
        if overrides.get('auth'):
            oc_conf.setdefault('auth', {})
            assert isinstance(oc_conf['auth'], dict)
            oc_conf['auth'].update(overrides['auth'])

        oc_conf.setdefault('control', { 'port' : DEFAULT_CONTROL_PORT })
        assert isinstance(oc_conf['control'], dict)
        if 'unix' in oc_conf['control']:
            oc_conf['control']['unix'] = normalise_path(
                oc_conf['control']['unix'])

        oc_conf.setdefault('auth', {})
        auth_conf = oc_conf['auth']
        assert isinstance(auth_conf, dict)
        auth_conf.setdefault('method', 'auto')
        auth_conf['method'] = str(auth_conf['method']).lower()
        assert auth_conf['method'] in AUTH_METHODS
        for file_key in ['password_file', 'cookie_file']:
            if auth_conf.get(file_key) is not None:
                auth_conf[file_key] = normalise_path(auth_conf[file_key])
        if auth_conf['method'] == 'password':
            assert ('password_file' in auth_conf or
                    'password' in auth_conf)
        if auth_conf['method'] in ['cookie', 'safecookie']:
            assert 'cookie_file' in auth_conf

        oc_conf.setdefault('hidden_services', [])
        assert isinstance(oc_conf['hidden_services'], list)
        for hs_conf in oc_conf['hidden_services']:
            assert isinstance(hs_conf, dict)
            hs_conf['dir'] = normalise_path(hs_conf['dir'])
            assert check_port_map(hs_conf['ports'])
            hs_conf['ports'] = dict((int(virt_port), str(target))
                                    for virt_port, target
                                    in hs_conf['ports'].items())

        logging.debug("using config = %s", str(_scrub_config(oc_conf)))
        return oc_conf

    except (IOError, OSError, yaml.YAMLError):
        logging.warning("problem reading config file '{}'"
                        .format(config_filepath))
        log_error()
    except AssertionError:
        logging.warning("problem reading config file: invalid data")
        log_error()
    except KeyError:
        logging.warning("problem reading config file: missing required keys")
        log_error()
    return None

def _scrub_config(oc_conf):
    '''
    Return a shallow copy of oc_conf without any inline password.
    '''
    scrubbed = dict(oc_conf)
    if 'password' in scrubbed.get('auth', {}):
        scrubbed['auth'] = dict(scrubbed['auth'])
        scrubbed['auth']['password'] = '[scrubbed]'
    return scrubbed
