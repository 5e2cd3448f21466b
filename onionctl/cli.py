#!/usr/bin/env python
# See LICENSE for licensing information

import argparse
import logging
import os
import sys

from twisted.internet import defer, reactor, task

from onionctl.config import (load_config, read_file, check_port_map,
                             strip_onion_str, check_onion_address,
                             AUTH_METHODS)
from onionctl.connection import (listen, stopListening,
                                 validate_connection_config)
from onionctl.errors import ControlError, ControlFileError
from onionctl.log import log_error
from onionctl.onion import read_onion
from onionctl.protocol import (TorControlProtocol, TorControlServerFactory,
                               connect_control_config,
                               ONIONCTL_SHORT_VERSION_STRING)

# An arbitrary limit: RSA1024 keys are about 900 bytes
KEY_FILE_MAX_LENGTH = 4096

def main(argv=None):
    ap = argparse.ArgumentParser(description="Manages tor hidden services using the tor control port")
    add_onionctl_args(ap)
    args = ap.parse_args(argv)
    set_logging(args.verbose)
    if args.command == 'emulate':
        return run_emulate(args)
    task.react(run_onionctl, (args,))

def set_logging(verbose):
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    logging.root.name = ''

def parse_port_mapping(mapping):
    '''
    Parse a VPORT:ADDR argument into a (virtual port, target) tuple.
    A bare VPORT forwards to the same port on localhost.
    '''
    virt_port, _, target = mapping.partition(':')
    if len(target) == 0:
        target = virt_port
    if not check_port_map({ virt_port : target }):
        raise argparse.ArgumentTypeError(
            "invalid port mapping '{}', expected VPORT:ADDR".format(mapping))
    return (int(virt_port), target)

def get_overrides(args):
    '''
    Turn the control port and authentication arguments into config
    overrides for load_config.
    '''
    overrides = { 'control' : {}, 'auth' : {} }
    if args.control_unix is not None:
        overrides['control']['unix'] = args.control_unix
    elif args.control_port is not None:
        overrides['control']['port'] = args.control_port
        if args.control_ip is not None:
            overrides['control']['ip'] = args.control_ip
    if args.auth is not None:
        overrides['auth']['method'] = args.auth
    if args.control_password is not None:
        overrides['auth']['password_file'] = args.control_password
    if args.control_cookie_file is not None:
        overrides['auth']['cookie_file'] = args.control_cookie_file
    return overrides

def get_password(auth_conf):
    '''
    Return the inline password, the contents of the password file, or None.
    Raises ControlFileError if the password file can not be read.
    '''
    if auth_conf.get('password') is not None:
        return str(auth_conf['password'])
    if auth_conf.get('password_file') is not None:
        return TorControlProtocol.readPasswordFile(auth_conf['password_file'])
    return None

def authenticate_control(control, auth_conf):
    '''
    Authenticate control using the configured method.
    Returns a Deferred.
    '''
    method = auth_conf['method']
    cookie_file = auth_conf.get('cookie_file')
    if method == 'password':
        return control.passwordAuthenticate(get_password(auth_conf))
    elif method == 'cookie':
        return control.cookieAuthenticate(cookie_file)
    elif method == 'safecookie':
        return control.safeCookieAuthenticate(cookie_file)
    return control.authenticate(password=get_password(auth_conf),
                                cookie_path=cookie_file)

def get_service_ports(args, config):
    '''
    Return the port map for the create command: the -P arguments, or the
    ports configured for the service directory.
    '''
    if args.ports:
        return dict(args.ports)
    service_dir = os.path.abspath(os.path.expanduser(args.dir))
    for hs_conf in config['hidden_services']:
        if hs_conf['dir'] == service_dir:
            return hs_conf['ports']
    return None

def write_key_file(key_file, private_key):
    '''
    Write private_key to key_file, readable only by the current user.
    Raises ControlFileError if writing the file fails.
    '''
    try:
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, 'w') as f:
            f.write(private_key + '\n')
    except (IOError, OSError) as e:
        raise ControlFileError("writing key file '{}' failed with error: {}"
                               .format(key_file, e))

def read_key_file(key_file):
    return read_file(key_file, 1, KEY_FILE_MAX_LENGTH, binary=False).strip()

@defer.inlineCallbacks
def perform_command(control, args, config):
    '''
    Run the hidden service command in args using the authenticated
    connection control.
    Returns a Deferred that fires with the text to output.
    '''
    if args.command == 'create':
        ports = get_service_ports(args, config)
        if ports is None:
            raise ControlError("no ports given or configured for '{}'"
                               .format(args.dir))
        yield control.createHiddenService(args.dir, ports)
        return "created hidden service in {}".format(args.dir)
    elif args.command == 'delete':
        yield control.deleteHiddenService(args.dir)
        return "deleted hidden service in {}".format(args.dir)
    elif args.command == 'add-ephemeral':
        result = yield control.createEphemeralHiddenService(args.port,
                                                            args.destination)
        if result.service_id is None or result.private_key is None:
            raise ControlError("tor did not return the new hidden service's "
                               "address and key: {!r}".format(result))
        if args.key_file is not None:
            write_key_file(args.key_file, result.private_key)
            return result.onion_address
        return "{}\n{}".format(result.onion_address, result.private_key)
    elif args.command == 'restart-ephemeral':
        private_key = read_key_file(args.key_file)
        result = yield control.restartEphemeralHiddenService(
            private_key, args.port, args.destination)
        if result.service_id is None:
            return "hidden service is already running"
        return result.onion_address
    raise ValueError("unknown command '{}'".format(args.command))

@defer.inlineCallbacks
def run_onionctl(_reactor, args):
    '''
    Connect, authenticate, and run the command in args.
    Exits with status 1 on any error.
    '''
    config = load_config(args.config, overrides=get_overrides(args))
    if config is None or not validate_connection_config(config['control'],
                                                        allow_hostname=True):
        logging.error("invalid onionctl configuration")
        raise SystemExit(1)
    try:
        if args.command == 'read-onion':
            output = read_onion(args.dir)
            if not check_onion_address(strip_onion_str(output)):
                logging.warning("hostname file in '{}' does not look like an onion address"
                                .format(args.dir))
        else:
            control = yield connect_control_config(config['control'],
                                                   reactor=_reactor)
            try:
                yield authenticate_control(control, config['auth'])
                output = yield perform_command(control, args, config)
            finally:
                yield control.quit()
    except ControlError as e:
        logging.error("{} failed: {}: {}"
                      .format(args.command, type(e).__name__, e))
        log_error()
        raise SystemExit(1)
    print(output.rstrip('\n'))

def run_emulate(args):
    '''
    Run a tor control port emulator on the configured control port, until
    interrupted.
    '''
    config = load_config(args.config, overrides=get_overrides(args))
    if config is None:
        logging.error("invalid onionctl configuration")
        return 1
    try:
        factory = TorControlServerFactory(
            password=get_password(config['auth']),
            cookie_file=config['auth'].get('cookie_file'))
    except ControlFileError:
        log_error()
        return 1
    listeners = listen(factory, config['control'])
    if len(listeners) == 0:
        logging.error("could not listen on {}".format(config['control']))
        return 1
    logging.info("emulating a tor control port on {}"
                 .format(config['control']))
    reactor.addSystemEventTrigger('before', 'shutdown', stopListening,
                                  listeners)
    reactor.run()
    return 0

def add_onionctl_args(parser):
    parser.add_argument('--version', action='version',
                        version='%(prog)s ' + ONIONCTL_SHORT_VERSION_STRING)
    parser.add_argument('-c', '--config',
                        help="a YAML config file with an onionctl section (default: no config file)",
                        required=False)
    control_group = parser.add_mutually_exclusive_group()
    control_group.add_argument('-u', '--unix', dest='control_unix',
                               help="Unix socket path of the tor control port",
                               required=False)
    control_group.add_argument('-p', '--port', dest='control_port',
                               help="IP port of the tor control port (default: 9051)",
                               type=int,
                               required=False)
    parser.add_argument('-i', '--ip', dest='control_ip',
                        help="IPv4 or IPv6 address of the tor control port (default: 127.0.0.1)",
                        required=False)
    parser.add_argument('--auth',
                        help="authentication method (default: auto, the best method tor offers)",
                        choices=AUTH_METHODS,
                        required=False)
    parser.add_argument('--control-password',
                        help="A file containing the tor control password. Set this in tor using tor --hash-password and HashedControlPassword")
    parser.add_argument('--control-cookie-file',
                        help="The tor control cookie file. Set this in tor using CookieAuthentication and CookieAuthFile")
    parser.add_argument('-v', '--verbose',
                        action='store_true',
                        help="log every control port line (secrets are scrubbed)")

    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    create_parser = subparsers.add_parser('create',
                        help="configure a persistent hidden service")
    create_parser.add_argument('dir',
                        help="the hidden service directory")
    create_parser.add_argument('-P', '--port', dest='ports',
                        action='append',
                        type=parse_port_mapping,
                        metavar='VPORT:ADDR',
                        help="forward virtual port VPORT to ADDR, may be repeated (default: the ports configured for dir)")

    delete_parser = subparsers.add_parser('delete',
                        help="remove a persistent hidden service from tor's configuration")
    delete_parser.add_argument('dir',
                        help="the hidden service directory")

    read_parser = subparsers.add_parser('read-onion',
                        help="print the hostname of a persistent hidden service")
    read_parser.add_argument('dir',
                        help="the hidden service directory")

    add_parser = subparsers.add_parser('add-ephemeral',
                        help="create an ephemeral hidden service with a new key")
    add_parser.add_argument('port',
                        help="the virtual port")
    add_parser.add_argument('destination',
                        help="the target address, like 127.0.0.1:8080")
    add_parser.add_argument('-k', '--key-file',
                        help="write the private key to this file, rather than printing it")

    restart_parser = subparsers.add_parser('restart-ephemeral',
                        help="restart an ephemeral hidden service using a saved key")
    restart_parser.add_argument('key_file',
                        help="a file containing the private key")
    restart_parser.add_argument('port',
                        help="the virtual port")
    restart_parser.add_argument('destination',
                        help="the target address, like 127.0.0.1:8080")

    subparsers.add_parser('emulate',
                        help="run a tor control port emulator, for testing")

if __name__ == "__main__":
    sys.exit(main())
