# See LICENSE for licensing information

'''
Hidden service results, and the parsing of hidden service replies and files.

ADD_ONION replies look like:
  250-ServiceID=<onion address without .onion>
  250-PrivateKey=<key type>:<key blob>
  250 OK
(PrivateKey is only present when tor generated the key.)
'''

from os import path

from onionctl.config import read_file, check_onion_address
from onionctl.errors import ProtocolError

HOSTNAME_FILE_NAME = 'hostname'
# Generous: a v3 hostname is 62 characters plus a newline
HOSTNAME_FILE_MAX_LENGTH = 1024

NEW_KEY_SPEC = 'NEW:BEST'
DEFAULT_KEY_TYPE = 'ED25519-V3'

SERVICE_ID_KEY = 'ServiceID'
PRIVATE_KEY_KEY = 'PrivateKey'

class OnionResult(object):
    '''
    The onion service identifier and (optional) private key returned by tor.
    Absent fields are None.
    '''

    def __init__(self, service_id=None, key_type=None, key_blob=None):
        self.service_id = service_id
        self.key_type = key_type
        self.key_blob = key_blob

    @property
    def private_key(self):
        '''
        The private key in the form tor accepts in ADD_ONION, or None.
        '''
        if self.key_blob is None:
            return None
        return "{}:{}".format(self.key_type, self.key_blob)

    @property
    def onion_address(self):
        if self.service_id is None:
            return None
        return self.service_id + '.onion'

    def __eq__(self, other):
        if not isinstance(other, OnionResult):
            return NotImplemented
        return (self.service_id == other.service_id and
                self.key_type == other.key_type and
                self.key_blob == other.key_blob)

    def __ne__(self, other):
        result = self.__eq__(other)
        if result is NotImplemented:
            return result
        return not result

    def __repr__(self):
        # never put the key blob in a repr, it ends up in logs
        return "OnionResult(service_id={!r}, key_type={!r}, key={})".format(
            self.service_id, self.key_type,
            "None" if self.key_blob is None else "[scrubbed]")

def parse_onion_reply(message):
    '''
    Parse the ServiceID and PrivateKey fields out of an ADD_ONION reply
    message (the reply lines with their status prefixes removed, joined by
    newlines).
    Returns an OnionResult, with None for each field that is not present.
    Raises ProtocolError if a field is present but malformed, or repeated.
    '''
    result = OnionResult()
    for line in message.split('\n'):
        key, sep, value = line.strip().partition('=')
        if len(sep) == 0:
            # "OK", or other lines without fields
            continue
        if key == SERVICE_ID_KEY:
            if result.service_id is not None:
                raise ProtocolError("Repeated {} in ADD_ONION reply"
                                    .format(SERVICE_ID_KEY))
            if not check_onion_address(value, check_length=False):
                raise ProtocolError("Invalid {} in ADD_ONION reply: '{}'"
                                    .format(SERVICE_ID_KEY, value))
            result.service_id = value
        elif key == PRIVATE_KEY_KEY:
            if result.key_blob is not None:
                raise ProtocolError("Repeated {} in ADD_ONION reply"
                                    .format(PRIVATE_KEY_KEY))
            key_type, sep, key_blob = value.partition(':')
            if len(sep) == 0 or len(key_type) == 0 or len(key_blob) == 0:
                # don't put any of the key in the exception
                raise ProtocolError("Malformed {} in ADD_ONION reply"
                                    .format(PRIVATE_KEY_KEY))
            result.key_type = key_type
            result.key_blob = key_blob
        # ignore ClientAuth and any fields added by future tor versions
    return result

def split_private_key(private_key, key_type=None):
    '''
    Split private_key into a (key type, key blob) tuple.
    private_key is either "<key type>:<key blob>", or a bare key blob, in
    which case key_type (or DEFAULT_KEY_TYPE) is used.
    Raises ProtocolError if the key can not be sent in a command.
    '''
    if isinstance(private_key, bytes):
        private_key = private_key.decode('ascii', 'replace')
    private_key = private_key.strip()
    if ':' in private_key:
        key_type, _, key_blob = private_key.partition(':')
    else:
        key_type = key_type or DEFAULT_KEY_TYPE
        key_blob = private_key
    if (len(key_type) == 0 or len(key_blob) == 0 or
        len(key_blob.split()) != 1 or len(key_type.split()) != 1):
        raise ProtocolError("Unusable private key for ADD_ONION")
    if key_type == 'NEW':
        raise ProtocolError("Restarting a service needs an existing key, not NEW")
    return (key_type, key_blob)

def read_onion(service_dir):
    '''
    Return the contents of the hostname file in the persistent hidden
    service directory service_dir, verbatim.
    Raises ControlFileError if the file can not be read.
    '''
    return read_file(path.join(service_dir, HOSTNAME_FILE_NAME),
                     0, HOSTNAME_FILE_MAX_LENGTH, binary=False)
