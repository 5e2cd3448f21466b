# See LICENSE for licensing information

'''
Exceptions raised (or delivered via Deferred failures) by onionctl.
'''

class ControlError(Exception):
    '''
    Base class for all onionctl errors.
    '''

class ControlConnectionError(ControlError, ConnectionError):
    '''
    The control connection could not be made, or failed while a command was
    outstanding.
    '''

class ProtocolError(ControlError):
    '''
    A reply did not have the expected shape, or a command could not be sent
    as requested.
    '''

class UnexpectedReplyError(ProtocolError):
    '''
    A reply was well-formed, but did not have the status code the caller
    required.
    '''

    def __init__(self, reply, expected_code):
        ProtocolError.__init__(self,
                               "Expected status {}, got {} {}"
                               .format(expected_code, reply.code,
                                       reply.message))
        self.reply = reply
        self.expected_code = expected_code

class AuthError(ControlError):
    '''
    Authentication was rejected by tor, or tor failed to prove that it knows
    the authentication cookie.
    code and message are None when the failure was detected locally.
    '''

    def __init__(self, reason, code=None, message=None):
        ControlError.__init__(self, reason)
        self.code = code
        self.message = message

class ControlFileError(ControlError, IOError):
    '''
    A cookie, password, or hostname file could not be read, or had unusable
    contents.
    '''

class OperationError(ControlError):
    '''
    A hidden service command was rejected with an unexpected status code.
    '''

    def __init__(self, code, message):
        ControlError.__init__(self, "{} {}".format(code, message))
        self.code = code
        self.message = message
