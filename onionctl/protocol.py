# See LICENSE for licensing information

import logging
import shlex

from base64 import b32encode, b64encode
from binascii import hexlify, unhexlify
from hashlib import sha256 as DigestHash

from twisted.internet import defer
from twisted.internet.protocol import ClientFactory, ServerFactory
from twisted.protocols.basic import LineOnlyReceiver

from onionctl.config import read_file, check_port_map
from onionctl.connection import connect, parse_control_address, transport_info
from onionctl.crypto import get_hmac, verify_hmac, generate_nonce
from onionctl.errors import (ControlConnectionError, ProtocolError,
                             UnexpectedReplyError, AuthError,
                             ControlFileError, OperationError)
from onionctl.log import scrub_line, summarise_string
from onionctl.onion import (OnionResult, parse_onion_reply, split_private_key,
                            NEW_KEY_SPEC, DEFAULT_KEY_TYPE, SERVICE_ID_KEY,
                            PRIVATE_KEY_KEY)

ONIONCTL_SHORT_VERSION_STRING = '0.1.0'

# Status codes
STATUS_OK = 250
STATUS_ONION_COLLISION = 550

class TorControlReply(object):
    '''
    One complete reply to a control port command: the status code, and the
    text of every reply line, with the "<code><separator>" prefixes removed.
    Data reply lines (between "<code>+" and ".") are included as-is.
    '''

    def __init__(self, code, lines):
        self.code = code
        self.lines = list(lines)

    @property
    def message(self):
        return "\n".join(self.lines)

    @property
    def is_ok(self):
        return self.code == STATUS_OK

    def __repr__(self):
        return "TorControlReply({}, {!r})".format(
            self.code,
            summarise_string("\n".join(scrub_line(line) for line in self.lines),
                             100))

class TorControlProtocol(object):
    '''
    A mixin class containing common Tor Control Protocol code
    '''

    # Events can be up to ~1kB, and RSA private keys are about the same size
    MAX_LENGTH = 2*10*1024

    # tor accepts LF or CRLF, so we split received lines on LF, and strip any
    # trailing CR
    delimiter = b'\n'

    ENCODING = 'utf-8'

    SAFECOOKIE_LENGTH = 32

    SAFECOOKIE_SERVER_NONCE_LENGTH = 32
    SAFECOOKIE_SERVER_HASH_LENGTH = 32

    # The security of SAFECOOKIE authentication does not depend on the client
    # nonce
    SAFECOOKIE_CLIENT_NONCE_MIN_VALID_LENGTH = 0
    # An arbitrary limit, 1 kilobyte is quite enough to hash
    SAFECOOKIE_CLIENT_NONCE_MAX_VALID_LENGTH = 1024
    SAFECOOKIE_CLIENT_NONCE_GENERATED_LENGTH = 32
    assert (SAFECOOKIE_CLIENT_NONCE_GENERATED_LENGTH >=
            SAFECOOKIE_CLIENT_NONCE_MIN_VALID_LENGTH)
    assert (SAFECOOKIE_CLIENT_NONCE_GENERATED_LENGTH <=
            SAFECOOKIE_CLIENT_NONCE_MAX_VALID_LENGTH)

    SAFECOOKIE_CLIENT_HASH_LENGTH = 32

    SAFECOOKIE_SERVER_HASH_KEY = \
        b"Tor safe cookie authentication server-to-controller hash"
    SAFECOOKIE_CLIENT_HASH_KEY = \
        b"Tor safe cookie authentication controller-to-server hash"

    PASSWORD_MIN_VALID_LENGTH = 1
    # An arbitrary limit, 1 kilobyte is quite enough to hash
    PASSWORD_MAX_VALID_LENGTH = 1024

    @staticmethod
    def encodeControllerString(cont_str, hex_encode=True):
        '''
        Encode a string for transmission over the control port.
        If hex_encode is True, encode the bytes cont_str in hexadecimal,
        otherwise, encode the text cont_str in the Tor Control Protocol
        QuotedString format.
        Does not support the CString encoding.
        '''
        if hex_encode:
            # hex encoded strings do not have an 0x prefix
            encoded = hexlify(cont_str).decode('ascii')
        else: # QuotedString
            # quoted strings escape \ and " with \, then quote with "
            # the order of these replacements is important: they ensure that
            # " becomes \" rather than \\"
            escaped = cont_str.replace("\\", "\\\\")
            escaped = escaped.replace("\"", "\\\"")
            encoded = "\"" + escaped + "\""
        # sanity check
        assert TorControlProtocol.decodeControllerString(encoded) == cont_str
        return encoded

    @staticmethod
    def decodeControllerString(cont_str):
        '''
        Decode an encoded string received via the control port.
        Decodes hexadecimal (to bytes), and the Tor Control Protocol
        QuotedString format (to text), depending on the format of the input
        string.
        Raises ValueError when presented with an invalid format.
        '''
        cont_str = cont_str.strip()
        if (cont_str.startswith("\"") and cont_str.endswith("\"") and
            len(cont_str) >= 2):
            # quoted strings escape \ and " with \, then quote with "
            # this is safe, because we check the string is "*"
            cont_str = cont_str[1:-1]
            # the order of these replacements is important: they ensure that
            # \\" becomes \" rather than "
            cont_str = cont_str.replace("\\\"", "\"")
            return cont_str.replace("\\\\", "\\")
        else:
            # assume hex, raises binascii.Error (a ValueError) on invalid hex
            return unhexlify(cont_str)

    @staticmethod
    def encodeConfigValue(value):
        '''
        Encode a SETCONF value, quoting it only if it contains characters
        that would otherwise end or corrupt the value.
        '''
        value = str(value)
        if len(value) == 0 or any(c in value for c in " \t\"\\"):
            return TorControlProtocol.encodeControllerString(value,
                                                             hex_encode=False)
        return value

    @staticmethod
    def generateClientNonce():
        '''
        Generate a client nonce.
        '''
        return generate_nonce(
            TorControlProtocol.SAFECOOKIE_CLIENT_NONCE_GENERATED_LENGTH)

    @staticmethod
    def generateServerNonce():
        '''
        Generate a server nonce.
        '''
        return generate_nonce(TorControlProtocol.SAFECOOKIE_SERVER_NONCE_LENGTH)

    # The ClientNonce, ServerHash, and ServerNonce values are
    # encoded/decoded in the same way as the argument passed to the
    # AUTHENTICATE command.

    @staticmethod
    def encodeNonce(nonce_bytes):
        '''
        Encode a nonce for transmission.
        '''
        return TorControlProtocol.encodeControllerString(nonce_bytes)

    # Use aliases for documentation purposes, and to match decoding functions
    encodeHash = encodeNonce
    encodeClientNonce = encodeNonce
    encodeServerNonce = encodeNonce
    encodeClientHash = encodeHash
    encodeServerHash = encodeHash

    @staticmethod
    def decodeNonce(encoded_str, min_len, max_len):
        '''
        Decode and check a received hex nonce.
        Returns the nonce bytes if valid, or None if not valid.
        '''
        assert min_len >= 0
        assert max_len >= min_len
        try:
            decoded_bytes = TorControlProtocol.decodeControllerString(
                encoded_str)
        except ValueError as e:
            logging.warning("Received nonce was not valid hex: {}".format(e))
            return None
        if not isinstance(decoded_bytes, bytes):
            logging.warning("Received nonce was a quoted string, not hex")
            return None
        if len(decoded_bytes) < min_len:
            logging.warning("Received nonce was {} bytes, wanted at least {} bytes"
                            .format(len(decoded_bytes), min_len))
            return None
        if len(decoded_bytes) > max_len:
            logging.warning("Received nonce was {} bytes, wanted no more than {} bytes"
                            .format(len(decoded_bytes), max_len))
            return None
        return decoded_bytes

    # Use aliases for documentation purposes, and to match decoding functions
    decodeHash = decodeNonce

    @staticmethod
    def decodeClientNonce(encoded_str):
        return TorControlProtocol.decodeNonce(encoded_str,
                   TorControlProtocol.SAFECOOKIE_CLIENT_NONCE_MIN_VALID_LENGTH,
                   TorControlProtocol.SAFECOOKIE_CLIENT_NONCE_MAX_VALID_LENGTH)

    @staticmethod
    def decodeServerNonce(encoded_str):
        # ServerNonce MUST be 32 bytes long.
        return TorControlProtocol.decodeNonce(encoded_str,
                           TorControlProtocol.SAFECOOKIE_SERVER_NONCE_LENGTH,
                           TorControlProtocol.SAFECOOKIE_SERVER_NONCE_LENGTH)

    @staticmethod
    def decodeClientHash(encoded_str):
        # ClientHash MUST be 32 bytes long.
        return TorControlProtocol.decodeHash(encoded_str,
                              TorControlProtocol.SAFECOOKIE_CLIENT_HASH_LENGTH,
                              TorControlProtocol.SAFECOOKIE_CLIENT_HASH_LENGTH)

    @staticmethod
    def decodeServerHash(encoded_str):
        # ServerHash MUST be 32 bytes long.
        return TorControlProtocol.decodeHash(encoded_str,
                              TorControlProtocol.SAFECOOKIE_SERVER_HASH_LENGTH,
                              TorControlProtocol.SAFECOOKIE_SERVER_HASH_LENGTH)

    @staticmethod
    def getServerHash(cookie_string, client_nonce, server_nonce):
        '''
        Returns a SAFECOOKIE server hash using cookie_string, client_nonce,
        and server_nonce.
        '''
        # ServerHash is computed as:
        # HMAC-SHA256(
        #   "Tor safe cookie authentication server-to-controller hash",
        #   CookieString | ClientNonce | ServerNonce)
        return get_hmac(TorControlProtocol.SAFECOOKIE_SERVER_HASH_KEY,
                        cookie_string, client_nonce + server_nonce)

    @staticmethod
    def verifyServerHash(server_hash, cookie_string, client_nonce,
                         server_nonce):
        '''
        Verifies a SAFECOOKIE server_hash using cookie_string, client_nonce,
        and server_nonce.
        Returns True if valid, False if invalid.
        '''
        if (server_hash is None or cookie_string is None or
            client_nonce is None or server_nonce is None):
            return False
        # Check using a timing-safe function
        return verify_hmac(server_hash,
                           TorControlProtocol.SAFECOOKIE_SERVER_HASH_KEY,
                           cookie_string, client_nonce + server_nonce)

    @staticmethod
    def getClientHash(cookie_string, client_nonce, server_nonce):
        '''
        Returns a SAFECOOKIE client hash using cookie_string, client_nonce,
        and server_nonce.
        '''
        # ClientHash is computed as:
        # HMAC-SHA256(
        #   "Tor safe cookie authentication controller-to-server hash",
        #   CookieString | ClientNonce | ServerNonce)
        return get_hmac(TorControlProtocol.SAFECOOKIE_CLIENT_HASH_KEY,
                        cookie_string, client_nonce + server_nonce)

    @staticmethod
    def verifyClientHash(client_hash, cookie_string, client_nonce,
                         server_nonce):
        '''
        Verifies a SAFECOOKIE client_hash using cookie_string, client_nonce,
        and server_nonce.
        Returns True if valid, False if invalid.
        '''
        if (client_hash is None or cookie_string is None or
            client_nonce is None or server_nonce is None):
            return False
        return verify_hmac(client_hash,
                           TorControlProtocol.SAFECOOKIE_CLIENT_HASH_KEY,
                           cookie_string, client_nonce + server_nonce)

    @staticmethod
    def readCookieFile(cookie_file):
        '''
        Read a 32-byte value from cookie_file.
        Raises ControlFileError if reading from the file fails, or the cookie
        is not 32 bytes.
        '''
        # All authentication cookies are 32 bytes long.  Controllers
        # MUST NOT use the contents of a non-32-byte-long file as an
        # authentication cookie.
        if cookie_file is None:
            raise ControlFileError("No cookie file")
        return read_file(cookie_file,
                         TorControlProtocol.SAFECOOKIE_LENGTH,
                         TorControlProtocol.SAFECOOKIE_LENGTH)

    @staticmethod
    def writeCookieFile(cookie_file, cookie_string=None):
        '''
        Write cookie_string, or a random 32-byte value, to cookie_file.
        Return the value written to the file.
        Raises ControlFileError if writing the file fails.
        '''
        if cookie_string is None:
            cookie_string = generate_nonce(TorControlProtocol.SAFECOOKIE_LENGTH)
        try:
            with open(cookie_file, 'wb') as f:
                f.write(cookie_string)
        except (IOError, OSError) as e:
            raise ControlFileError("writing cookie file '{}' failed with error: {}"
                                   .format(cookie_file, e))
        return cookie_string

    @staticmethod
    def readPasswordFile(password_file):
        '''
        Read a control password from password_file, without any trailing
        line ending.
        Raises ControlFileError if reading from the file fails, or the
        password is empty (or too long).
        '''
        password = read_file(password_file,
                             TorControlProtocol.PASSWORD_MIN_VALID_LENGTH,
                             TorControlProtocol.PASSWORD_MAX_VALID_LENGTH,
                             binary=False)
        password = password.rstrip("\r\n")
        if len(password) == 0:
            raise ControlFileError("password file '{}' is empty"
                                   .format(password_file))
        return password

    def decodeLine(self, line):
        '''
        Decode a received line, and strip any trailing CR.
        Returns None if the line can not be decoded.
        '''
        try:
            line = line.decode(self.ENCODING)
        except UnicodeDecodeError:
            return None
        return line.rstrip("\r")

    def sendLine(self, line):
        '''
        Encode and send line with a LF line ending (which tor accepts),
        logging a scrubbed copy.
        overrides twisted function
        '''
        logging.debug("Sending line '{}' to {}"
                      .format(scrub_line(line), transport_info(self.transport)))
        return self.transport.write(line.encode(self.ENCODING) +
                                    self.delimiter)

class TorControlClientProtocol(TorControlProtocol, LineOnlyReceiver):
    '''
    The client (controller) side of the Tor control protocol.

    Exactly one command can be outstanding at a time: the control protocol
    has no request identifiers, so replies are matched to commands by order.
    Every command method returns a Deferred.
    '''

    def __init__(self, factory=None):
        self.factory = factory
        self.state = None
        self.pending = None
        self.clear()

    def clear(self):
        '''
        Clear the partially received reply
        '''
        self.reply_code = None
        self.reply_lines = []
        self.in_data_block = False
        self.skip_data_block = False

    def connectionMade(self):
        '''
        overrides twisted function
        '''
        logging.info("Connection with {} was made"
                     .format(transport_info(self.transport)))
        self.state = 'connected'
        if self.factory is not None:
            self.factory.clientConnectionMade(self)

    def isConnected(self):
        '''
        Is this protocol connected?
        '''
        return self.state is not None and self.state != 'disconnected'

    def isAuthenticated(self):
        return self.state == 'authenticated'

    def sendCommand(self, command, expect=None):
        '''
        Send command, and return a Deferred that fires with the
        TorControlReply to the command.
        command may end with a single line terminator, but must not contain
        any other line breaks.
        If expect is not None, the Deferred fails with UnexpectedReplyError
        if the reply status code is not expect.
        '''
        if not self.isConnected():
            return defer.fail(ControlConnectionError(
                    "Not connected to the control port"))
        if self.pending is not None:
            return defer.fail(ProtocolError(
                    "Another command is already outstanding on this connection"))
        if command.endswith("\r\n"):
            command = command[:-2]
        elif command.endswith("\n"):
            command = command[:-1]
        if "\r" in command or "\n" in command:
            return defer.fail(ProtocolError(
                    "Command contains a line break: '{}'"
                    .format(summarise_string(scrub_line(command), 50))))
        d = defer.Deferred()
        self.pending = d
        self.sendLine(command)
        if expect is not None:
            d.addCallback(TorControlClientProtocol.checkReplyCode, expect)
        return d

    @staticmethod
    def checkReplyCode(reply, expect):
        if reply.code != expect:
            raise UnexpectedReplyError(reply, expect)
        return reply

    def lineReceived(self, line):
        '''
        Collect reply lines until the final line of the reply, then fire the
        outstanding command's Deferred.
        overrides twisted function
        '''
        line = self.decodeLine(line)
        if line is None:
            self.failConnection("Received a line that is not {}"
                                .format(self.ENCODING))
            return
        logging.debug("Received line '{}' from {}"
                      .format(scrub_line(line), transport_info(self.transport)))

        if self.in_data_block:
            if line == ".":
                self.in_data_block = False
                self.skip_data_block = False
            elif not self.skip_data_block:
                # lines starting with a . are escaped with an extra .
                if line.startswith("."):
                    line = line[1:]
                self.reply_lines.append(line)
            return

        if (len(line) < 4 or any(c not in "0123456789" for c in line[:3]) or
            line[3] not in "- +"):
            self.failConnection("Malformed reply line: '{}'"
                                .format(summarise_string(scrub_line(line), 50)))
            return
        code = int(line[:3])
        separator = line[3]
        text = line[4:]

        # asynchronous events are never part of a command reply
        if code // 100 == 6 and self.reply_code is None:
            logging.info("Connection with {}: ignored event: '{}'"
                         .format(transport_info(self.transport),
                                 summarise_string(line, 100)))
            if separator == "+":
                self.in_data_block = True
                self.skip_data_block = True
            return

        if self.pending is None:
            logging.warning("Connection with {}: unexpected reply with no outstanding command: '{}'"
                            .format(transport_info(self.transport),
                                    summarise_string(scrub_line(line), 100)))
            return

        if self.reply_code is not None and code != self.reply_code:
            self.failConnection("Reply status changed from {} to {} mid-reply"
                                .format(self.reply_code, code))
            return

        self.reply_code = code
        self.reply_lines.append(text)
        if separator == "+":
            self.in_data_block = True
        elif separator == " ":
            reply = TorControlReply(code, self.reply_lines)
            d = self.pending
            self.pending = None
            self.clear()
            d.callback(reply)

    def failConnection(self, reason):
        '''
        Fail the outstanding command with ProtocolError(reason), and drop the
        connection: after a malformed reply, we can't match replies to
        commands any more.
        '''
        logging.warning("Connection with {}: {}, dropping connection"
                        .format(transport_info(self.transport), reason))
        d = self.pending
        self.pending = None
        self.clear()
        self.state = 'disconnected'
        self.transport.loseConnection()
        if d is not None:
            d.errback(ProtocolError(reason))

    def lineLengthExceeded(self, line):
        '''
        overrides twisted function
        '''
        self.failConnection("Received line of length {} exceeded {}"
                            .format(len(line), self.MAX_LENGTH))

    def connectionLost(self, reason):
        '''
        overrides twisted function
        '''
        logging.info("Connection with {} was lost: {}"
                     .format(transport_info(self.transport),
                             reason.getErrorMessage()))
        self.state = 'disconnected'
        d = self.pending
        self.pending = None
        self.clear()
        if d is not None:
            d.errback(ControlConnectionError(
                    "Connection lost while waiting for a reply: {}"
                    .format(reason.getErrorMessage())))

    def quit(self):
        '''
        Send QUIT, then close the connection, regardless of the reply.
        Returns a Deferred that fires with None.
        '''
        if not self.isConnected():
            return defer.succeed(None)

        def _close(_):
            self.state = 'disconnected'
            self.transport.loseConnection()
            return None

        d = self.sendCommand("QUIT")
        d.addBoth(_close)
        return d

    # Authentication

    def checkAuthReply(self, reply, method):
        '''
        Put the protocol in the 'authenticated' state if reply is OK,
        otherwise raise AuthError.
        '''
        if not reply.is_ok:
            logging.warning("Connection with {}: {} authentication failed: {} {}"
                            .format(transport_info(self.transport), method,
                                    reply.code, reply.message))
            raise AuthError("{} authentication failed".format(method),
                            reply.code, reply.message)
        logging.info("Authenticated with {} using {} method"
                     .format(transport_info(self.transport), method))
        self.state = 'authenticated'
        return True

    def authenticateWith(self, command, method):
        d = self.sendCommand(command)
        d.addCallback(self.checkAuthReply, method)
        return d

    def passwordAuthenticate(self, password):
        '''
        Authenticate using password (tor's HashedControlPassword).
        Fires with True, or fails with AuthError.
        '''
        try:
            encoded_password = TorControlProtocol.encodeControllerString(
                password, hex_encode=False)
        except (TypeError, AttributeError) as e:
            return defer.fail(ProtocolError("Invalid password: {}".format(e)))
        return self.authenticateWith("AUTHENTICATE " + encoded_password,
                                     "HASHEDPASSWORD")

    def cookieAuthenticate(self, cookie_path):
        '''
        Authenticate by sending the contents of cookie_path.
        This reveals the cookie to anyone who can read the connection, so only
        use it on a trusted connection, like a local unix socket.
        Fires with True, or fails with AuthError or ControlFileError.
        '''
        try:
            cookie_string = TorControlProtocol.readCookieFile(cookie_path)
        except ControlFileError:
            return defer.fail()
        return self.authenticateWith(
            "AUTHENTICATE " +
            TorControlProtocol.encodeControllerString(cookie_string),
            "COOKIE")

    def nullAuthenticate(self):
        '''
        Authenticate without a password or cookie.
        '''
        logging.warning("Your Tor control port has no authentication. Please configure CookieAuthentication or HashedControlPassword.")
        return self.authenticateWith("AUTHENTICATE", "NULL")

    @defer.inlineCallbacks
    def safeCookieAuthenticate(self, cookie_path):
        '''
        Authenticate using the SAFECOOKIE challenge-response method.
        tor must prove that it knows the cookie before we send our proof.
        Fires with True, or fails with AuthError, ProtocolError, or
        ControlFileError.
        '''
        cookie_string = TorControlProtocol.readCookieFile(cookie_path)
        # a new nonce for every attempt
        client_nonce = TorControlProtocol.generateClientNonce()
        reply = yield self.sendCommand(
            "AUTHCHALLENGE SAFECOOKIE {}"
            .format(TorControlProtocol.encodeClientNonce(client_nonce)))
        if not reply.is_ok:
            raise AuthError("AUTHCHALLENGE failed", reply.code, reply.message)
        server_hash, server_nonce = \
            TorControlClientProtocol.parseAuthChallenge(reply.message)
        if not TorControlProtocol.verifyServerHash(server_hash, cookie_string,
                                                   client_nonce,
                                                   server_nonce):
            logging.warning("Connection with {}: bad AUTHCHALLENGE server hash or cookie file"
                            .format(transport_info(self.transport)))
            raise AuthError("server hash invalid")
        # Now we can authenticate
        client_hash = TorControlProtocol.getClientHash(cookie_string,
                                                       client_nonce,
                                                       server_nonce)
        reply = yield self.sendCommand(
            "AUTHENTICATE " + TorControlProtocol.encodeClientHash(client_hash))
        return self.checkAuthReply(reply, "SAFECOOKIE")

    @staticmethod
    def parseAuthChallenge(message):
        '''
        Parse an AUTHCHALLENGE reply message:
        AUTHCHALLENGE SERVERHASH=<hex> SERVERNONCE=<hex>
        Returns a (server_hash, server_nonce) tuple of bytes.
        Raises ProtocolError if the message is malformed.
        '''
        prefix = "AUTHCHALLENGE "
        line = message.strip()
        if "\n" in line or not line.startswith(prefix):
            raise ProtocolError("Malformed AUTHCHALLENGE reply: '{}'"
                                .format(summarise_string(line, 100)))
        fields = {}
        for token in line[len(prefix):].split():
            key, sep, value = token.partition("=")
            if len(sep) == 0 or key in fields:
                raise ProtocolError("Malformed AUTHCHALLENGE field: '{}'"
                                    .format(summarise_string(token, 100)))
            fields[key] = value
        for key in ["SERVERHASH", "SERVERNONCE"]:
            if key not in fields:
                raise ProtocolError("AUTHCHALLENGE reply is missing {}"
                                    .format(key))
        server_hash = TorControlProtocol.decodeServerHash(fields["SERVERHASH"])
        if server_hash is None:
            raise ProtocolError("Invalid AUTHCHALLENGE SERVERHASH")
        server_nonce = TorControlProtocol.decodeServerNonce(
            fields["SERVERNONCE"])
        if server_nonce is None:
            raise ProtocolError("Invalid AUTHCHALLENGE SERVERNONCE")
        return (server_hash, server_nonce)

    def getProtocolInfo(self):
        '''
        Ask tor for its authentication methods, cookie file, and version.
        Fires with the dictionary returned by parseProtocolInfo().
        '''
        d = self.sendCommand("PROTOCOLINFO 1", expect=STATUS_OK)
        d.addCallback(lambda reply:
                      TorControlClientProtocol.parseProtocolInfo(
                        reply.message))
        return d

    @staticmethod
    def parseProtocolInfo(message):
        '''
        Parse a PROTOCOLINFO reply message, and return a dictionary with the
        keys 'auth_methods' (a list), 'cookie_file', and 'tor_version' (None
        if tor did not supply them).
        '''
        info = { 'auth_methods' : [],
                 'cookie_file' : None,
                 'tor_version' : None }
        for line in message.split("\n"):
            if line.startswith("AUTH "):
                # AUTH METHODS=AuthMethod,AuthMethod,... COOKIEFILE="AuthCookieFile"
                _, _, suffix = line.partition("METHODS=")
                methods, sep, cookie_file = suffix.partition("COOKIEFILE=")
                # if there is no cookie file
                if len(sep) == 0:
                    methods = suffix
                info['auth_methods'] = [method for method
                                        in methods.strip().split(",")
                                        if len(method) > 0]
                # if there is a cookie file that is not a quoted empty string
                if len(cookie_file.strip()) > 2:
                    try:
                        info['cookie_file'] = \
                            TorControlProtocol.decodeControllerString(
                                cookie_file)
                    except ValueError:
                        raise ProtocolError("Malformed PROTOCOLINFO COOKIEFILE")
            elif line.startswith("VERSION "):
                # VERSION Tor="TorVersion" OptArguments
                _, _, suffix = line.partition("Tor=")
                version, _, _ = suffix.partition(" ")
                if len(version) > 2:
                    try:
                        info['tor_version'] = \
                            TorControlProtocol.decodeControllerString(version)
                    except ValueError:
                        raise ProtocolError("Malformed PROTOCOLINFO VERSION")
        return info

    @defer.inlineCallbacks
    def authenticate(self, password=None, cookie_path=None):
        '''
        Authenticate using the strongest method tor offers that we can use:
        SAFECOOKIE, then HASHEDPASSWORD, then COOKIE, then NULL.
        cookie_path defaults to the cookie file tor reports.
        If the chosen method fails, no other method is tried.
        '''
        info = yield self.getProtocolInfo()
        auth_methods = info['auth_methods']
        if cookie_path is None:
            cookie_path = info['cookie_file']
        logging.info("Connection with {}: tor {} offers authentication methods {}"
                     .format(transport_info(self.transport),
                             info['tor_version'], ",".join(auth_methods)))
        if "SAFECOOKIE" in auth_methods and cookie_path is not None:
            result = yield self.safeCookieAuthenticate(cookie_path)
        elif "HASHEDPASSWORD" in auth_methods and password is not None:
            result = yield self.passwordAuthenticate(password)
        elif "COOKIE" in auth_methods and cookie_path is not None:
            result = yield self.cookieAuthenticate(cookie_path)
        elif "NULL" in auth_methods:
            result = yield self.nullAuthenticate()
        else:
            raise AuthError("Authentication methods {} not available"
                            .format(",".join(auth_methods)))
        return result

    # Hidden services

    @staticmethod
    def checkOperationReply(reply):
        if not reply.is_ok:
            raise OperationError(reply.code, reply.message)
        return reply

    @staticmethod
    def checkPortTarget(port, destination):
        '''
        Return "port,destination" for an ADD_ONION Port argument.
        Raises ProtocolError if either would add extra arguments.
        '''
        port = str(port)
        destination = str(destination)
        for value in [port, destination]:
            if len(value) == 0 or len(value.split()) != 1:
                raise ProtocolError("Invalid ADD_ONION port or target: '{}'"
                                    .format(value))
        return "{},{}".format(port, destination)

    def createHiddenService(self, service_dir, listen_addrs):
        '''
        Configure a persistent hidden service in service_dir, with one
        HiddenServicePort for each virtual port: target address item in
        listen_addrs. The HiddenServiceDirGroupReadable option makes the
        service's hostname file group-readable.
        Fires with True, or fails with OperationError.
        Fails with ProtocolError if listen_addrs is empty, or has an invalid
        port or target: a hidden service directory with no ports deletes
        the service.
        '''
        if not check_port_map(listen_addrs):
            return defer.fail(ProtocolError(
                    "Invalid hidden service ports for {}: {}"
                    .format(service_dir, listen_addrs)))
        command = "SETCONF hiddenservicedir={}".format(
            TorControlProtocol.encodeConfigValue(service_dir))
        # tor treats the ports as a set, sorting them makes commands
        # predictable
        for virt_port, listen_addr in sorted(listen_addrs.items(),
                                             key=lambda item: int(item[0])):
            command += " hiddenserviceport={}".format(
                TorControlProtocol.encodeControllerString(
                    "{} {}".format(int(virt_port), listen_addr),
                    hex_encode=False))
        command += " HiddenServiceDirGroupReadable=1"
        d = self.sendCommand(command)
        d.addCallback(TorControlClientProtocol.checkOperationReply)
        d.addCallback(lambda _: True)
        return d

    def deleteHiddenService(self, service_dir):
        '''
        Remove the persistent hidden service in service_dir from tor's
        configuration. The directory and keys are left on disk.
        Fires with True, or fails with OperationError.
        '''
        command = "SETCONF hiddenservicedir={}".format(
            TorControlProtocol.encodeConfigValue(service_dir))
        d = self.sendCommand(command)
        d.addCallback(TorControlClientProtocol.checkOperationReply)
        d.addCallback(lambda _: True)
        return d

    def createEphemeralHiddenService(self, port, destination):
        '''
        Create a new ephemeral hidden service with a tor-generated key,
        forwarding the virtual port to destination. The service runs until
        tor exits (it is detached from this connection).
        Fires with an OnionResult containing the service id and private key.
        Remember the private key to restart the service later.
        '''
        try:
            target = TorControlClientProtocol.checkPortTarget(port,
                                                              destination)
        except ProtocolError:
            return defer.fail()
        d = self.sendCommand("ADD_ONION {} FLAGS=Detach Port={}"
                             .format(NEW_KEY_SPEC, target))
        d.addCallback(TorControlClientProtocol.checkOperationReply)
        d.addCallback(self.parseNewOnion)
        return d

    def parseNewOnion(self, reply):
        result = parse_onion_reply(reply.message)
        for key, value in [(SERVICE_ID_KEY, result.service_id),
                           (PRIVATE_KEY_KEY, result.key_blob)]:
            if value is None:
                logging.warning("Connection with {}: ADD_ONION reply is missing {}"
                                .format(transport_info(self.transport), key))
        logging.info("Connection with {}: created ephemeral hidden service {}"
                     .format(transport_info(self.transport),
                             result.onion_address))
        return result

    def restartEphemeralHiddenService(self, private_key, port, destination,
                                      key_type=None):
        '''
        Restart an ephemeral hidden service using private_key, which is
        either "<key type>:<key blob>", or a bare key blob of type key_type
        (default ED25519-V3).
        Fires with an OnionResult. If tor was already running the service,
        its service_id is None.
        Fails with OperationError if tor rejects the key or ports.
        '''
        try:
            key_type, key_blob = split_private_key(private_key, key_type)
            target = TorControlClientProtocol.checkPortTarget(port,
                                                              destination)
        except ProtocolError:
            return defer.fail()
        d = self.sendCommand("ADD_ONION {}:{} FLAGS=Detach Port={}"
                             .format(key_type, key_blob, target))
        d.addCallback(self.parseRestartedOnion, key_type, key_blob)
        return d

    def parseRestartedOnion(self, reply, key_type, key_blob):
        if reply.code == STATUS_OK:
            result = parse_onion_reply(reply.message)
            if result.service_id is None:
                logging.warning("Connection with {}: ADD_ONION reply is missing {}"
                                .format(transport_info(self.transport),
                                        SERVICE_ID_KEY))
            logging.info("Connection with {}: restarted ephemeral hidden service {}"
                         .format(transport_info(self.transport),
                                 result.onion_address))
            return OnionResult(result.service_id, key_type, key_blob)
        elif reply.code == STATUS_ONION_COLLISION:
            # tor is already running a service with this key
            logging.info("Connection with {}: ephemeral hidden service is already running: {}"
                         .format(transport_info(self.transport),
                                 reply.message))
            return OnionResult(None, key_type, key_blob)
        raise OperationError(reply.code, reply.message)

class TorControlClientFactory(ClientFactory):
    '''
    Makes one TorControlClientProtocol, and fires deferred with it when it
    is connected, or fails deferred with ControlConnectionError.
    '''

    protocol = TorControlClientProtocol

    def __init__(self):
        self.deferred = defer.Deferred()

    def buildProtocol(self, addr):
        return TorControlClientProtocol(self)

    def clientConnectionMade(self, client):
        if not self.deferred.called:
            self.deferred.callback(client)

    def clientConnectionFailed(self, connector, reason):
        '''
        overrides twisted function
        '''
        logging.warning("Control connection to {} failed: {}"
                        .format(connector.getDestination(),
                                reason.getErrorMessage()))
        if not self.deferred.called:
            self.deferred.errback(ControlConnectionError(
                    "Connecting to the control port failed: {}"
                    .format(reason.getErrorMessage())))

def connect_control_config(config, reactor=None):
    '''
    Connect to the control port described by config (see
    onionctl.connection.connect).
    Returns a Deferred that fires with a connected TorControlClientProtocol,
    or fails with ControlConnectionError.
    '''
    factory = TorControlClientFactory()
    connector = connect(factory, config, reactor=reactor)
    if connector is None:
        return defer.fail(ControlConnectionError(
                "Invalid control port config: {}".format(config)))
    return factory.deferred

def connect_control_port(network, address, reactor=None):
    '''
    Connect to the control port at address on network, which is 'tcp'
    (address is 'host:port') or 'unix' (address is a socket path).
    Returns a Deferred that fires with a connected TorControlClientProtocol,
    or fails with ControlConnectionError.
    '''
    try:
        config = parse_control_address(network, address)
    except ValueError as e:
        return defer.fail(ControlConnectionError(
                "Invalid control address {} {}: {}"
                .format(network, address, e)))
    return connect_control_config(config, reactor=reactor)

class TorControlServerProtocol(TorControlProtocol, LineOnlyReceiver):
    '''
    The server side of the Tor control protocol, as exercised by onionctl.

    This is useful for emulating a Tor control server for testing purposes.
    Authentication and hidden service state live in the factory, so they
    are shared between connections.

    Example protocol run against tor:
    PROTOCOLINFO 1
    250-PROTOCOLINFO 1
    250-AUTH METHODS=COOKIE,SAFECOOKIE COOKIEFILE="/var/run/tor/control.authcookie"
    250-VERSION Tor="0.4.8.10"
    250 OK
    AUTHCHALLENGE SAFECOOKIE 6E2B...
    250 AUTHCHALLENGE SERVERHASH=A7F3... SERVERNONCE=09C1...
    AUTHENTICATE 33D2...
    250 OK
    ADD_ONION NEW:BEST FLAGS=Detach Port=80,127.0.0.1:8080
    250-ServiceID=mcasenymcfpu4cnpqhdcdvnbcqtg23hbmgkmulfqnnlvmuuy2fz2nhad
    250-PrivateKey=ED25519-V3:...
    250 OK
    ADD_ONION ED25519-V3:... FLAGS=Detach Port=80,127.0.0.1:8080
    550 Onion address collision
    QUIT
    250 closing connection
    '''

    TOR_VERSION = "0.4.8.10"

    def __init__(self, factory):
        self.factory = factory
        self.clear()

    def clear(self):
        '''
        Clear all the instance variables
        '''
        self.authenticated = False
        self.client_nonce = None
        self.server_nonce = None

    def connectionMade(self):
        '''
        overrides twisted function
        '''
        logging.debug("Connection with {} was made"
                      .format(transport_info(self.transport)))

    def sendLines(self, lines):
        for line in lines:
            self.sendLine(line)

    def closeWith(self, line):
        '''
        Send line, then close the connection, like tor does after
        authentication errors.
        '''
        self.sendLine(line)
        self.transport.loseConnection()
        self.clear()

    def lineReceived(self, line):
        '''
        overrides twisted function
        '''
        line = self.decodeLine(line)
        if line is None:
            self.closeWith("551 Invalid characters")
            return
        logging.debug("Received line '{}' from {}"
                      .format(scrub_line(line), transport_info(self.transport)))
        line = line.strip()
        command, _, arguments = line.partition(" ")
        command = command.upper()

        # Quit regardless of authentication state
        if command == "QUIT":
            self.closeWith("250 closing connection")
        elif command == "PROTOCOLINFO":
            self.handleProtocolInfo()
        elif not self.authenticated:
            if command == "AUTHCHALLENGE":
                self.handleAuthChallenge(arguments)
            elif command == "AUTHENTICATE":
                self.handleAuthenticate(arguments)
            else:
                self.closeWith("514 Authentication required.")
        elif command == "SETCONF":
            self.handleSetConf(arguments)
        elif command == "ADD_ONION":
            self.handleAddOnion(arguments)
        else:
            self.sendLine('510 Unrecognized command "{}"'.format(command))

    def getAuthMethods(self):
        auth_methods = []
        if self.factory.cookie_string is not None:
            auth_methods.extend(["COOKIE", "SAFECOOKIE"])
        if self.factory.password is not None:
            auth_methods.append("HASHEDPASSWORD")
        # We don't do NULL authentication unless there are no other
        # options (what would be the point, otherwise?)
        if len(auth_methods) == 0:
            auth_methods.append("NULL")
        return auth_methods

    def handleProtocolInfo(self):
        if self.factory.cookie_file is not None:
            cookie_part = " COOKIEFILE={}".format(
                TorControlProtocol.encodeControllerString(
                    self.factory.cookie_file, hex_encode=False))
        else:
            cookie_part = ""
        self.sendLines(["250-PROTOCOLINFO 1",
                        "250-AUTH METHODS={}{}".format(
                            ",".join(self.getAuthMethods()), cookie_part),
                        "250-VERSION Tor=\"{}\"".format(self.TOR_VERSION),
                        "250 OK"])

    def handleAuthChallenge(self, arguments):
        method, _, client_nonce = arguments.partition(" ")
        if method.upper() != "SAFECOOKIE":
            self.closeWith("513 AUTHCHALLENGE only supports SAFECOOKIE authentication")
            return
        if self.factory.cookie_string is None:
            self.closeWith("513 SAFECOOKIE authentication is not enabled")
            return
        decoded_client_nonce = TorControlProtocol.decodeClientNonce(
            client_nonce)
        if decoded_client_nonce is None:
            self.closeWith("513 Invalid base16 client nonce")
            return
        self.client_nonce = decoded_client_nonce
        self.server_nonce = TorControlProtocol.generateServerNonce()
        server_hash = TorControlProtocol.getServerHash(
            self.factory.cookie_string, self.client_nonce, self.server_nonce)
        self.sendLine("250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}"
                      .format(TorControlProtocol.encodeServerHash(server_hash),
                              TorControlProtocol.encodeServerNonce(
                                self.server_nonce)))

    def handleAuthenticate(self, arguments):
        factory = self.factory
        arguments = arguments.strip()
        if len(arguments) == 0:
            decoded = None
        else:
            try:
                decoded = TorControlProtocol.decodeControllerString(arguments)
            except ValueError:
                self.closeWith("551 Invalid quoted string.  You need to put the password in double quotes.")
                return
        if self.getAuthMethods() == ["NULL"]:
            matches = True
        elif decoded is None:
            matches = False
        elif isinstance(decoded, bytes):
            # a cookie, or a SAFECOOKIE client hash
            client_hash = None
            if self.server_nonce is not None:
                client_hash = TorControlProtocol.decodeClientHash(arguments)
            matches = (factory.cookie_string is not None and
                       (decoded == factory.cookie_string or
                        TorControlProtocol.verifyClientHash(
                            client_hash, factory.cookie_string,
                            self.client_nonce, self.server_nonce)))
        else:
            matches = (factory.password is not None and
                       decoded == factory.password)
        # every nonce is single-use
        self.client_nonce = None
        self.server_nonce = None
        if matches:
            self.authenticated = True
            self.sendLine("250 OK")
        else:
            self.closeWith("515 Authentication failed: Password did not match HashedControlPassword *or* authentication cookie.")

    def handleSetConf(self, arguments):
        try:
            tokens = shlex.split(arguments)
        except ValueError:
            self.sendLine("513 syntax error in configuration values")
            return
        # HiddenServicePort lines apply to the previous HiddenServiceDir
        services = []
        for token in tokens:
            key, _, value = token.partition("=")
            key = key.lower()
            if key == "hiddenservicedir":
                services.append((value, {}))
            elif key == "hiddenserviceport":
                virt_port, _, target = value.partition(" ")
                if len(services) == 0 or not virt_port.isdigit():
                    self.sendLine('552 Invalid HiddenServicePort "{}"'
                                  .format(value))
                    return
                services[-1][1][int(virt_port)] = target or virt_port
            elif key == "hiddenservicedirgroupreadable":
                pass
            else:
                self.sendLine('552 Unrecognized option: Unknown option "{}". Failing.'
                              .format(key))
                return
        for service_dir, ports in services:
            if len(ports) == 0:
                self.factory.hidden_services.pop(service_dir, None)
            else:
                self.factory.hidden_services[service_dir] = ports
        self.sendLine("250 OK")

    @staticmethod
    def getServiceId(key_blob):
        '''
        Derive a fake, but stable, v3-length service id from key_blob.
        '''
        digest = DigestHash(key_blob.encode('ascii')).digest()
        digest += DigestHash(digest).digest()
        return b32encode(digest).decode('ascii').lower()[:56]

    def handleAddOnion(self, arguments):
        parts = arguments.split()
        if len(parts) == 0:
            self.sendLine("512 Missing argument to ADD_ONION")
            return
        key_type, sep, key_blob = parts[0].partition(":")
        ports = [part for part in parts[1:] if part.lower().startswith("port=")]
        if len(sep) == 0 or len(key_blob) == 0:
            self.sendLine("512 Invalid key type/blob")
            return
        if len(ports) == 0:
            self.sendLine("512 Missing 'Port' argument")
            return
        if key_type == "NEW":
            if key_blob not in ["BEST", DEFAULT_KEY_TYPE]:
                self.sendLine("513 Invalid key type")
                return
            key_type = DEFAULT_KEY_TYPE
            key_blob = b64encode(generate_nonce(64)).decode('ascii')
            send_key = True
        else:
            send_key = False
        service_id = TorControlServerProtocol.getServiceId(key_blob)
        if service_id in self.factory.onions:
            self.sendLine("550 Onion address collision")
            return
        self.factory.onions[service_id] = "{}:{}".format(key_type, key_blob)
        lines = ["250-ServiceID={}".format(service_id)]
        if send_key:
            lines.append("250-PrivateKey={}:{}".format(key_type, key_blob))
        lines.append("250 OK")
        self.sendLines(lines)

    def lineLengthExceeded(self, line):
        '''
        overrides twisted function
        '''
        logging.warning("Connection with {}: line too long, dropping connection"
                        .format(transport_info(self.transport)))
        return LineOnlyReceiver.lineLengthExceeded(self, line)

    def connectionLost(self, reason):
        '''
        overrides twisted function
        '''
        logging.debug("Connection with {} was lost: {}"
                      .format(transport_info(self.transport),
                              reason.getErrorMessage()))
        self.clear()

class TorControlServerFactory(ServerFactory):
    '''
    Shared state for TorControlServerProtocol connections.
    password: the control password, or None.
    cookie_file: the path the cookie is written to, or None.
    cookie_string: the cookie, or None for a random cookie (if cookie_file is
    set), or no cookie authentication (if it is not).
    '''

    def __init__(self, password=None, cookie_file=None, cookie_string=None):
        self.password = password
        self.cookie_file = cookie_file
        if cookie_file is not None:
            cookie_string = TorControlProtocol.writeCookieFile(cookie_file,
                                                               cookie_string)
        self.cookie_string = cookie_string
        # service dir: {virtual port: target}
        self.hidden_services = {}
        # service id: private key
        self.onions = {}

    def buildProtocol(self, addr):
        return TorControlServerProtocol(self)
