#!/usr/bin/env python
# See LICENSE for licensing information

# Test password, cookie, and SAFECOOKIE authentication against scripted
# control port replies

import hashlib
import hmac
import logging

from binascii import hexlify, unhexlify

from onionctl.errors import AuthError, ControlFileError, ProtocolError
from onionctl.protocol import TorControlClientProtocol, TorControlProtocol

from control_helpers import (TEST_COOKIE, make_client, sent_lines, feed,
                             success_of, failure_of)

logging.basicConfig(level=logging.INFO)
logging.root.name = ''

SERVER_KEY = b"Tor safe cookie authentication server-to-controller hash"
CLIENT_KEY = b"Tor safe cookie authentication controller-to-server hash"

def write_cookie(tmp_path, cookie=TEST_COOKIE):
    cookie_path = tmp_path / "control_auth_cookie"
    cookie_path.write_bytes(cookie)
    return str(cookie_path)

def reference_hash(key, cookie, client_nonce, server_nonce):
    return hmac.new(key, cookie + client_nonce + server_nonce,
                    hashlib.sha256).digest()

def start_safecookie(tmp_path):
    '''
    Start SAFECOOKIE authentication, and return the client, transport,
    Deferred, cookie path, and the client nonce that was sent.
    '''
    client, transport = make_client()
    cookie_path = write_cookie(tmp_path)
    d = client.safeCookieAuthenticate(cookie_path)
    lines = sent_lines(transport)
    assert len(lines) == 1
    prefix = "AUTHCHALLENGE SAFECOOKIE "
    assert lines[0].startswith(prefix)
    client_nonce = unhexlify(lines[0][len(prefix):])
    assert len(client_nonce) == 32
    return (client, transport, d, cookie_path, client_nonce)

def challenge_line(server_hash, server_nonce):
    return "250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}".format(
        hexlify(server_hash).decode('ascii').upper(),
        hexlify(server_nonce).decode('ascii').upper())

def test_password_accepted():
    client, transport = make_client()
    d = client.passwordAuthenticate("hunter2")
    assert transport.value() == b'AUTHENTICATE "hunter2"\n'
    feed(client, "250 OK", line_ending="\n")
    assert success_of(d) is True
    assert client.isAuthenticated()

def test_password_rejected():
    client, transport = make_client()
    d = client.passwordAuthenticate("hunter2")
    assert transport.value() == b'AUTHENTICATE "hunter2"\n'
    feed(client, "515 Bad password", line_ending="\n")
    e = failure_of(d, AuthError)
    assert e.code == 515
    assert e.message == "Bad password"
    assert not client.isAuthenticated()

def test_password_quoting():
    client, transport = make_client()
    client.passwordAuthenticate('a "quoted" \\ password')
    assert sent_lines(transport) == \
        ['AUTHENTICATE "a \\"quoted\\" \\\\ password"']

def test_password_with_trailing_backslash():
    client, transport = make_client()
    d = client.passwordAuthenticate('hunter2\\')
    assert sent_lines(transport) == ['AUTHENTICATE "hunter2\\\\"']
    feed(client, "250 OK")
    assert success_of(d) is True

def test_password_not_text():
    for password in [None, b"hunter2"]:
        client, transport = make_client()
        failure_of(client.passwordAuthenticate(password), ProtocolError)
        assert transport.value() == b""

def test_password_file(tmp_path):
    password_path = tmp_path / "password"
    password_path.write_bytes(b'a "quoted" \\ password\r\n')
    assert TorControlProtocol.readPasswordFile(str(password_path)) == \
        'a "quoted" \\ password'
    password_path.write_bytes(b"\xff\xfe\xfa")
    try:
        TorControlProtocol.readPasswordFile(str(password_path))
    except ControlFileError:
        pass
    else:
        assert False, "read a password file that is not UTF-8"

def test_password_with_line_break_is_not_sent():
    client, transport = make_client()
    failure_of(client.passwordAuthenticate("hunter2\nQUIT"), ProtocolError)
    assert transport.value() == b""

def test_cookie(tmp_path):
    client, transport = make_client()
    d = client.cookieAuthenticate(write_cookie(tmp_path))
    assert sent_lines(transport) == \
        ["AUTHENTICATE " + hexlify(TEST_COOKIE).decode('ascii')]
    feed(client, "250 OK")
    assert success_of(d) is True

def test_cookie_wrong_length(tmp_path):
    for cookie in [TEST_COOKIE[:31], TEST_COOKIE + b"x", b""]:
        client, transport = make_client()
        d = client.cookieAuthenticate(write_cookie(tmp_path, cookie))
        e = failure_of(d, ControlFileError)
        assert isinstance(e, IOError)
        assert transport.value() == b""

def test_cookie_missing(tmp_path):
    client, transport = make_client()
    d = client.cookieAuthenticate(str(tmp_path / "missing"))
    failure_of(d, ControlFileError)
    assert transport.value() == b""

def test_safecookie(tmp_path):
    client, transport, d, _, client_nonce = start_safecookie(tmp_path)
    server_nonce = bytes(range(100, 132))
    server_hash = reference_hash(SERVER_KEY, TEST_COOKIE, client_nonce,
                                 server_nonce)
    feed(client, challenge_line(server_hash, server_nonce))
    lines = sent_lines(transport)
    assert len(lines) == 1
    expected_client_hash = reference_hash(CLIENT_KEY, TEST_COOKIE,
                                          client_nonce, server_nonce)
    assert lines[0] == \
        "AUTHENTICATE " + hexlify(expected_client_hash).decode('ascii')
    assert not d.called
    feed(client, "250 OK")
    assert success_of(d) is True
    assert client.isAuthenticated()

def test_safecookie_corrupt_server_hash(tmp_path):
    client, transport, d, _, client_nonce = start_safecookie(tmp_path)
    server_nonce = bytes(range(100, 132))
    server_hash = bytearray(reference_hash(SERVER_KEY, TEST_COOKIE,
                                           client_nonce, server_nonce))
    server_hash[7] ^= 0x01
    feed(client, challenge_line(bytes(server_hash), server_nonce))
    e = failure_of(d, AuthError)
    assert str(e) == "server hash invalid"
    assert e.code is None
    # the client hash was never sent
    assert transport.value() == b""

def test_safecookie_server_hash_for_other_cookie(tmp_path):
    client, transport, d, _, client_nonce = start_safecookie(tmp_path)
    server_nonce = bytes(range(100, 132))
    server_hash = reference_hash(SERVER_KEY, bytes(32), client_nonce,
                                 server_nonce)
    feed(client, challenge_line(server_hash, server_nonce))
    failure_of(d, AuthError)
    assert transport.value() == b""

def test_safecookie_rejected(tmp_path):
    client, transport, d, _, client_nonce = start_safecookie(tmp_path)
    server_nonce = bytes(32)
    server_hash = reference_hash(SERVER_KEY, TEST_COOKIE, client_nonce,
                                 server_nonce)
    feed(client, challenge_line(server_hash, server_nonce))
    assert len(sent_lines(transport)) == 1
    feed(client, "515 Authentication failed: Safe cookie response did not match expected value.")
    e = failure_of(d, AuthError)
    assert e.code == 515

def test_safecookie_challenge_rejected(tmp_path):
    client, transport, d, _, _ = start_safecookie(tmp_path)
    feed(client, "513 Invalid base16 client nonce")
    e = failure_of(d, AuthError)
    assert e.code == 513
    assert transport.value() == b""

def check_malformed_challenge(tmp_path, line):
    client, transport, d, _, _ = start_safecookie(tmp_path)
    feed(client, line)
    failure_of(d, ProtocolError)
    assert transport.value() == b""

def test_safecookie_malformed_challenge(tmp_path):
    good_hash = "AB" * 32
    good_nonce = "CD" * 32
    for line in [
        # missing fields
        "250 AUTHCHALLENGE SERVERHASH={}".format(good_hash),
        "250 AUTHCHALLENGE SERVERNONCE={}".format(good_nonce),
        "250 AUTHCHALLENGE",
        # wrong prefix
        "250 OK",
        "250 SERVERHASH={} SERVERNONCE={}".format(good_hash, good_nonce),
        # repeated fields
        "250 AUTHCHALLENGE SERVERHASH={} SERVERHASH={} SERVERNONCE={}"
        .format(good_hash, good_hash, good_nonce),
        # not hex
        "250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}"
        .format("XY" * 32, good_nonce),
        "250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}"
        .format(good_hash, "\"quoted\""),
        # wrong lengths
        "250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}"
        .format("AB" * 31, good_nonce),
        "250 AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}"
        .format(good_hash, "CD" * 33),
        "250 AUTHCHALLENGE SERVERHASH= SERVERNONCE={}".format(good_nonce),
        # not a key=value field
        "250 AUTHCHALLENGE SERVERHASH {} SERVERNONCE={}"
        .format(good_hash, good_nonce),
        ]:
        check_malformed_challenge(tmp_path, line)

def test_parse_auth_challenge():
    server_hash, server_nonce = TorControlClientProtocol.parseAuthChallenge(
        "AUTHCHALLENGE SERVERHASH={} SERVERNONCE={}".format("ab" * 32,
                                                           "CD" * 32))
    assert server_hash == b"\xab" * 32
    assert server_nonce == b"\xcd" * 32

def test_safecookie_bad_cookie_file(tmp_path):
    client, transport = make_client()
    d = client.safeCookieAuthenticate(write_cookie(tmp_path, b"short"))
    failure_of(d, ControlFileError)
    assert transport.value() == b""

def test_safecookie_nonce_is_fresh(tmp_path):
    nonces = set()
    for _ in range(3):
        _, _, _, _, client_nonce = start_safecookie(tmp_path)
        nonces.add(client_nonce)
    assert len(nonces) == 3

def test_protocol_info():
    client, transport = make_client()
    d = client.getProtocolInfo()
    assert sent_lines(transport) == ["PROTOCOLINFO 1"]
    feed(client,
         "250-PROTOCOLINFO 1",
         "250-AUTH METHODS=COOKIE,SAFECOOKIE,HASHEDPASSWORD COOKIEFILE=\"/var/run/tor dir/control.authcookie\"",
         "250-VERSION Tor=\"0.4.8.10\"",
         "250 OK")
    info = success_of(d)
    assert info['auth_methods'] == ["COOKIE", "SAFECOOKIE", "HASHEDPASSWORD"]
    assert info['cookie_file'] == "/var/run/tor dir/control.authcookie"
    assert info['tor_version'] == "0.4.8.10"

def test_protocol_info_without_cookie():
    info = TorControlClientProtocol.parseProtocolInfo(
        "PROTOCOLINFO 1\nAUTH METHODS=NULL\nOK")
    assert info['auth_methods'] == ["NULL"]
    assert info['cookie_file'] is None
    assert info['tor_version'] is None

def test_authenticate_prefers_safecookie(tmp_path):
    cookie_path = write_cookie(tmp_path)
    client, transport = make_client()
    d = client.authenticate(password="hunter2")
    sent_lines(transport)
    feed(client,
         "250-PROTOCOLINFO 1",
         "250-AUTH METHODS=HASHEDPASSWORD,COOKIE,SAFECOOKIE COOKIEFILE={}"
         .format(TorControlProtocol.encodeControllerString(cookie_path,
                                                           hex_encode=False)),
         "250 OK")
    lines = sent_lines(transport)
    assert len(lines) == 1
    assert lines[0].startswith("AUTHCHALLENGE SAFECOOKIE ")
    # a failed SAFECOOKIE attempt does not fall back to the password
    feed(client, "513 Invalid base16 client nonce")
    failure_of(d, AuthError)
    assert transport.value() == b""

def test_authenticate_uses_password():
    client, transport = make_client()
    d = client.authenticate(password="hunter2")
    sent_lines(transport)
    feed(client,
         "250-PROTOCOLINFO 1",
         "250-AUTH METHODS=HASHEDPASSWORD",
         "250 OK")
    assert sent_lines(transport) == ['AUTHENTICATE "hunter2"']
    feed(client, "250 OK")
    assert success_of(d) is True

def test_authenticate_no_usable_method():
    client, transport = make_client()
    d = client.authenticate()
    sent_lines(transport)
    feed(client,
         "250-PROTOCOLINFO 1",
         "250-AUTH METHODS=HASHEDPASSWORD",
         "250 OK")
    failure_of(d, AuthError)
    assert transport.value() == b""

def test_authenticate_null():
    client, transport = make_client()
    d = client.authenticate()
    sent_lines(transport)
    feed(client, "250-PROTOCOLINFO 1", "250-AUTH METHODS=NULL", "250 OK")
    assert sent_lines(transport) == ["AUTHENTICATE"]
    feed(client, "250 OK")
    assert success_of(d) is True
