# See LICENSE for licensing information

from os import urandom

from cryptography.hazmat.primitives.hashes import SHA256 as CryptoHash
from cryptography.hazmat.primitives import hmac
from cryptography.exceptions import InvalidSignature

def _to_bytes(value):
    '''
    Return value as bytes, encoding str values as UTF-8.
    '''
    if isinstance(value, str):
        return value.encode('utf-8')
    return bytes(value)

def get_hmac(secret_key, unique_prefix, data):
    '''
    Perform a HMAC using the secret key, unique hash prefix, and data.
    Returns HMAC-SHA256(secret_key, unique_prefix | data) as bytes.
    '''
    # If the secret key is shorter than the digest size, security is reduced
    assert secret_key
    assert len(secret_key) >= CryptoHash.digest_size
    h = hmac.HMAC(_to_bytes(secret_key), CryptoHash())
    h.update(_to_bytes(unique_prefix))
    h.update(_to_bytes(data))
    return h.finalize()

def verify_hmac(expected_result, secret_key, unique_prefix, data):
    '''
    Verify that expected_result matches:
    HMAC-SHA256(secret_key, unique_prefix | data)
    The comparison is constant-time.
    Returns True if the HMAC matches, and False if it does not.
    '''
    assert secret_key
    assert len(secret_key) >= CryptoHash.digest_size
    h = hmac.HMAC(_to_bytes(secret_key), CryptoHash())
    h.update(_to_bytes(unique_prefix))
    h.update(_to_bytes(data))
    try:
        h.verify(_to_bytes(expected_result))
        return True
    except InvalidSignature:
        return False

def generate_nonce(length):
    '''
    Generate a random nonce length bytes long.
    '''
    assert length > 0
    return urandom(length)
