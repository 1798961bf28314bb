import base64
import hashlib

import pytest

from x402_facilitator.claims.keys import API_KEY_PREFIX, KeyCipher, generate_api_key, hash_api_key
from x402_facilitator.errors import ConfigurationError, KeyDecryptionError

from conftest import REFUND_KEY

# Low iteration count keeps the tests fast; layout is unchanged
ITERATIONS = 1000


@pytest.fixture
def cipher():
    return KeyCipher("test-encryption-secret", iterations=ITERATIONS)


def test_round_trip(cipher):
    encoded = cipher.encrypt(REFUND_KEY)
    assert encoded != REFUND_KEY
    assert cipher.decrypt(encoded) == REFUND_KEY


def test_layout_is_salt_iv_tag_ciphertext(cipher):
    blob = base64.b64decode(cipher.encrypt(REFUND_KEY))
    assert len(blob) == 32 + 16 + 16 + len(REFUND_KEY)


def test_fresh_salt_per_encryption(cipher):
    assert cipher.encrypt(REFUND_KEY) != cipher.encrypt(REFUND_KEY)


def test_wrong_secret_fails(cipher):
    encoded = cipher.encrypt(REFUND_KEY)
    with pytest.raises(KeyDecryptionError):
        KeyCipher("another-secret", iterations=ITERATIONS).decrypt(encoded)


def test_tampered_ciphertext_fails(cipher):
    blob = bytearray(base64.b64decode(cipher.encrypt(REFUND_KEY)))
    blob[-1] ^= 0x01
    with pytest.raises(KeyDecryptionError):
        cipher.decrypt(base64.b64encode(bytes(blob)).decode())


@pytest.mark.parametrize("encoded", ["not base64!", base64.b64encode(b"short").decode(), ""])
def test_malformed_input_fails(cipher, encoded):
    with pytest.raises(KeyDecryptionError):
        cipher.decrypt(encoded)


def test_empty_secret_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        KeyCipher("")


def test_api_key_hash_is_sha256_hex():
    assert hash_api_key("x402_secret") == hashlib.sha256(b"x402_secret").hexdigest()


def test_generated_api_keys_are_unique():
    first, second = generate_api_key(), generate_api_key()
    assert first.startswith(API_KEY_PREFIX)
    assert len(first) == len(API_KEY_PREFIX) + 64
    assert first != second


# Run with: pytest -q tests/test_keys.py
