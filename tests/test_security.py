import pytest

from staff_auth.core.errors import JWTKeyError, PasswordPolicyError
from staff_auth.core.fernet_crypto import decrypt_secret, encrypt_secret
from staff_auth.core.security import (
    constant_time_verify,
    decode_token,
    encode_token,
    generate_numeric_code,
    generate_opaque_token,
    get_password_hash,
    hash_code,
    hash_token,
    verify_password,
)


def test_password_hashing_and_verify(settings):
    password = "S0meP@ss!WithLength"
    hashed = get_password_hash(password, settings=settings)
    assert hashed != password
    assert verify_password(password, hashed)
    assert verify_password("S0meP@ss!", hashed) is False


def test_short_password_is_rejected(settings):
    with pytest.raises(PasswordPolicyError):
        get_password_hash("short", settings=settings)


def test_constant_time_verify_without_hash_is_false(settings):
    assert constant_time_verify(None, "anything", settings=settings) is False
    hashed = get_password_hash("Password123!", settings=settings)
    assert constant_time_verify(hashed, "Password123!", settings=settings) is True


def test_code_hash_is_salted():
    first = hash_code("123456", rounds=4)
    second = hash_code("123456", rounds=4)
    assert first != second
    assert verify_password("123456", first)
    assert verify_password("123456", second)


def test_numeric_code_shape():
    for _ in range(50):
        code = generate_numeric_code(6)
        assert len(code) == 6
        assert code.isdigit()
        assert code[0] != "0"


def test_token_hash_is_stable_and_opaque_tokens_are_unique():
    token = generate_opaque_token()
    assert len(token) == 64
    assert hash_token(token) == hash_token(token)
    assert token != generate_opaque_token()


def test_rs256_round_trip(rsa_settings):
    token = encode_token({"type": "access", "sub": "identity-1"}, rsa_settings)
    decoded = decode_token(token, rsa_settings, expected_type="access")
    assert decoded["sub"] == "identity-1"


def test_decode_rejects_wrong_type(settings):
    token = encode_token({"type": "refresh", "sub": "identity-1"}, settings)
    with pytest.raises(ValueError):
        decode_token(token, settings, expected_type="access")


def test_decode_rejects_other_signer(settings):
    other = settings.model_copy(update={"jwt_secret": "a-different-secret-value"})
    token = encode_token({"type": "access", "sub": "identity-1"}, other)
    with pytest.raises(ValueError):
        decode_token(token, settings)


def test_missing_key_material_is_an_infrastructure_error(settings):
    unconfigured = settings.model_copy(update={"jwt_secret": None})
    with pytest.raises(JWTKeyError):
        encode_token({"type": "access"}, unconfigured)


def test_fernet_secret_at_rest(settings):
    stored = encrypt_secret("JBSWY3DPEHPK3PXP", settings)
    assert "JBSWY3DPEHPK3PXP" not in stored
    assert decrypt_secret(stored, settings) == "JBSWY3DPEHPK3PXP"
