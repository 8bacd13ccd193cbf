import pytest

from healer_core.exceptions import CredentialError
from healer_core.execution.crypto import AUTH_KEY, AUTH_PASSWORD, CredentialCipher


def test_document_round_trip_and_ciphertext_hides_secret():
    cipher = CredentialCipher("k1")
    token = cipher.encrypt_document({"password": "pa55word-xyz"})
    assert "pa55word-xyz" not in token
    assert cipher.decrypt_document(token, AUTH_PASSWORD) == {"password": "pa55word-xyz"}


def test_wrong_key_raises_credential_error_without_detail():
    token = CredentialCipher("k1").encrypt_credential("secret-value")
    with pytest.raises(CredentialError) as exc:
        CredentialCipher("k2").decrypt_credential(token)
    assert "secret-value" not in str(exc.value)


def test_document_shape_is_checked_against_auth_type():
    cipher = CredentialCipher("k1")
    with pytest.raises(CredentialError):
        cipher.decrypt_document(cipher.encrypt_document({"password": "x"}), AUTH_KEY)
    with pytest.raises(CredentialError):
        cipher.decrypt_document(cipher.encrypt_document({"private_key": "x"}), AUTH_PASSWORD)
    with pytest.raises(CredentialError):
        cipher.decrypt_document(cipher.encrypt_credential("not json"), AUTH_PASSWORD)
    with pytest.raises(CredentialError):
        cipher.decrypt_document(cipher.encrypt_document({"password": "x"}), "kerberos")


def test_missing_secret_key_rejected():
    with pytest.raises(CredentialError):
        CredentialCipher("")
