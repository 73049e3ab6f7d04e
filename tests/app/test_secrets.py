import pytest
from keyring.backends import fail
from keyring.errors import KeyringError, PasswordDeleteError

from air_monitor.app import secrets
from air_monitor.app.secrets import KeyringCredentialStore, MemoryCredentialStore, keyring_available
from air_monitor.worker.errors import CredentialError

"""
Credential stores. The real keyring is never touched: the module-level
`keyring` reference is replaced by a mock.
"""


@pytest.fixture
def mock_keyring(mocker):
    return mocker.patch.object(secrets, "keyring")


def test_memory_store_round_trip():
    store = MemoryCredentialStore()
    assert store.get_password("svc", "acct") is None

    store.set_password("svc", "acct", "s3cret")
    assert store.get_password("svc", "acct") == "s3cret"

    store.delete_password("svc", "acct")
    store.delete_password("svc", "acct")
    assert store.get_password("svc", "acct") is None


def test_keyring_store_reads_password(mock_keyring):
    mock_keyring.get_password.return_value = "s3cret"

    assert KeyringCredentialStore().get_password("svc", "acct") == "s3cret"
    mock_keyring.get_password.assert_called_once_with("svc", "acct")


def test_keyring_store_missing_entry_is_none(mock_keyring):
    mock_keyring.get_password.return_value = None
    assert KeyringCredentialStore().get_password("svc", "acct") is None


def test_keyring_read_failure_is_a_credential_error(mock_keyring):
    mock_keyring.get_password.side_effect = KeyringError("locked")
    with pytest.raises(CredentialError, match="locked"):
        KeyringCredentialStore().get_password("svc", "acct")


def test_keyring_write_failure_is_a_credential_error(mock_keyring):
    mock_keyring.set_password.side_effect = KeyringError("read-only")
    with pytest.raises(CredentialError):
        KeyringCredentialStore().set_password("svc", "acct", "s3cret")


def test_deleting_a_missing_entry_is_fine(mock_keyring):
    mock_keyring.delete_password.side_effect = PasswordDeleteError("not found")
    KeyringCredentialStore().delete_password("svc", "acct")


def test_delete_failure_is_a_credential_error(mock_keyring):
    mock_keyring.delete_password.side_effect = KeyringError("backend gone")
    with pytest.raises(CredentialError):
        KeyringCredentialStore().delete_password("svc", "acct")


def test_keyring_available(mock_keyring):
    mock_keyring.get_keyring.return_value = fail.Keyring()
    assert keyring_available() is False

    mock_keyring.get_keyring.return_value = object()
    assert keyring_available() is True

    mock_keyring.get_keyring.side_effect = KeyringError("broken config")
    assert keyring_available() is False
