import pytest

from tokenchain.service.credentials import PASSWORD_ALGO, PasswordVerifier
from tokenchain.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def verifier(memory_store):
    return PasswordVerifier(memory_store)


@pytest.fixture
def test_user(memory_store, verifier):
    """Create a test user with password."""
    user = memory_store.create_user("test@example.com", "Test User")
    verifier.save_password(user.id, "TestPassword123!")
    return user


class TestPasswordHashing:
    def test_hash_is_argon2id_and_not_plaintext(self, verifier):
        pwd_hash, algo = verifier.hash_password("TestPassword123!")

        assert algo == PASSWORD_ALGO
        assert pwd_hash.startswith("$argon2id$")
        assert "TestPassword123!" not in pwd_hash

    def test_same_password_hashes_differ(self, verifier):
        first, _ = verifier.hash_password("TestPassword123!")
        second, _ = verifier.hash_password("TestPassword123!")
        assert first != second


class TestVerifyCredentials:
    def test_valid_credentials_return_user(self, verifier, test_user):
        user = verifier.verify_credentials("test@example.com", "TestPassword123!")
        assert user is not None
        assert user.id == test_user.id

    def test_email_lookup_is_case_insensitive(self, verifier, test_user):
        assert verifier.verify_credentials("TEST@Example.com", "TestPassword123!").id == test_user.id

    def test_wrong_password(self, verifier, test_user):
        assert verifier.verify_credentials("test@example.com", "wrong") is None

    def test_unknown_email(self, verifier, test_user):
        assert verifier.verify_credentials("nobody@example.com", "TestPassword123!") is None

    def test_user_without_password_record(self, verifier, memory_store):
        memory_store.create_user("nopass@example.com")
        assert verifier.verify_credentials("nopass@example.com", "anything") is None

    def test_unsupported_algorithm_rejected(self, verifier, memory_store, test_user):
        memory_store.save_password(test_user.id, "$2b$12$legacyhash", "bcrypt")
        assert verifier.verify_credentials("test@example.com", "TestPassword123!") is None

    def test_inactive_user_still_returned(self, verifier, memory_store, test_user):
        """Deciding what an inactive account may do is left to the caller."""
        memory_store.set_user_active(test_user.id, False)

        user = verifier.verify_credentials("test@example.com", "TestPassword123!")

        assert user is not None
        assert user.is_active is False
