from datetime import timedelta

import pytest

from tokenchain.storage.errors import AlreadyRevoked, ConstraintViolation
from tokenchain.storage.memory import MemoryStore
from tokenchain.storage.models import TokenState

TTL = timedelta(days=7)


@pytest.fixture
def store(tmp_path, clock):
    return MemoryStore(fs_root=str(tmp_path), clock=clock)


@pytest.fixture
def user(store):
    return store.create_user("Owner@Example.com", "Owner")


class TestUsers:
    def test_email_is_normalized_and_unique(self, store, user):
        assert user.email == "owner@example.com"
        assert store.get_user_by_email("  OWNER@example.COM ").id == user.id
        with pytest.raises(ConstraintViolation):
            store.create_user("owner@example.com")

    def test_set_user_active(self, store, user):
        store.set_user_active(user.id, False)
        assert store.get_user(user.id).is_active is False
        assert store.set_user_active("missing", True) is None

    def test_save_password_requires_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.save_password("missing", "hash", "argon2id")


class TestRefreshTokens:
    def test_create_and_find(self, store, user, clock):
        token = store.create(user.id, TTL)

        found = store.find_by_value(token.token_value)

        assert found.id == token.id
        assert found.issued_at == clock.now
        assert found.expires_at == clock.now + TTL
        assert found.state(clock.now) is TokenState.ACTIVE
        assert token.id != token.token_value
        assert store.find_by_value("unknown") is None

    def test_create_requires_existing_user(self, store):
        with pytest.raises(ConstraintViolation):
            store.create("no-such-user", TTL)

    def test_duplicate_value_rejected(self, store, user):
        store.create(user.id, TTL, token_value="fixed-value")
        with pytest.raises(ConstraintViolation):
            store.create(user.id, TTL, token_value="fixed-value")

    def test_returned_tokens_are_copies(self, store, user):
        token = store.create(user.id, TTL)
        token.revoked_at = token.issued_at
        assert store.get_refresh_token(token.id).revoked_at is None

    def test_revoke_and_link_is_compare_and_set(self, store, user):
        token = store.create(user.id, TTL)

        store.revoke_and_link(token.id, "child-value")

        revoked = store.get_refresh_token(token.id)
        assert revoked.revoked_at is not None
        assert revoked.replaced_by_token_value == "child-value"
        with pytest.raises(AlreadyRevoked) as exc_info:
            store.revoke_and_link(token.id, "other-child")
        assert exc_info.value.token_id == token.id
        assert store.get_refresh_token(token.id).replaced_by_token_value == "child-value"

    def test_rotate_links_parent_to_child(self, store, user):
        parent = store.create(user.id, TTL)

        child = store.rotate(parent.id, "child-value", TTL)

        assert child.token_value == "child-value"
        assert child.user_id == user.id
        assert child.revoked_at is None
        linked = store.get_refresh_token(parent.id)
        assert linked.replaced_by_token_value == child.token_value
        assert linked.state() is TokenState.REVOKED_BY_ROTATION

    def test_rotate_twice_fails_without_second_child(self, store, user):
        parent = store.create(user.id, TTL)
        store.rotate(parent.id, "first-child", TTL)

        with pytest.raises(AlreadyRevoked):
            store.rotate(parent.id, "second-child", TTL)

        assert store.find_by_value("second-child") is None
        assert len(store.list_refresh_tokens(user.id)) == 2

    def test_rotate_with_taken_value_leaves_parent_active(self, store, user):
        parent = store.create(user.id, TTL)
        store.create(user.id, TTL, token_value="taken")

        with pytest.raises(ConstraintViolation):
            store.rotate(parent.id, "taken", TTL)

        assert store.get_refresh_token(parent.id).revoked_at is None

    def test_revoke_all_for_user_counts_only_active(self, store, user, clock):
        other = store.create_user("other@example.com")
        store.create(user.id, TTL)
        store.create(user.id, TTL)
        already = store.create(user.id, TTL)
        store.revoke_and_link(already.id, "x")
        untouched = store.create(other.id, TTL)

        assert store.revoke_all_for_user(user.id) == 2
        assert store.revoke_all_for_user(user.id) == 0
        assert store.list_refresh_tokens(user.id, active_only=True) == []
        assert store.get_refresh_token(untouched.id).revoked_at is None

    def test_expired_token_left_untouched_by_revoke_all(self, store, user, clock):
        token = store.create(user.id, timedelta(minutes=1))
        clock.advance(minutes=2)

        assert store.revoke_all_for_user(user.id) == 0
        assert store.get_refresh_token(token.id).revoked_at is None


class TestChains:
    def _chain(self, store, user, length):
        tokens = [store.create(user.id, TTL)]
        for i in range(length - 1):
            tokens.append(store.rotate(tokens[-1].id, f"link-{i}", TTL))
        return tokens

    def test_find_chain_root_walks_back(self, store, user):
        chain = self._chain(store, user, 4)

        for token in chain:
            assert store.find_chain_root(token.id).id == chain[0].id
        assert store.find_chain_root("missing") is None

    def test_revoke_chain_from_root_marks_every_member(self, store, user, clock):
        chain = self._chain(store, user, 3)
        unrelated = store.create(user.id, TTL)

        marked = store.revoke_chain_from(chain[0].id)

        assert marked == 3
        for token in chain:
            current = store.get_refresh_token(token.id)
            assert current.revoked_at is not None
            assert current.compromised_at == clock.now
        assert store.get_refresh_token(unrelated.id).revoked_at is None

    def test_revoke_chain_keeps_original_revocation_time(self, store, user, clock):
        chain = self._chain(store, user, 2)
        rotated_at = store.get_refresh_token(chain[0].id).revoked_at
        clock.advance(minutes=10)

        store.revoke_chain_from(chain[0].id)

        assert store.get_refresh_token(chain[0].id).revoked_at == rotated_at
        assert store.get_refresh_token(chain[1].id).revoked_at == clock.now

    def test_revoke_chain_is_idempotent(self, store, user):
        chain = self._chain(store, user, 3)
        assert store.revoke_chain_from(chain[0].id) == 3
        assert store.revoke_chain_from(chain[0].id) == 0


class TestPurgeAndPersistence:
    def test_purge_expired_removes_only_old_tokens(self, store, user, clock):
        old = store.create(user.id, timedelta(days=1))
        fresh = store.create(user.id, timedelta(days=60))
        clock.advance(days=40)

        removed = store.purge_expired(clock.now - timedelta(days=30))

        assert removed == 1
        assert store.get_refresh_token(old.id) is None
        assert store.find_by_value(old.token_value) is None
        assert store.get_refresh_token(fresh.id) is not None

    def test_state_survives_reload(self, tmp_path, store, user):
        store.save_password(user.id, "hash-value", "argon2id")
        parent = store.create(user.id, TTL)
        child = store.rotate(parent.id, "child-value", TTL)
        store.revoke_chain_from(parent.id)

        reloaded = MemoryStore(fs_root=str(tmp_path))

        assert reloaded.get_user(user.id).email == user.email
        assert reloaded.get_password_record(user.id) == ("hash-value", "argon2id")
        restored = reloaded.find_by_value(child.token_value)
        assert restored.id == child.id
        assert restored.compromised_at is not None
        assert reloaded.find_chain_root(child.id).id == parent.id

    def test_no_fs_root_means_no_files(self, tmp_path, clock):
        store = MemoryStore(clock=clock)
        user = store.create_user("mem@example.com")
        store.create(user.id, TTL)
        assert not (tmp_path / "state").exists()
