"""Unit tests for auth/accounts.py -- registration and account administration.

Covers:
- field validators: username, password, email, display name, permission tags
- register(): blocklist, duplicates (case-insensitive), duplicate email
- update_permissions() is visible through the user cache immediately
- update_profile(): email change resets verification, empty patch rejected
- reset_password(): admin only, ends every session of the target
- delete_account(): admin only, no self-delete, NotFound for missing ids
"""

import pytest

from auth.accounts import (
    AccountManager,
    validate_display_name,
    validate_email,
    validate_password,
    validate_tags,
    validate_username,
)
from auth.sessions import SessionManager
from cache.store import UserCache
from core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError

PASSWORD = "Str0ng!Pass"


class TestValidators:
    @pytest.mark.parametrize(
        "username, message",
        [
            ("", "Username is required"),
            ("ab", "at least 3"),
            ("a" * 31, "at most 30"),
            ("bad name", "only contain letters and numbers"),
            ("emoji🙂", "only contain letters and numbers"),
        ],
    )
    def test_bad_usernames(self, username, message) -> None:
        with pytest.raises(ValidationError, match=message) as exc:
            validate_username(username)
        assert exc.value.field == "username"

    def test_username_is_lower_cased(self) -> None:
        assert validate_username("Alice") == "alice"

    @pytest.mark.parametrize("password", ["short", "x" * 129, ""])
    def test_bad_passwords(self, password) -> None:
        with pytest.raises(ValidationError):
            validate_password(password)

    def test_email_normalized(self) -> None:
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"
        assert validate_email(None) is None
        assert validate_email("") is None

    @pytest.mark.parametrize("email", ["no-at-sign", "a@b", "a..b@example.com", ("x" * 65) + "@example.com"])
    def test_bad_emails(self, email) -> None:
        with pytest.raises(ValidationError, match="Invalid email format"):
            validate_email(email)

    def test_display_name_rules(self) -> None:
        assert validate_display_name("  Alice Smith ") == "Alice Smith"
        with pytest.raises(ValidationError):
            validate_display_name("A")
        with pytest.raises(ValidationError):
            validate_display_name("<script>")

    def test_tags_must_be_a_list_of_strings(self) -> None:
        assert validate_tags([" editor ", "viewer"]) == ["editor", "viewer"]
        with pytest.raises(ValidationError, match="must be an array"):
            validate_tags("admin")
        with pytest.raises(ValidationError, match="non-empty strings"):
            validate_tags(["ok", ""])


class TestRegister:
    def test_register_creates_plain_account(self, accounts: AccountManager) -> None:
        user = accounts.register("Alice", PASSWORD, email="alice@example.com")
        assert user.id is not None
        assert user.username == "alice"
        assert user.display_name == "alice"
        assert user.permissions == frozenset()
        assert user.email_verified is False

    def test_password_is_hashed(self, accounts: AccountManager) -> None:
        user = accounts.register("alice", PASSWORD)
        assert user.password_hash != PASSWORD
        assert user.password_hash.startswith("$argon2id$")

    def test_duplicate_username_is_conflict(self, accounts: AccountManager) -> None:
        accounts.register("alice", PASSWORD)
        with pytest.raises(ConflictError, match="Account already exists") as exc:
            accounts.register("ALICE", PASSWORD)
        assert exc.value.field == "username"
        assert exc.value.status_code == 400

    def test_duplicate_email_is_conflict(self, accounts: AccountManager) -> None:
        accounts.register("alice", PASSWORD, email="shared@example.com")
        with pytest.raises(ConflictError, match="Email already in use") as exc:
            accounts.register("bob", PASSWORD, email="Shared@Example.com")
        assert exc.value.field == "email"

    @pytest.mark.parametrize("name", ["admin", "Root", "webmaster", "test", "null"])
    def test_blocked_usernames(self, accounts: AccountManager, name) -> None:
        with pytest.raises(ValidationError, match="Unallowed username"):
            accounts.register(name, PASSWORD)

    def test_create_account_bypasses_blocklist(self, accounts: AccountManager) -> None:
        user = accounts.create_account("admin", PASSWORD, permissions=["admin"])
        assert user.permissions == frozenset({"admin"})


class TestUpdates:
    def test_permission_change_visible_through_cache(self, accounts: AccountManager, users: UserCache) -> None:
        user = accounts.register("alice", PASSWORD)
        assert users.get(user.id).permissions == frozenset()
        accounts.update_permissions(user.id, ["editor"])
        assert users.get(user.id).permissions == frozenset({"editor"})

    def test_update_permissions_unknown_user(self, accounts: AccountManager) -> None:
        with pytest.raises(NotFoundError):
            accounts.update_permissions(999, ["editor"])

    def test_email_change_resets_verification(self, accounts: AccountManager, store) -> None:
        user = accounts.register("alice", PASSWORD, email="old@example.com")
        store.update_user(user.id, email_verified=True)
        updated = accounts.update_profile(accounts.get_user(user.id), email="new@example.com")
        assert updated.email == "new@example.com"
        assert updated.email_verified is False

    def test_display_name_only(self, accounts: AccountManager) -> None:
        user = accounts.register("alice", PASSWORD)
        assert accounts.update_profile(user, display_name="Alice A").display_name == "Alice A"

    def test_empty_patch_rejected(self, accounts: AccountManager) -> None:
        user = accounts.register("alice", PASSWORD)
        with pytest.raises(ValidationError, match="No fields to update"):
            accounts.update_profile(user)

    def test_email_taken_by_someone_else(self, accounts: AccountManager) -> None:
        accounts.register("alice", PASSWORD, email="a@example.com")
        bob = accounts.register("bob", PASSWORD)
        with pytest.raises(ConflictError):
            accounts.update_profile(bob, email="a@example.com")


class TestAdminOperations:
    @pytest.fixture
    def admin(self, accounts: AccountManager):
        return accounts.create_account("boss", PASSWORD, permissions=["admin"])

    def test_reset_password_ends_sessions(
        self, accounts: AccountManager, sessions: SessionManager, admin
    ) -> None:
        alice = accounts.register("alice", PASSWORD)
        token, _ = sessions.login("alice", PASSWORD)
        assert accounts.reset_password(alice.id, "N3w-password!", admin) == 1
        assert sessions.resolve(token) is None
        new_token, _ = sessions.login("alice", "N3w-password!")
        assert sessions.resolve(new_token).id == alice.id

    def test_reset_password_requires_admin(self, accounts: AccountManager) -> None:
        alice = accounts.register("alice", PASSWORD)
        bob = accounts.register("bob", PASSWORD)
        with pytest.raises(AuthorizationError):
            accounts.reset_password(alice.id, "N3w-password!", bob)

    def test_reset_password_unknown_user(self, accounts: AccountManager, admin) -> None:
        with pytest.raises(NotFoundError):
            accounts.reset_password(999, "N3w-password!", admin)

    def test_delete_account(self, accounts: AccountManager, admin) -> None:
        alice = accounts.register("alice", PASSWORD)
        accounts.delete_account(alice.id, admin)
        with pytest.raises(NotFoundError):
            accounts.get_user(alice.id)

    def test_cannot_delete_self(self, accounts: AccountManager, admin) -> None:
        with pytest.raises(ValidationError, match="Cannot delete your own account"):
            accounts.delete_account(admin.id, admin)

    def test_delete_requires_admin(self, accounts: AccountManager) -> None:
        alice = accounts.register("alice", PASSWORD)
        bob = accounts.register("bob", PASSWORD)
        with pytest.raises(AuthorizationError):
            accounts.delete_account(alice.id, bob)

    def test_delete_missing_user_is_not_found_every_time(self, accounts: AccountManager, admin) -> None:
        for _ in range(2):
            with pytest.raises(NotFoundError):
                accounts.delete_account(999, admin)
