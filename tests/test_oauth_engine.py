"""Unit tests for auth/oauth.py -- the OAuth 2.0 authorization-code provider.

Covers:
- application registration: credentials generated, redirect URIs validated
- owner-or-admin access to application management
- authorize(): exact redirect_uri match, error codes, state passthrough
- exchange: succeeds exactly once; second exchange is invalid_grant
- racing exchanges of one code on a file database: exactly one wins
- exchange failures: wrong secret, wrong redirect_uri, expired code
- validate_access_token(): valid right after issue; expired tokens removed
- deleting an application twice reports NotFound both times
- connected applications and per-client revocation
"""

import threading
from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, urlparse

import pytest

import auth.oauth as oauth_module
from auth.accounts import AccountManager
from auth.oauth import OAuthProvider
from auth.store import CredentialStore
from cache.store import UserCache
from core.errors import AuthorizationError, LoginRequired, NotFoundError, OAuthError, ValidationError

PASSWORD = "Str0ng!Pass"
CALLBACK = "https://client.test/cb"


@pytest.fixture
def owner(accounts: AccountManager):
    return accounts.create_account("owner", PASSWORD)


@pytest.fixture
def alice(accounts: AccountManager):
    return accounts.create_account("alice", PASSWORD)


@pytest.fixture
def client_app(oauth: OAuthProvider, owner):
    return oauth.create_application(owner, "Client", redirect_uris=[CALLBACK], scopes=["profile"])


def _code_from(location: str) -> dict[str, list[str]]:
    return parse_qs(urlparse(location).query)


def _issue_code(oauth: OAuthProvider, app, user, state: str | None = "xyz") -> str:
    location = oauth.authorize(app.client_id, CALLBACK, "code", "profile", state, user)
    return _code_from(location)["code"][0]


def _exchange(oauth: OAuthProvider, app, code: str, secret: str | None = None, redirect_uri: str = CALLBACK):
    return oauth.exchange_code_for_token(
        "authorization_code", code, app.client_id, secret or app.client_secret, redirect_uri
    )


class TestRegistry:
    def test_credentials_are_generated(self, client_app) -> None:
        assert len(client_app.client_id) == 32
        assert len(client_app.client_secret) == 64
        assert client_app.redirect_uris == [CALLBACK]

    def test_single_redirect_string_is_accepted(self, oauth: OAuthProvider, owner) -> None:
        app = oauth.create_application(owner, "Solo", redirect_uris=CALLBACK)
        assert app.redirect_uris == [CALLBACK]

    @pytest.mark.parametrize("uris", [[], None, [""], ["not-a-uri"], ["https://client.test/cb#frag"]])
    def test_bad_redirect_uris(self, oauth: OAuthProvider, owner, uris) -> None:
        with pytest.raises(ValidationError) as exc:
            oauth.create_application(owner, "Bad", redirect_uris=uris)
        assert exc.value.field == "redirect_uris"

    def test_name_required(self, oauth: OAuthProvider, owner) -> None:
        with pytest.raises(ValidationError, match="name is required"):
            oauth.create_application(owner, "", redirect_uris=[CALLBACK])

    def test_non_owner_cannot_manage(self, oauth: OAuthProvider, client_app, alice) -> None:
        with pytest.raises(AuthorizationError):
            oauth.get_application(client_app.id, alice)
        with pytest.raises(AuthorizationError):
            oauth.delete_application(client_app.id, alice)

    def test_admin_can_manage_and_list_all(self, oauth: OAuthProvider, accounts: AccountManager, client_app) -> None:
        admin = accounts.create_account("boss", PASSWORD, permissions=["admin"])
        assert oauth.get_application(client_app.id, admin).id == client_app.id
        assert [a.id for a in oauth.list_applications(admin, include_all=True)] == [client_app.id]
        assert oauth.list_applications(admin) == []

    def test_include_all_requires_admin(self, oauth: OAuthProvider, alice) -> None:
        with pytest.raises(AuthorizationError):
            oauth.list_applications(alice, include_all=True)

    def test_update_replaces_fields(self, oauth: OAuthProvider, client_app, owner) -> None:
        updated = oauth.update_application(
            client_app.id, owner, "Renamed", redirect_uris=["https://client.test/new"], scopes=[]
        )
        assert updated.name == "Renamed"
        assert updated.redirect_uris == ["https://client.test/new"]
        assert updated.client_secret == client_app.client_secret

    def test_delete_missing_twice(self, oauth: OAuthProvider, owner) -> None:
        for _ in range(2):
            with pytest.raises(NotFoundError):
                oauth.delete_application(4242, owner)


class TestAuthorize:
    def test_redirect_carries_code_and_state(self, oauth: OAuthProvider, client_app, alice) -> None:
        location = oauth.authorize(client_app.client_id, CALLBACK, "code", "profile", "xyz", alice)
        assert location.startswith(CALLBACK + "?")
        params = _code_from(location)
        assert params["state"] == ["xyz"]
        assert len(params["code"][0]) == 64

    def test_state_omitted_when_absent(self, oauth: OAuthProvider, client_app, alice) -> None:
        location = oauth.authorize(client_app.client_id, CALLBACK, "code", None, None, alice)
        assert "state" not in _code_from(location)

    def test_unregistered_redirect_is_invalid_request(self, oauth: OAuthProvider, client_app, alice) -> None:
        with pytest.raises(OAuthError) as exc:
            oauth.authorize(client_app.client_id, "https://evil.test/cb", "code", None, None, alice)
        assert exc.value.error == "invalid_request"
        assert exc.value.status_code == 400

    def test_prefix_of_registered_redirect_is_rejected(self, oauth: OAuthProvider, client_app, alice) -> None:
        with pytest.raises(OAuthError):
            oauth.authorize(client_app.client_id, CALLBACK + "/../steal", "code", None, None, alice)

    @pytest.mark.parametrize(
        "client_id, redirect_uri, response_type, error",
        [
            (None, CALLBACK, "code", "invalid_request"),
            ("CLIENT", None, "code", "invalid_request"),
            ("CLIENT", CALLBACK, "token", "unsupported_response_type"),
            ("unknown-client", CALLBACK, "code", "invalid_client"),
        ],
    )
    def test_error_codes(
        self, oauth: OAuthProvider, client_app, alice, client_id, redirect_uri, response_type, error
    ) -> None:
        if client_id == "CLIENT":
            client_id = client_app.client_id
        with pytest.raises(OAuthError) as exc:
            oauth.authorize(client_id, redirect_uri, response_type, None, None, alice)
        assert exc.value.error == error, f"got {exc.value.error}"

    def test_anonymous_caller_must_log_in(self, oauth: OAuthProvider, client_app) -> None:
        with pytest.raises(LoginRequired):
            oauth.authorize(client_app.client_id, CALLBACK, "code", None, None, None)


class TestExchange:
    def test_code_exchanges_exactly_once(self, oauth: OAuthProvider, client_app, alice) -> None:
        code = _issue_code(oauth, client_app, alice)
        issued = _exchange(oauth, client_app, code)
        assert issued["token_type"] == "Bearer"
        assert issued["scope"] == "profile"
        assert issued["expires_in"] is None

        with pytest.raises(OAuthError) as exc:
            _exchange(oauth, client_app, code)
        assert exc.value.error == "invalid_grant"

    def test_wrong_secret_is_invalid_client(self, oauth: OAuthProvider, client_app, alice) -> None:
        code = _issue_code(oauth, client_app, alice)
        with pytest.raises(OAuthError) as exc:
            _exchange(oauth, client_app, code, secret="0" * 64)
        assert exc.value.error == "invalid_client"
        assert exc.value.status_code == 401
        # The code survives a failed client authentication.
        assert _exchange(oauth, client_app, code)["access_token"]

    def test_mismatched_redirect_is_invalid_grant(self, oauth: OAuthProvider, client_app, alice) -> None:
        code = _issue_code(oauth, client_app, alice)
        with pytest.raises(OAuthError) as exc:
            _exchange(oauth, client_app, code, redirect_uri="https://client.test/other")
        assert exc.value.error == "invalid_grant"

    def test_wrong_grant_type(self, oauth: OAuthProvider, client_app) -> None:
        with pytest.raises(OAuthError) as exc:
            oauth.exchange_code_for_token("password", "c", client_app.client_id, "s", CALLBACK)
        assert exc.value.error == "unsupported_grant_type"

    def test_missing_fields(self, oauth: OAuthProvider, client_app) -> None:
        with pytest.raises(OAuthError) as exc:
            oauth.exchange_code_for_token("authorization_code", None, client_app.client_id, None, CALLBACK)
        assert exc.value.error == "invalid_request"

    def test_code_expires_after_ten_minutes(self, oauth: OAuthProvider, store, client_app, alice, monkeypatch) -> None:
        code = _issue_code(oauth, client_app, alice)
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        monkeypatch.setattr(oauth_module, "_utcnow", lambda: later)

        with pytest.raises(OAuthError) as exc:
            _exchange(oauth, client_app, code)
        assert exc.value.error == "invalid_grant"
        assert store.get_authorization_code(code, client_app.client_id, CALLBACK) is None


class TestConcurrentExchange:
    """Racing exchanges of one code against a file-backed database."""

    @pytest.fixture
    def file_oauth(self, tmp_path) -> Generator[OAuthProvider, None, None]:
        file_store = CredentialStore(db_url=f"sqlite:///{tmp_path / 'keyhold.db'}")
        yield OAuthProvider(file_store, UserCache(file_store.get_user_by_id))
        file_store.close()

    @pytest.mark.parametrize("workers", [2, 8])
    def test_only_one_racing_exchange_wins(self, file_oauth: OAuthProvider, workers: int) -> None:
        accounts = AccountManager(file_oauth.store, file_oauth.users)
        owner = accounts.create_account("owner", PASSWORD)
        alice = accounts.create_account("alice", PASSWORD)
        app = file_oauth.create_application(owner, "Client", redirect_uris=[CALLBACK])
        code = _issue_code(file_oauth, app, alice)

        barrier = threading.Barrier(workers)
        outcomes: list[str] = []
        lock = threading.Lock()

        def exchange() -> None:
            barrier.wait()
            try:
                _exchange(file_oauth, app, code)
                outcome = "ok"
            except OAuthError as exc:
                outcome = exc.error
            except Exception as exc:  # surfaced through the assertion below
                outcome = repr(exc)
            with lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=exchange) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)

        assert sorted(outcomes) == sorted(["ok"] + ["invalid_grant"] * (workers - 1)), f"got {outcomes}"
        connected = file_oauth.connected_applications(alice.id)
        assert [c.active_tokens for c in connected] == [1]


class TestValidateToken:
    def test_fresh_token_is_valid(self, oauth: OAuthProvider, client_app, alice) -> None:
        token = _exchange(oauth, client_app, _issue_code(oauth, client_app, alice))["access_token"]
        result = oauth.validate_access_token(token)
        assert result.valid is True
        assert result.token.user_id == alice.id
        assert result.token.client_id == client_app.client_id

    def test_unknown_token(self, oauth: OAuthProvider) -> None:
        result = oauth.validate_access_token("nope")
        assert result.valid is False
        assert result.reason == "Invalid access token"

    def test_expired_token_is_removed(self, oauth: OAuthProvider, store, client_app, alice, monkeypatch) -> None:
        token = _exchange(oauth, client_app, _issue_code(oauth, client_app, alice))["access_token"]
        far_future = datetime.now(timezone.utc) + timedelta(days=36501)
        monkeypatch.setattr(oauth_module, "_utcnow", lambda: far_future)

        result = oauth.validate_access_token(token)

        assert result.valid is False
        assert result.reason == "Access token expired"
        assert store.get_access_token(token) is None

    def test_resolve_user(self, oauth: OAuthProvider, client_app, alice) -> None:
        token = _exchange(oauth, client_app, _issue_code(oauth, client_app, alice))["access_token"]
        _, user = oauth.resolve_user(token)
        assert user.id == alice.id


class TestGrants:
    def test_connected_and_revoke(self, oauth: OAuthProvider, client_app, alice) -> None:
        for _ in range(2):
            _exchange(oauth, client_app, _issue_code(oauth, client_app, alice))

        connected = oauth.connected_applications(alice.id)
        assert len(connected) == 1
        assert connected[0].application.client_id == client_app.client_id
        assert connected[0].active_tokens == 2

        assert oauth.revoke_application_access(alice.id, client_app.client_id) == 2
        assert oauth.connected_applications(alice.id) == []
        with pytest.raises(NotFoundError):
            oauth.revoke_application_access(alice.id, client_app.client_id)

    def test_delete_application_cascades(self, oauth: OAuthProvider, client_app, owner, alice) -> None:
        token = _exchange(oauth, client_app, _issue_code(oauth, client_app, alice))["access_token"]
        _issue_code(oauth, client_app, alice)

        counts = oauth.delete_application(client_app.id, owner)

        assert counts == {"codes_deleted": 1, "tokens_deleted": 1}
        assert oauth.validate_access_token(token).valid is False

    def test_purge_expired(self, oauth: OAuthProvider, client_app, alice, monkeypatch) -> None:
        _issue_code(oauth, client_app, alice)
        later = datetime.now(timezone.utc) + timedelta(minutes=11)
        monkeypatch.setattr(oauth_module, "_utcnow", lambda: later)
        assert oauth.purge_expired() == {"codes_deleted": 1, "tokens_deleted": 0}
