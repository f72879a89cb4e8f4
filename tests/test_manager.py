"""Tests for AuthManager token lifecycle."""

import json
import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from google.auth.exceptions import RefreshError, TransportError
from google.oauth2.credentials import Credentials

from gcal_auth.credentials import CredentialResolver
from gcal_auth.errors import (
    AuthenticationError,
    AuthErrorKind,
    AuthorizationDeniedError,
)
from gcal_auth.flow import OAuthFlowController
from gcal_auth.manager import AuthManager, AuthState, create_auth_manager
from gcal_auth.models import AuthConfig, TokenSet
from gcal_auth.token_store import TOKEN_FILENAME, TokenStore

FUTURE = datetime.now(timezone.utc) + timedelta(hours=1)


def _tokens(access: str = "ya29.stored", refresh: str | None = "1//refresh") -> TokenSet:
    return TokenSet(
        access_token=access,
        refresh_token=refresh,
        expiry=FUTURE.replace(microsecond=0),
        scopes=("https://www.googleapis.com/auth/calendar",),
    )


@pytest.fixture
def config(tmp_path) -> AuthConfig:
    return AuthConfig(credentials_dir=str(tmp_path / "creds"))


@pytest.fixture
def store(config) -> TokenStore:
    return TokenStore(config.credentials_dir, tenant_id="acme")


@pytest.fixture
def flow_controller() -> MagicMock:
    controller = MagicMock(spec=OAuthFlowController)
    controller.run_interactive_flow.return_value = _tokens("ya29.fresh")
    return controller


def _manager(config, store, flow_controller, tmp_path, **resolver_kwargs) -> AuthManager:
    resolver_kwargs.setdefault("client_id", "client-id")
    resolver_kwargs.setdefault("client_secret", "client-secret")
    resolver = CredentialResolver(config.credentials_dir, cwd=tmp_path, **resolver_kwargs)
    return AuthManager(
        config,
        tenant_id="acme",
        resolver=resolver,
        token_store=store,
        flow_controller=flow_controller,
    )


def _audit_events(tmp_path) -> list[str]:
    events = []
    for path in sorted((tmp_path / "audit").glob("*.log")):
        events.extend(json.loads(line)["event"] for line in path.read_text().splitlines())
    return events


# ---------------------------------------------------------------------------
# authenticate()
# ---------------------------------------------------------------------------


class TestAuthenticate:
    def test_stored_tokens_skip_the_flow(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)

        creds = manager.authenticate()

        assert isinstance(creds, Credentials)
        assert creds.token == "ya29.stored"
        assert creds.refresh_token == "1//refresh"
        assert creds.client_id == "client-id"
        assert manager.is_authenticated()
        assert manager.state == AuthState.AUTHENTICATED
        flow_controller.run_interactive_flow.assert_not_called()
        assert "tokens_loaded" in _audit_events(tmp_path)

    def test_stored_tokens_never_open_a_listener(self, config, store, tmp_path) -> None:
        store.save(_tokens())
        listener_factory = MagicMock()
        controller = OAuthFlowController(config, listener_factory=listener_factory)
        manager = _manager(config, store, controller, tmp_path)

        manager.authenticate()

        listener_factory.assert_not_called()

    def test_second_call_returns_same_credential(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        assert manager.authenticate() is manager.authenticate()

    def test_missing_client_is_configuration_error_before_any_listener(
        self, config, store, tmp_path
    ) -> None:
        listener_factory = MagicMock()
        controller = OAuthFlowController(config, listener_factory=listener_factory)
        manager = _manager(
            config, store, controller, tmp_path, client_id=None, client_secret=None
        )

        with pytest.raises(AuthenticationError) as exc_info:
            manager.authenticate()

        assert exc_info.value.kind == AuthErrorKind.CONFIGURATION_ERROR
        assert "gcp-oauth.keys.json" in str(exc_info.value)
        listener_factory.assert_not_called()

    def test_no_stored_tokens_runs_flow_and_persists(
        self, config, store, flow_controller, tmp_path
    ) -> None:
        manager = _manager(config, store, flow_controller, tmp_path)

        creds = manager.authenticate()

        assert creds.token == "ya29.fresh"
        assert store.load() == _tokens("ya29.fresh")
        assert manager.current_tokens == _tokens("ya29.fresh")
        assert manager.state == AuthState.AUTHENTICATED
        args = flow_controller.run_interactive_flow.call_args.args
        assert args[0].client_id == "client-id"
        assert args[1] == list(config.scopes)
        events = _audit_events(tmp_path)
        assert events[:2] == ["flow_started", "flow_completed"]

    def test_denied_flow_writes_nothing(self, config, store, flow_controller, tmp_path) -> None:
        flow_controller.run_interactive_flow.side_effect = AuthorizationDeniedError("access_denied")
        manager = _manager(config, store, flow_controller, tmp_path)

        with pytest.raises(AuthorizationDeniedError, match="access_denied"):
            manager.authenticate()

        assert not (store.storage_dir / TOKEN_FILENAME).exists()
        assert manager.state == AuthState.FAILED
        assert not manager.is_authenticated()
        assert "flow_failed" in _audit_events(tmp_path)

    def test_failed_state_is_not_terminal(self, config, store, flow_controller, tmp_path) -> None:
        flow_controller.run_interactive_flow.side_effect = [
            AuthorizationDeniedError("access_denied"),
            _tokens("ya29.retry"),
        ]
        manager = _manager(config, store, flow_controller, tmp_path)

        with pytest.raises(AuthorizationDeniedError):
            manager.authenticate()
        assert manager.authenticate().token == "ya29.retry"
        assert flow_controller.run_interactive_flow.call_count == 2

    def test_force_ignores_stored_tokens(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()

        creds = manager.authenticate(force=True)

        assert creds.token == "ya29.fresh"
        flow_controller.run_interactive_flow.assert_called_once()

    def test_malformed_token_file_treated_as_absent(
        self, config, store, flow_controller, tmp_path
    ) -> None:
        store.storage_dir.mkdir(parents=True)
        (store.storage_dir / TOKEN_FILENAME).write_text("not-an-envelope")
        manager = _manager(config, store, flow_controller, tmp_path)

        assert manager.authenticate().token == "ya29.fresh"

    def test_other_tenant_tokens_are_not_used(self, config, flow_controller, tmp_path) -> None:
        TokenStore(config.credentials_dir, tenant_id="other").save(_tokens("ya29.other"))
        manager = _manager(
            config, TokenStore(config.credentials_dir, tenant_id="acme"), flow_controller, tmp_path
        )

        assert manager.authenticate().token == "ya29.fresh"

    def test_concurrent_callers_share_one_flow(self, config, store, tmp_path) -> None:
        release = threading.Event()
        entered = threading.Event()

        def slow_flow(client, scopes):
            entered.set()
            release.wait(5)
            return _tokens("ya29.shared")

        controller = MagicMock(spec=OAuthFlowController)
        controller.run_interactive_flow.side_effect = slow_flow
        manager = _manager(config, store, controller, tmp_path)

        results = []
        threads = [threading.Thread(target=lambda: results.append(manager.authenticate())) for _ in range(3)]
        threads[0].start()
        assert entered.wait(5)
        assert manager.state == AuthState.FLOW_IN_PROGRESS
        for t in threads[1:]:
            t.start()
        release.set()
        for t in threads:
            t.join(5)

        assert controller.run_interactive_flow.call_count == 1
        assert len(results) == 3
        assert all(r.token == "ya29.shared" for r in results)

    def test_verify_stored_tokens_when_enabled(self, tmp_path, flow_controller) -> None:
        config = AuthConfig(credentials_dir=str(tmp_path / "creds"), verify_stored_tokens=True)
        store = TokenStore(config.credentials_dir, tenant_id="acme")
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)

        with patch("gcal_auth.manager.verify_access") as mock_verify:
            creds = manager.authenticate()

        mock_verify.assert_called_once()
        assert mock_verify.call_args.args[0].token == "ya29.stored"
        assert creds.token == "ya29.stored"

    def test_failed_verification_installs_nothing(self, tmp_path, flow_controller) -> None:
        config = AuthConfig(credentials_dir=str(tmp_path / "creds"), verify_stored_tokens=True)
        store = TokenStore(config.credentials_dir, tenant_id="acme")
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        revoked = AuthenticationError("revoked", AuthErrorKind.TOKEN_EXPIRED, retryable=True)

        with patch("gcal_auth.manager.verify_access", side_effect=revoked) as mock_verify:
            with pytest.raises(AuthenticationError):
                manager.authenticate()
            assert not manager.is_authenticated()
            assert manager.current_tokens is None
            assert manager.state == AuthState.FAILED

            with pytest.raises(AuthenticationError):
                manager.authenticate()

        assert mock_verify.call_count == 2
        flow_controller.run_interactive_flow.assert_not_called()
        assert "tokens_rejected" in _audit_events(tmp_path)

    def test_stored_tokens_trusted_by_default(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)

        with patch("gcal_auth.manager.verify_access") as mock_verify:
            manager.authenticate()

        mock_verify.assert_not_called()


class TestAuthMethod:
    def test_unimplemented_method(self, tmp_path) -> None:
        with pytest.raises(AuthenticationError) as exc_info:
            AuthManager(AuthConfig(credentials_dir=str(tmp_path), method="service_account"))
        assert exc_info.value.kind == AuthErrorKind.CONFIGURATION_ERROR
        assert "not yet implemented" in str(exc_info.value)

    def test_unknown_method(self, tmp_path) -> None:
        with pytest.raises(AuthenticationError, match="Unsupported authentication method"):
            AuthManager(AuthConfig(credentials_dir=str(tmp_path), method="saml"))


# ---------------------------------------------------------------------------
# refresh()
# ---------------------------------------------------------------------------


class TestRefresh:
    def test_refresh_persists_new_access_token(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()
        before = manager.current_tokens
        new_expiry = datetime(2032, 2, 2, 10, 0)

        def fake_refresh(self, request):
            self.token = "ya29.refreshed"
            self.expiry = new_expiry

        with patch.object(Credentials, "refresh", autospec=True, side_effect=fake_refresh):
            manager.refresh()

        after = manager.current_tokens
        assert after is not before
        assert before.access_token == "ya29.stored"
        assert after.access_token == "ya29.refreshed"
        assert after.refresh_token == "1//refresh"
        assert after.scopes == before.scopes
        assert after.expiry == new_expiry.replace(tzinfo=timezone.utc)
        assert store.load() == after
        assert manager.authenticate().token == "ya29.refreshed"
        assert manager.state == AuthState.AUTHENTICATED
        assert "tokens_refreshed" in _audit_events(tmp_path)

    def test_refresh_without_tokens(self, config, store, flow_controller, tmp_path) -> None:
        manager = _manager(config, store, flow_controller, tmp_path)
        with pytest.raises(AuthenticationError) as exc_info:
            manager.refresh()
        assert exc_info.value.kind == AuthErrorKind.REFRESH_FAILED

    def test_refresh_without_refresh_token(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens(refresh=None))
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()

        with pytest.raises(AuthenticationError) as exc_info:
            manager.refresh()

        assert exc_info.value.kind == AuthErrorKind.REFRESH_FAILED
        assert store.load() == _tokens(refresh=None)

    def test_rejected_refresh_token(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()

        with patch.object(
            Credentials, "refresh", autospec=True, side_effect=RefreshError("invalid_grant")
        ):
            with pytest.raises(AuthenticationError) as exc_info:
                manager.refresh()

        assert exc_info.value.kind == AuthErrorKind.REFRESH_FAILED
        assert manager.state == AuthState.FAILED
        assert store.load() == _tokens()

    def test_network_failure_is_retryable(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()

        with patch.object(
            Credentials, "refresh", autospec=True, side_effect=TransportError("connection reset")
        ):
            with pytest.raises(AuthenticationError) as exc_info:
                manager.refresh()

        assert exc_info.value.kind == AuthErrorKind.NETWORK_ERROR
        assert exc_info.value.retryable
        assert manager.state == AuthState.AUTHENTICATED

    def test_unsaveable_refresh_restores_previous_state(
        self, config, store, flow_controller, tmp_path
    ) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()

        def fake_refresh(self, request):
            self.token = "ya29.refreshed"

        with patch.object(Credentials, "refresh", autospec=True, side_effect=fake_refresh), patch.object(
            store, "save", side_effect=OSError("disk full")
        ):
            with pytest.raises(AuthenticationError) as exc_info:
                manager.refresh()

        assert exc_info.value.kind == AuthErrorKind.REFRESH_FAILED
        assert exc_info.value.retryable
        assert manager.state == AuthState.AUTHENTICATED
        assert manager.current_tokens.access_token == "ya29.stored"
        assert store.load() == _tokens()

    def test_refresh_updates_credential_held_by_callers(
        self, config, store, flow_controller, tmp_path
    ) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        held = manager.authenticate()

        def fake_refresh(self, request):
            self.token = "ya29.refreshed"

        with patch.object(Credentials, "refresh", autospec=True, side_effect=fake_refresh):
            manager.refresh()

        assert manager.get_auth_client() is held
        assert held.token == "ya29.refreshed"
        assert held.refresh_token == "1//refresh"


# ---------------------------------------------------------------------------
# clear() and accessors
# ---------------------------------------------------------------------------


class TestClear:
    def test_clear_drops_everything(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        creds = manager.authenticate()

        manager.clear()

        assert not manager.is_authenticated()
        assert manager.current_tokens is None
        assert manager.state == AuthState.UNAUTHENTICATED
        assert creds.token is None
        assert store.load() is None
        assert "tokens_cleared" in _audit_events(tmp_path)

    def test_cleared_credential_cannot_reauthorize(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        creds = manager.authenticate()

        manager.clear()

        assert creds.token is None
        assert creds.refresh_token is None
        assert not creds.valid

    def test_clear_after_refresh_resets_held_credential(
        self, config, store, flow_controller, tmp_path
    ) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        held = manager.authenticate()

        def fake_refresh(self, request):
            self.token = "ya29.refreshed"

        with patch.object(Credentials, "refresh", autospec=True, side_effect=fake_refresh):
            manager.refresh()
        manager.clear()

        assert held.token is None
        assert held.refresh_token is None

    def test_forced_reauth_reuses_live_credential(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        held = manager.authenticate()

        assert manager.authenticate(force=True) is held
        assert held.token == "ya29.fresh"

    def test_clear_is_idempotent(self, config, store, flow_controller, tmp_path) -> None:
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.clear()
        manager.clear()
        assert not manager.is_authenticated()

    def test_authenticate_after_clear_runs_flow(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        manager.authenticate()
        manager.clear()

        assert manager.authenticate().token == "ya29.fresh"
        flow_controller.run_interactive_flow.assert_called_once()


class TestClients:
    def test_get_auth_client_authenticates_lazily(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)
        assert not manager.is_authenticated()
        assert manager.get_auth_client().token == "ya29.stored"

    def test_get_api_client_binds_credential(self, config, store, flow_controller, tmp_path) -> None:
        store.save(_tokens())
        manager = _manager(config, store, flow_controller, tmp_path)

        with patch("gcal_auth.manager.build_calendar_service") as mock_build:
            service = manager.get_api_client()

        assert service is mock_build.return_value
        mock_build.assert_called_once_with(manager.get_auth_client())

    def test_client_resolved_once(self, config, store, flow_controller, tmp_path) -> None:
        manager = _manager(config, store, flow_controller, tmp_path)
        assert manager.client_credentials is manager.client_credentials


class TestCreateAuthManager:
    def test_builds_from_settings(self, tmp_path) -> None:
        from config.settings import Settings

        settings = Settings(config_dir=str(tmp_path), tenant_id="team-a", open_browser=False)
        manager = create_auth_manager(settings, client_id="cid", client_secret="cs")

        assert manager.tenant_id == "team-a"
        assert manager.config.open_browser is False
        assert manager.client_credentials.client_id == "cid"
        assert manager.token_store.storage_dir == tmp_path

    def test_tenant_override(self, tmp_path) -> None:
        from config.settings import Settings

        manager = create_auth_manager(Settings(config_dir=str(tmp_path)), tenant_id="other")
        assert manager.tenant_id == "other"
