"""Authentication for the supported mail providers.

Gmail uses an installed-app OAuth client (``credentials.json``) and a cached
authorized-user token. Outlook uses an msal public client whose serialized
token cache is kept in the same token store.
"""

from __future__ import annotations

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import urlparse

import requests
from google.auth.exceptions import GoogleAuthError
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2.credentials import Credentials

from attachment_zipper.token_store import TokenStore, TokenStoreError

logger = logging.getLogger(__name__)

PROVIDERS = ("gmail", "outlook")
TOKEN_STORE_MODES = ("auto", "keyring", "file")
AUTH_METHODS = ("browser", "device")

GMAIL_SCOPES = ["https://www.googleapis.com/auth/gmail.readonly"]
OUTLOOK_SCOPES = ["User.Read", "Mail.Read"]
REFRESH_MARGIN = timedelta(minutes=5)


class AuthConfigError(RuntimeError):
    """Raised when required auth configuration is missing or invalid."""


class DependencyError(RuntimeError):
    """Raised when an optional login dependency cannot be imported."""


class AuthError(RuntimeError):
    """Raised when authentication fails."""


@dataclass
class AuthConfig:
    provider: str = "gmail"
    profile: str = "default"
    token_store_mode: str = "auto"
    credentials_path: Path = Path("credentials.json")
    outlook_client_id: str = ""
    outlook_tenant_id: str = "common"
    outlook_redirect_uri: str = "http://localhost:8765"
    method: str = "browser"
    open_browser: bool = True
    token_dir: Optional[Path] = None
    scopes: List[str] = field(default_factory=list)

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.outlook_tenant_id}"

    @classmethod
    def from_env(
        cls,
        provider_override: Optional[str] = None,
        profile_override: Optional[str] = None,
    ) -> "AuthConfig":
        provider = (provider_override or os.environ.get("ATTACHMENT_ZIPPER_PROVIDER", "gmail")).strip().lower()
        if provider not in PROVIDERS:
            raise AuthConfigError("ATTACHMENT_ZIPPER_PROVIDER must be one of: gmail, outlook")

        token_store_mode = os.environ.get("ATTACHMENT_ZIPPER_TOKEN_STORE", "auto").strip().lower() or "auto"
        if token_store_mode not in TOKEN_STORE_MODES:
            raise AuthConfigError("ATTACHMENT_ZIPPER_TOKEN_STORE must be one of: auto, keyring, file")

        token_dir = os.environ.get("ATTACHMENT_ZIPPER_TOKEN_CACHE_DIR")

        return cls(
            provider=provider,
            profile=profile_override or os.environ.get("ATTACHMENT_ZIPPER_PROFILE", "default"),
            token_store_mode=token_store_mode,
            credentials_path=Path(os.environ.get("GMAIL_CREDENTIALS_PATH", "credentials.json")).expanduser(),
            outlook_client_id=os.environ.get("OUTLOOK_CLIENT_ID", "").strip(),
            outlook_tenant_id=os.environ.get("OUTLOOK_TENANT_ID", "common").strip() or "common",
            outlook_redirect_uri=os.environ.get("OUTLOOK_REDIRECT_URI", "http://localhost:8765").strip(),
            token_dir=Path(token_dir).expanduser() if token_dir else None,
            scopes=list(GMAIL_SCOPES if provider == "gmail" else OUTLOOK_SCOPES),
        )

    def build_store(self) -> TokenStore:
        return TokenStore(
            provider=self.provider,
            profile=self.profile,
            base_dir=self.token_dir,
            prefer_keyring=self.token_store_mode in {"auto", "keyring"},
            require_keyring=self.token_store_mode == "keyring",
        )


class GmailAuthManager:
    def __init__(
        self,
        config: AuthConfig,
        store: Optional[TokenStore] = None,
        request_factory: Callable[[], Any] = Request,
    ) -> None:
        self.config = config
        self.scopes = config.scopes or list(GMAIL_SCOPES)
        self.store = store or config.build_store()
        self.request_factory = request_factory

    def load_client_config(self) -> Dict[str, Any]:
        path = self.config.credentials_path
        if not path.exists():
            raise AuthConfigError(
                f"Missing {path}. Download OAuth 2.0 credentials from Google Cloud Console."
            )
        try:
            client_config = json.loads(path.read_text(encoding="utf-8"))
        except (ValueError, OSError) as err:
            raise AuthConfigError(f"Failed to parse {path}. Ensure it contains valid JSON.") from err

        if not isinstance(client_config, dict) or not (
            "installed" in client_config or "web" in client_config
        ):
            raise AuthConfigError(f"{path} must contain an 'installed' or 'web' OAuth client.")
        return client_config

    def load_cached_credentials(self) -> Optional[Credentials]:
        serialized = self.store.load()
        if not serialized:
            return None
        try:
            info = json.loads(serialized)
            return Credentials.from_authorized_user_info(info, self.scopes)
        except ValueError as err:
            logger.debug("Ignoring unreadable cached token: %s", err)
            return None

    def save_credentials(self, creds: Any) -> str:
        backend = self.store.save(creds.to_json())
        logger.info("Token saved to %s", backend)
        return backend

    def refresh_if_needed(self, creds: Any, now: Optional[datetime] = None) -> Any:
        """Refresh ``creds`` once if they expire within five minutes.

        A token with no expiry is returned unchanged. ``google-auth`` keeps
        the previous refresh token when the server does not issue a new one.
        """
        expiry = creds.expiry
        if expiry is None:
            return creds

        now = now or _utcnow()
        if expiry - now >= REFRESH_MARGIN:
            return creds

        if not creds.refresh_token:
            raise AuthError("Token expired and no refresh token available.")

        logger.info("Token expired, refreshing...")
        try:
            creds.refresh(self.request_factory())
        except Exception:
            logger.warning("Failed to refresh token, re-authorization required.")
            raise

        self.save_credentials(creds)
        return creds

    def run_auth_flow(self, client_config: Dict[str, Any]) -> Credentials:
        if self.config.method != "browser":
            raise AuthConfigError("Gmail login only supports the browser method")

        flow_cls = _load_installed_app_flow()
        flow = flow_cls.from_client_config(client_config, scopes=self.scopes)
        print("Authorize this app in your browser to continue.", file=sys.stderr)
        return flow.run_local_server(
            port=0,
            open_browser=self.config.open_browser,
            access_type="offline",
            prompt="consent",
        )

    def authorize(self) -> AuthorizedSession:
        client_config = self.load_client_config()

        creds = self.load_cached_credentials()
        if creds is not None:
            try:
                creds = self.refresh_if_needed(creds)
                return AuthorizedSession(creds)
            except (AuthError, GoogleAuthError) as err:
                logger.debug("Cached token rejected: %s", err)
                print("Cached token invalid, starting new authorization flow...", file=sys.stderr)

        creds = self.run_auth_flow(client_config)
        self.save_credentials(creds)
        return AuthorizedSession(creds)

    def status(self) -> Dict[str, Any]:
        base: Dict[str, Any] = {
            "provider": "gmail",
            "profile": self.store.profile,
            "credentials_path": str(self.config.credentials_path),
            "configured": self.config.credentials_path.exists(),
            "token_store_backend": self.store.backend_name(),
            "authenticated": False,
        }
        creds = self.load_cached_credentials()
        if creds is None:
            base["message"] = "No cached token for this profile"
            return base

        base["authenticated"] = True
        base["expires_on"] = _naive_utc_to_iso8601(creds.expiry)
        base["refreshable"] = bool(creds.refresh_token)
        return base

    def logout(self) -> Dict[str, Any]:
        self.store.delete()
        return {"provider": "gmail", "profile": self.store.profile, "logged_out": True}


class OutlookAuthManager:
    def __init__(self, config: AuthConfig, store: Optional[TokenStore] = None) -> None:
        self.config = config
        self.scopes = config.scopes or list(OUTLOOK_SCOPES)
        self.store = store or config.build_store()
        self._cache = None
        self._app = None

    def authorize(self) -> requests.Session:
        try:
            self.get_access_token()
        except AuthError as err:
            logger.debug("Silent token acquisition failed: %s", err)
            self.login()
        return requests.Session()

    def login(self) -> Dict[str, Any]:
        app = self._ensure_app()
        method = self.config.method
        if method not in AUTH_METHODS:
            raise AuthConfigError("Auth method must be one of: browser, device")

        if method == "browser":
            result = app.acquire_token_interactive(
                scopes=self.scopes,
                prompt="select_account",
                port=_redirect_port(self.config.outlook_redirect_uri),
            )
        else:
            flow = app.initiate_device_flow(scopes=self.scopes)
            if "user_code" not in flow:
                raise AuthError("Device code flow initialization failed")
            print(flow.get("message", ""), file=sys.stderr)
            result = app.acquire_token_by_device_flow(flow)

        if not result or "access_token" not in result:
            raise AuthError(_describe_msal_error(result))

        self._persist_cache()
        claims = result.get("id_token_claims", {})
        return {
            "provider": "outlook",
            "profile": self.store.profile,
            "username": claims.get("preferred_username") or claims.get("email"),
            "expires_on": _epoch_to_iso8601(result.get("expires_on")),
        }

    def get_access_token(self) -> str:
        app = self._ensure_app()
        accounts = app.get_accounts()
        if not accounts:
            raise AuthError(f"No cached account for profile '{self.store.profile}'")

        result = app.acquire_token_silent(self.scopes, accounts[0])
        self._persist_cache()
        if result and "access_token" in result:
            return result["access_token"]
        raise AuthError("Could not acquire access token silently")

    def status(self) -> Dict[str, Any]:
        base: Dict[str, Any] = {
            "provider": "outlook",
            "profile": self.store.profile,
            "configured": bool(self.config.outlook_client_id),
            "tenant_id": self.config.outlook_tenant_id,
            "token_store_backend": self.store.backend_name(),
            "authenticated": False,
        }
        if not self.config.outlook_client_id:
            base["message"] = "OUTLOOK_CLIENT_ID is not set"
            return base

        try:
            self.get_access_token()
        except (AuthError, DependencyError, TokenStoreError) as err:
            base["message"] = str(err)
            return base

        base["authenticated"] = True
        return base

    def logout(self) -> Dict[str, Any]:
        self.store.delete()
        self._app = None
        self._cache = None
        return {"provider": "outlook", "profile": self.store.profile, "logged_out": True}

    def _ensure_app(self):
        if self._app is not None:
            return self._app

        if not self.config.outlook_client_id:
            raise AuthConfigError("OUTLOOK_CLIENT_ID is required for the outlook provider")

        try:
            import msal
        except ImportError as err:
            raise DependencyError("Missing dependency 'msal'. Install with: pip install msal") from err

        self._cache = msal.SerializableTokenCache()
        serialized = self.store.load()
        if serialized:
            try:
                self._cache.deserialize(serialized)
            except ValueError:
                logger.warning("Discarding corrupt Outlook token cache")
                self._cache = msal.SerializableTokenCache()

        self._app = msal.PublicClientApplication(
            client_id=self.config.outlook_client_id,
            authority=self.config.authority,
            token_cache=self._cache,
        )
        return self._app

    def _persist_cache(self) -> Optional[str]:
        if self._cache is None or not self._cache.has_state_changed:
            return None
        return self.store.save(self._cache.serialize())


def build_auth_manager(config: AuthConfig):
    if config.provider == "gmail":
        return GmailAuthManager(config)
    if config.provider == "outlook":
        return OutlookAuthManager(config)
    raise AuthConfigError(f"Unsupported provider '{config.provider}'")


def _load_installed_app_flow():
    try:
        from google_auth_oauthlib.flow import InstalledAppFlow
    except ImportError as err:
        raise DependencyError(
            "Missing dependency 'google-auth-oauthlib'. Install with: pip install google-auth-oauthlib"
        ) from err
    return InstalledAppFlow


def _utcnow() -> datetime:
    # google-auth stores expiry as naive UTC.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _naive_utc_to_iso8601(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.replace(tzinfo=timezone.utc).isoformat()


def _epoch_to_iso8601(value: Any) -> Optional[str]:
    try:
        epoch = int(value)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc).isoformat()


def _redirect_port(redirect_uri: str) -> int:
    parsed = urlparse(redirect_uri)
    if parsed.scheme not in {"http", "https"}:
        raise AuthConfigError("OUTLOOK_REDIRECT_URI must be an http(s) URL for browser auth")
    if parsed.hostname not in {"localhost", "127.0.0.1"}:
        raise AuthConfigError("OUTLOOK_REDIRECT_URI host must be localhost or 127.0.0.1 for browser auth")
    if parsed.port is not None:
        return parsed.port
    return 443 if parsed.scheme == "https" else 80


def _describe_msal_error(result: Optional[Dict[str, Any]]) -> str:
    if not result:
        return "Authentication failed with an empty response"
    return str(result.get("error_description") or result.get("error") or "Authentication failed")
