"""Per-profile persistence of serialized OAuth state.

The OS keyring is used when a usable backend exists. Otherwise tokens live in
``<base_dir>/<provider>-<profile>.json`` with owner-only permissions.
"""

from __future__ import annotations

import json
import logging
import os
import stat
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

SERVICE_PREFIX = "attachment-zipper"


class TokenStoreError(RuntimeError):
    """Raised when cached tokens cannot be persisted."""


class TokenStore:
    def __init__(
        self,
        provider: str,
        profile: str = "default",
        base_dir: Optional[Path] = None,
        prefer_keyring: bool = True,
        require_keyring: bool = False,
    ) -> None:
        self.provider = provider
        self.profile = sanitize_profile(profile)
        self.service_name = f"{SERVICE_PREFIX}-{provider}"
        self.base_dir = base_dir or default_token_dir()
        self.require_keyring = require_keyring
        self._keyring = _load_keyring() if prefer_keyring else None

        if require_keyring and self._keyring is None:
            raise TokenStoreError(
                "ATTACHMENT_ZIPPER_TOKEN_STORE=keyring requested but no keyring backend is available. "
                "Configure an OS keychain backend, or set ATTACHMENT_ZIPPER_TOKEN_STORE=file."
            )

    @property
    def path(self) -> Path:
        return self.base_dir / f"{self.provider}-{self.profile}.json"

    def backend_name(self) -> str:
        return "keyring" if self._keyring is not None else "file"

    def load(self) -> Optional[str]:
        if self._keyring is not None:
            try:
                value = self._keyring.get_password(self.service_name, self.profile)
            except Exception as err:
                logger.debug("Keyring read failed, using file cache: %s", err)
                value = None
            if value:
                return value
        return self._read_file()

    def save(self, serialized: str) -> str:
        if self._keyring is not None:
            try:
                self._keyring.set_password(self.service_name, self.profile, serialized)
                return "keyring"
            except Exception as err:
                if self.require_keyring:
                    raise TokenStoreError("Failed to write token to keyring backend") from err
                logger.debug("Keyring write failed, using file cache: %s", err)

        self._write_file(serialized)
        return "file"

    def delete(self) -> None:
        if self._keyring is not None:
            try:
                self._keyring.delete_password(self.service_name, self.profile)
            except Exception as err:
                logger.debug("Keyring delete failed: %s", err)
        if self.path.exists():
            self.path.unlink()

    def _read_file(self) -> Optional[str]:
        if not self.path.exists():
            return None

        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return None

        try:
            wrapper = json.loads(raw)
        except json.JSONDecodeError:
            return raw

        if not isinstance(wrapper, dict) or "cache" not in wrapper:
            # A bare token.json copied in by hand.
            return raw

        cache = wrapper.get("cache")
        if isinstance(cache, str) and cache:
            return cache
        return None

    def _write_file(self, serialized: str) -> None:
        self.base_dir.mkdir(parents=True, exist_ok=True)
        try:
            self.base_dir.chmod(0o700)
        except OSError:
            pass

        wrapper = {"cache": serialized, "profile": self.profile, "provider": self.provider}
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(wrapper, separators=(",", ":")), encoding="utf-8")
        try:
            tmp_path.chmod(0o600)
        except OSError:
            pass
        tmp_path.replace(self.path)

        try:
            if stat.S_IMODE(self.path.stat().st_mode) & 0o077:
                self.path.chmod(0o600)
        except OSError:
            pass


def default_token_dir() -> Path:
    override = os.environ.get("ATTACHMENT_ZIPPER_TOKEN_CACHE_DIR")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "attachment-zipper" / "tokens"


def sanitize_profile(profile: Optional[str]) -> str:
    profile = (profile or "").strip()
    cleaned = "".join(
        char if char.isalnum() or char in {"-", "_", "."} else "_"
        for char in profile
    ).strip("._")
    return cleaned or "default"


def _load_keyring():
    try:
        import keyring
    except ImportError:
        return None

    try:
        backend = keyring.get_keyring()
    except Exception:
        return None

    if backend is None:
        return None

    # keyring.backends.fail.Keyring refuses every call.
    names = f"{backend.__class__.__module__}.{backend.__class__.__name__}".lower()
    if "fail" in names:
        return None
    return keyring
