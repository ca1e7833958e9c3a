"""Secrets storage for BorgPilot.

Repository passphrases (keyed by repo id) and the SMTP password live in
``secrets.json``, written with the same atomic protocol as the other state
files and restricted to the owner.
"""

from __future__ import annotations

from pathlib import Path
from threading import Lock

from loguru import logger

from borgpilot.config import DEFAULT_CONFIG_DIR, SECRETS_FILE_NAME
from borgpilot.persistence import restrict_permissions, safe_read_json_with_backup, write_json

SMTP_PASSWORD_KEY = "smtp_password"


class SecretStore:
    """File-backed secret store."""

    def __init__(self, path: Path | None = None):
        self.path = path or DEFAULT_CONFIG_DIR / SECRETS_FILE_NAME
        self._lock = Lock()
        self._secrets = self._load()

    def _load(self) -> dict[str, str]:
        raw = safe_read_json_with_backup(self.path, {})
        if not isinstance(raw, dict):
            logger.warning(f"Unexpected secrets document in {self.path}, ignoring it")
            return {}
        return {str(k): str(v) for k, v in raw.items() if v is not None}

    def _save(self) -> bool:
        try:
            write_json(self.path, self._secrets, indent=None)
        except OSError as e:
            logger.error(f"Failed to save secrets file: {e}")
            return False
        restrict_permissions(self.path)
        backup = self.path.with_name(self.path.name + ".bak")
        if backup.exists():
            restrict_permissions(backup)
        return True

    def set_secret(self, name: str, value: str) -> bool:
        """Store a secret.

        Returns:
            True if stored successfully
        """
        with self._lock:
            self._secrets[name] = value
            saved = self._save()
        if saved:
            logger.debug(f"Stored secret '{name}'")
        return saved

    def get_secret(self, name: str | None) -> str | None:
        """Get a secret, or None if not set."""
        if not name:
            return None
        return self._secrets.get(name)

    def has_secret(self, name: str) -> bool:
        return name in self._secrets

    def delete_secret(self, name: str) -> bool:
        """Delete a secret. Deleting an unknown name succeeds."""
        with self._lock:
            if name not in self._secrets:
                return True
            del self._secrets[name]
            return self._save()

    def list_secrets(self) -> list[str]:
        """List all secret names."""
        return sorted(self._secrets)
