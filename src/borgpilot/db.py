"""JSON-backed application database for BorgPilot.

Holds repositories, jobs, archives, the activity log and settings in a
single document (``data.json``). The in-memory ``data`` snapshot is what the
scheduler reads on every tick; it is replaced whenever new state is saved.
"""

from __future__ import annotations

from pathlib import Path
from threading import Lock
from typing import Any

from loguru import logger
from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from borgpilot.config import DATA_FILE_NAME, DEFAULT_CONFIG_DIR
from borgpilot.models import ActivityLogEntry, AppData, JobDefinition, RepoDefinition
from borgpilot.persistence import safe_read_json_with_backup, write_json

# Keep the activity log bounded
MAX_ACTIVITY_LOGS = 500


class Database:
    """Persistent application state."""

    def __init__(self, path: Path | None = None):
        """Initialize the database.

        Args:
            path: Path to the state document (default: ~/.borgpilot/data.json)
        """
        self.path = path or DEFAULT_CONFIG_DIR / DATA_FILE_NAME
        self._lock = Lock()
        self._data = self._load()

    def _load(self) -> AppData:
        """Load the state document, falling back to defaults."""
        raw = safe_read_json_with_backup(self.path, {})
        if not isinstance(raw, dict):
            logger.warning(f"Unexpected state document type in {self.path}, using defaults")
            return AppData()

        try:
            data = AppData.model_validate(raw)
        except ValidationError as e:
            logger.error(f"Invalid state document {self.path}: {e}")
            data = self._load_lenient(raw)

        logger.debug(f"Loaded {len(data.jobs)} jobs and {len(data.repos)} repos from {self.path}")
        return data

    @staticmethod
    def _load_lenient(raw: dict[str, Any]) -> AppData:
        """Keep every entry that validates, dropping the broken ones."""
        data = AppData()
        for key, model, target in (
            ("repos", RepoDefinition, data.repos),
            ("jobs", JobDefinition, data.jobs),
        ):
            for item in raw.get(key) or []:
                try:
                    target.append(model.model_validate(item))
                except ValidationError as e:
                    logger.warning(f"Skipping invalid {key[:-1]} entry: {e.errors()[0]['msg']}")
        try:
            data.settings = AppData.model_validate({"settings": raw.get("settings") or {}}).settings
        except ValidationError:
            logger.warning("Invalid settings in state document, using defaults")
        return data

    @property
    def data(self) -> AppData:
        """Current state snapshot."""
        return self._data

    def reload(self) -> AppData:
        """Re-read the state document from disk."""
        with self._lock:
            self._data = self._load()
            return self._data

    def save(self, partial: dict[str, Any] | None = None) -> AppData:
        """Merge top-level keys into the state and persist it.

        Args:
            partial: Top-level keys to replace (camelCase or snake_case)

        Returns:
            The new snapshot

        Raises:
            ValidationError: if the merged document is invalid
            OSError: if the document could not be written
        """
        with self._lock:
            merged = self._data.to_json_dict()
            if partial:
                merged.update({to_camel(k) if "_" in k else k: v for k, v in partial.items()})
            new_data = AppData.model_validate(merged)
            write_json(self.path, new_data.to_json_dict())
            self._data = new_data
            return new_data

    def get_job(self, job_id: str) -> JobDefinition | None:
        """Get a job by ID."""
        return self._data.get_job(job_id)

    def get_repo(self, repo_id: str) -> RepoDefinition | None:
        """Get a repository by ID."""
        return self._data.get_repo(repo_id)

    def add_activity_log(self, entry: ActivityLogEntry) -> None:
        """Append an activity log entry and persist it."""
        with self._lock:
            logs = [entry, *self._data.activity_logs][:MAX_ACTIVITY_LOGS]
            self._data = self._data.model_copy(update={"activity_logs": logs})
            try:
                write_json(self.path, self._data.to_json_dict())
            except OSError as e:
                logger.error(f"Failed to persist activity log: {e}")
