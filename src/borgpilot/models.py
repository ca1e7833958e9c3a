"""Pydantic models for BorgPilot configuration and persisted state."""

from __future__ import annotations

import sys
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


class ScheduleType(str, Enum):
    """How often a backup job fires."""

    DAILY = "daily"
    HOURLY = "hourly"
    MANUAL = "manual"


class Compression(str, Enum):
    """Compression algorithm passed to ``borg create``."""

    AUTO = "auto"
    LZ4 = "lz4"
    ZSTD = "zstd"
    ZLIB = "zlib"
    NONE = "none"


class ActivityStatus(str, Enum):
    """Status of an activity log entry."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    INFO = "info"


class StateModel(BaseModel):
    """Base for models persisted in the JSON state files.

    Field names are camelCase on disk. Unknown keys written by other
    clients are preserved.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
    )

    def to_json_dict(self) -> dict[str, Any]:
        """Serialize using on-disk field names."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RepoDefinition(StateModel):
    """A Borg repository."""

    id: str
    name: str = ""
    url: str
    encryption: str = "repokey"
    status: str = "disconnected"
    remote_path: str | None = None  # Custom borg path on the remote host
    trust_host: bool = False
    last_backup: str | None = None
    size: str | None = None
    file_count: int | None = None

    @property
    def is_remote(self) -> bool:
        """Check if the repository is reached over SSH."""
        return "@" in self.url or self.url.startswith("ssh://")


class JobDefinition(StateModel):
    """A backup job definition."""

    id: str
    name: str = ""
    repo_id: str
    source_path: str | None = None  # Legacy single-path field
    source_paths: list[str] = Field(default_factory=list)
    exclude_patterns: list[str] = Field(default_factory=list)
    archive_prefix: str = "backup"
    compression: Compression = Compression.AUTO

    # Retention
    prune_enabled: bool = False
    keep_daily: int | None = None
    keep_weekly: int | None = None
    keep_monthly: int | None = None
    keep_yearly: int | None = None

    # Schedule
    schedule_enabled: bool = False
    schedule_type: ScheduleType = ScheduleType.MANUAL
    schedule_time: str | None = None  # HH:MM, daily jobs only

    @field_validator("schedule_time")
    @classmethod
    def validate_schedule_time(cls, v: str | None) -> str | None:
        """Normalize HH:MM (accepts H:MM)."""
        if v is None or v == "":
            return None
        parts = v.strip().split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            raise ValueError(f"Invalid schedule time '{v}', expected HH:MM")
        hour, minute = int(parts[0]), int(parts[1])
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid schedule time '{v}', expected HH:MM")
        return f"{hour:02d}:{minute:02d}"

    @property
    def sources(self) -> list[str]:
        """All source paths, preferring the multi-source field."""
        paths = [p for p in self.source_paths if p]
        if not paths and self.source_path:
            paths = [self.source_path]
        return paths


class AppSettings(StateModel):
    """Application settings stored alongside jobs and repos."""

    use_wsl: bool = Field(default_factory=lambda: sys.platform == "win32")
    borg_path: str = "borg"
    wsl_user: str | None = None
    disable_host_check: bool = False
    limit_bandwidth: bool = False
    bandwidth_limit: int = 1000  # KB/s
    stop_on_battery: bool = True
    stop_on_low_signal: bool = False
    prune_timeout_seconds: int = 3600


class ActivityLogEntry(StateModel):
    """An entry in the user-facing activity log."""

    id: str
    title: str
    detail: str = ""
    time: str = Field(default_factory=lambda: datetime.now().isoformat())
    status: ActivityStatus = ActivityStatus.INFO
    cmd: str | None = None  # Tail of the raw command output


class AppData(StateModel):
    """Main state document (``data.json``)."""

    repos: list[RepoDefinition] = Field(default_factory=list)
    jobs: list[JobDefinition] = Field(default_factory=list)
    archives: list[dict[str, Any]] = Field(default_factory=list)
    activity_logs: list[ActivityLogEntry] = Field(default_factory=list)
    settings: AppSettings = Field(default_factory=AppSettings)

    def get_job(self, job_id: str) -> JobDefinition | None:
        """Get a job by ID."""
        return next((j for j in self.jobs if j.id == job_id), None)

    def get_repo(self, repo_id: str) -> RepoDefinition | None:
        """Get a repository by ID."""
        return next((r for r in self.repos if r.id == repo_id), None)


class NotificationConfig(StateModel):
    """Notification preferences (``notifications.json``)."""

    notify_on_success: bool = True
    notify_on_error: bool = True
    discord_enabled: bool = False
    discord_webhook: str = ""
    email_enabled: bool = False
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_from: str = ""
    smtp_to: str = ""


# ============================================================================
# Daemon configuration (borgpilot.yaml)
# ============================================================================


class DaemonConfig(BaseModel):
    """Daemon configuration."""

    host: str = "127.0.0.1"
    port: int = 9877
    log_level: str = "INFO"
    tick_interval: int = 60  # seconds
    data_dir: str | None = None  # Overrides the state directory


class ApiAuthConfig(BaseModel):
    """API authentication configuration."""

    enabled: bool = False
    token: str | None = None


class ApiConfig(BaseModel):
    """API configuration."""

    auth: ApiAuthConfig = Field(default_factory=ApiAuthConfig)


class BorgPilotConfig(BaseModel):
    """Main BorgPilot configuration."""

    daemon: DaemonConfig = Field(default_factory=DaemonConfig)
    api: ApiConfig = Field(default_factory=ApiConfig)
