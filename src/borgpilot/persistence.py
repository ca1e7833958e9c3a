"""Crash-safe JSON persistence for BorgPilot.

Every state file (data, secrets, notifications) is written through
``atomic_write_file`` and read back through ``safe_read_json_with_backup``:

- writes go to a temp file in the same directory and are renamed over the
  target, after copying the previous version to ``<file>.bak``
- reads fall back to ``.bak`` when the primary is missing, empty or invalid,
  quarantining the broken primary as ``<file>.corrupt-<timestamp>``
- if neither file is usable the caller's fallback value is returned
"""

from __future__ import annotations

import json
import os
import shutil
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from loguru import logger

BACKUP_SUFFIX = ".bak"
CORRUPT_SUFFIX = ".corrupt-"


def backup_path_for(path: Path) -> Path:
    """Get the ``.bak`` sibling of a state file."""
    return path.with_name(path.name + BACKUP_SUFFIX)


def quarantine_stamp(now: datetime | None = None) -> str:
    """ISO-8601 UTC timestamp safe for use in file names."""
    now = now or datetime.now(timezone.utc)
    iso = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return iso.replace(":", "-").replace(".", "-")


def _try_read_json(path: Path) -> tuple[bool, Any, str]:
    """Read and parse a JSON file.

    Returns:
        (ok, value, reason) where reason is one of missing/empty/invalid/ok
    """
    if not path.exists():
        return False, None, "missing"
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        return False, None, f"unreadable: {e}"
    if not raw.strip():
        return False, None, "empty"
    try:
        return True, json.loads(raw), "ok"
    except ValueError as e:
        return False, None, f"invalid: {e}"


def safe_read_json_with_backup(path: Path | str, fallback: Any = None) -> Any:
    """Read a JSON state file, recovering from its backup if needed.

    Never raises. The fallback value is returned unchanged when neither the
    primary nor the backup holds valid JSON.
    """
    path = Path(path)
    ok, value, reason = _try_read_json(path)
    if ok:
        return value

    backup = backup_path_for(path)
    ok, backup_value, backup_reason = _try_read_json(backup)
    if ok:
        logger.warning(f"State file {path} is {reason}, recovered from {backup.name}")
        if path.exists():
            corrupt = path.with_name(f"{path.name}{CORRUPT_SUFFIX}{quarantine_stamp()}")
            try:
                path.rename(corrupt)
                logger.info(f"Quarantined unreadable state file as {corrupt.name}")
            except OSError as e:
                logger.debug(f"Could not quarantine {path}: {e}")
        return backup_value

    if reason != "missing" or backup_reason != "missing":
        logger.error(f"State file {path} is {reason} and backup is {backup_reason}, using defaults")
    return fallback


def _fsync_file(path: Path) -> None:
    """Flush a file to stable storage (best-effort)."""
    try:
        fd = os.open(path, os.O_RDONLY if os.name == "nt" else os.O_RDWR)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError as e:
        logger.debug(f"fsync failed for {path}: {e}")


def atomic_write_file(
    path: Path | str,
    content: str | bytes,
    *,
    make_backup: bool = True,
    encoding: str = "utf-8",
) -> None:
    """Replace a file's content atomically.

    The target ends up holding either its previous content or the new
    content, never a partial write.

    Raises:
        OSError: if the temp file cannot be written or no replacement
            strategy succeeded.
    """
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        # Let the write below report the real error
        pass

    if make_backup and path.exists():
        try:
            shutil.copyfile(path, backup_path_for(path))
        except OSError as e:
            logger.warning(f"Could not back up {path}: {e}")

    tmp_path = path.with_name(f"{path.name}.{os.getpid()}.{int(time.time() * 1000)}.tmp")
    data = content.encode(encoding) if isinstance(content, str) else content
    tmp_path.write_bytes(data)
    _fsync_file(tmp_path)

    try:
        os.replace(tmp_path, path)
        return
    except OSError as e:
        logger.debug(f"Atomic replace of {path} failed ({e}), retrying with unlink")

    try:
        if path.exists():
            path.unlink()
        os.replace(tmp_path, path)
        return
    except OSError as e:
        logger.warning(f"Rename fallback for {path} failed ({e}), copying bytes")

    try:
        shutil.copyfile(tmp_path, path)
    finally:
        try:
            tmp_path.unlink()
        except OSError:
            pass


def write_json(path: Path | str, value: Any, *, indent: int | None = 2, make_backup: bool = True) -> None:
    """Serialize a value and write it with ``atomic_write_file``."""
    atomic_write_file(path, json.dumps(value, indent=indent, ensure_ascii=False), make_backup=make_backup)


def restrict_permissions(path: Path) -> None:
    """Make a file readable only by its owner (no-op where unsupported)."""
    try:
        os.chmod(path, 0o600)
    except OSError as e:
        logger.debug(f"Could not restrict permissions on {path}: {e}")
