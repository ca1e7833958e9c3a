"""Tests for crash-safe JSON persistence."""

import json
import os
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from borgpilot.persistence import (
    atomic_write_file,
    backup_path_for,
    quarantine_stamp,
    restrict_permissions,
    safe_read_json_with_backup,
    write_json,
)


class TestAtomicWrite:
    """Tests for atomic_write_file."""

    def test_creates_file(self, tmp_path):
        target = tmp_path / "data.json"
        atomic_write_file(target, '{"a": 1}')

        assert target.read_text() == '{"a": 1}'
        assert not backup_path_for(target).exists()

    def test_overwrite_keeps_previous_as_backup(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("old content")

        atomic_write_file(target, "new content")

        assert target.read_text() == "new content"
        assert backup_path_for(target).read_text() == "old content"

    def test_no_backup_when_disabled(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("old")

        atomic_write_file(target, "new", make_backup=False)

        assert target.read_text() == "new"
        assert not backup_path_for(target).exists()

    def test_creates_parent_directories(self, tmp_path):
        target = tmp_path / "nested" / "dir" / "data.json"
        atomic_write_file(target, "x")
        assert target.read_text() == "x"

    def test_no_temp_files_left_behind(self, tmp_path):
        target = tmp_path / "data.json"
        for i in range(3):
            atomic_write_file(target, str(i))

        leftovers = [p.name for p in tmp_path.iterdir() if p.name.endswith(".tmp")]
        assert leftovers == []

    def test_bytes_content(self, tmp_path):
        target = tmp_path / "blob.bin"
        atomic_write_file(target, b"\x00\x01\x02")
        assert target.read_bytes() == b"\x00\x01\x02"

    def test_backup_failure_does_not_abort_write(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("old")

        with patch("borgpilot.persistence.shutil.copyfile", side_effect=OSError("disk full")):
            atomic_write_file(target, "new")

        assert target.read_text() == "new"

    def test_rename_fallback_unlinks_then_renames(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("old")
        real_replace = os.replace
        calls = []

        def flaky_replace(src, dst):
            calls.append((src, dst))
            if len(calls) == 1:
                raise PermissionError("target locked")
            return real_replace(src, dst)

        with patch("borgpilot.persistence.os.replace", side_effect=flaky_replace):
            atomic_write_file(target, "new")

        assert len(calls) == 2
        assert target.read_text() == "new"

    def test_copy_fallback_when_rename_keeps_failing(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("old")

        with patch("borgpilot.persistence.os.replace", side_effect=PermissionError("nope")):
            atomic_write_file(target, "new")

        assert target.read_text() == "new"
        assert not any(p.name.endswith(".tmp") for p in tmp_path.iterdir())

    def test_write_json(self, tmp_path):
        target = tmp_path / "data.json"
        write_json(target, {"name": "Dokumente", "count": 2})
        assert json.loads(target.read_text()) == {"name": "Dokumente", "count": 2}


class TestSafeRead:
    """Tests for safe_read_json_with_backup."""

    def test_reads_valid_primary(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text('{"jobs": []}')
        assert safe_read_json_with_backup(target, None) == {"jobs": []}

    def test_both_missing_returns_fallback_unchanged(self, tmp_path):
        fallback = {"default": True}
        result = safe_read_json_with_backup(tmp_path / "missing.json", fallback)
        assert result is fallback

    @pytest.mark.parametrize("content", ["", "   \n", "{not json", '{"a": '])
    def test_corrupt_primary_recovers_from_backup(self, tmp_path, content):
        target = tmp_path / "data.json"
        target.write_text(content)
        backup_path_for(target).write_text('{"recovered": 1}')

        assert safe_read_json_with_backup(target, {}) == {"recovered": 1}

    def test_corrupt_primary_is_quarantined(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("{broken")
        backup_path_for(target).write_text("[1, 2]")

        safe_read_json_with_backup(target, None)

        quarantined = [p for p in tmp_path.iterdir() if ".corrupt-" in p.name]
        assert len(quarantined) == 1
        assert quarantined[0].read_text() == "{broken"
        assert not target.exists()

    def test_missing_primary_uses_backup_without_quarantine(self, tmp_path):
        target = tmp_path / "data.json"
        backup_path_for(target).write_text('{"x": 1}')

        assert safe_read_json_with_backup(target, None) == {"x": 1}
        assert not any(".corrupt-" in p.name for p in tmp_path.iterdir())

    def test_both_corrupt_returns_fallback(self, tmp_path):
        target = tmp_path / "data.json"
        target.write_text("{bad")
        backup_path_for(target).write_text("also bad")

        assert safe_read_json_with_backup(target, "fallback") == "fallback"

    def test_write_then_corrupt_then_read(self, tmp_path):
        target = tmp_path / "data.json"
        write_json(target, {"version": 1})
        write_json(target, {"version": 2})

        target.write_text("")  # Simulate a crash that truncated the file

        assert safe_read_json_with_backup(target, {}) == {"version": 1}


class TestHelpers:
    """Tests for helper functions."""

    def test_quarantine_stamp_is_filename_safe(self):
        stamp = quarantine_stamp(datetime(2024, 3, 5, 14, 7, 9, 123000, tzinfo=timezone.utc))
        assert stamp == "2024-03-05T14-07-09-123Z"
        assert ":" not in stamp and "." not in stamp

    def test_backup_path(self):
        assert backup_path_for(Path("/x/data.json")) == Path("/x/data.json.bak")

    @pytest.mark.skipif(os.name == "nt", reason="POSIX permissions")
    def test_restrict_permissions(self, tmp_path):
        target = tmp_path / "secrets.json"
        target.write_text("{}")
        restrict_permissions(target)
        assert (target.stat().st_mode & 0o777) == 0o600
