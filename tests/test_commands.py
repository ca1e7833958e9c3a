"""Tests for borg command construction and WSL wrapping."""

from unittest.mock import patch

import pytest

from borgpilot.core.commands import (
    BORG_ENV_DEFAULTS,
    BorgCommand,
    ExecutionEnvironment,
    is_remote_url,
    translate_path,
)
from borgpilot.models import AppSettings, JobDefinition, RepoDefinition

LOCAL_REPO = RepoDefinition(id="r1", url="/mnt/backup/repo")
REMOTE_REPO = RepoDefinition(id="r2", url="ssh://u123@u123.your-storagebox.de:23/./borg", remote_path="borg-1.2")


class TestTranslatePath:
    def test_windows_path_rewritten(self):
        assert translate_path("C:\\Users\\x\\Documents") == "/mnt/c/Users/x/Documents"

    def test_forward_slashes_and_drive_case(self):
        assert translate_path("D:/Data/photos") == "/mnt/d/Data/photos"

    def test_drive_root(self):
        assert translate_path("E:\\") == "/mnt/e/"

    @pytest.mark.parametrize("path", ["/home/x", "relative/dir", "\\\\server\\share", "ssh://host/repo"])
    def test_other_paths_unchanged(self, path):
        assert translate_path(path) == path

    def test_disabled(self):
        assert translate_path("C:\\Users", use_wsl=False) == "C:\\Users"


class TestBorgCommand:
    def test_from_parts_uses_explicit_target(self):
        cmd = BorgCommand.from_parts(
            ["--remote-path", "borg-1.2", "extract", "--dry-run", "--list"],
            "user@host:repo::docs-1",
            ["home/x/docs"],
        )

        assert cmd.subcommand == "extract"
        assert cmd.target == "user@host:repo::docs-1"
        assert cmd.flags == ["--dry-run", "--list"]
        assert cmd.paths == ["home/x/docs"]
        assert cmd.remote_path == "borg-1.2"
        assert cmd.is_remote

    def test_from_parts_keeps_trailing_flag_value(self):
        # A local repo with no "::" and a trailing flag value
        cmd = BorgCommand.from_parts(["list", "--format", "{archive}"], "/srv/repo")

        assert cmd.to_args() == ["list", "--format", "{archive}", "/srv/repo"]

    def test_create_args(self):
        cmd = BorgCommand.create(
            LOCAL_REPO,
            "docs-2024-03-05-0930",
            ["/home/x/docs", "/home/x/mail"],
            compression="zstd",
            exclude_patterns=["*.tmp", " ", "node_modules"],
        )

        assert cmd.to_args() == [
            "create",
            "--stats",
            "--compression",
            "zstd",
            "--exclude",
            "*.tmp",
            "--exclude",
            "node_modules",
            "/mnt/backup/repo::docs-2024-03-05-0930",
            "/home/x/docs",
            "/home/x/mail",
        ]

    def test_create_auto_compression_omitted(self):
        cmd = BorgCommand.create(LOCAL_REPO, "a", ["/src"])
        assert "--compression" not in cmd.to_args()

    def test_remote_path_first(self):
        cmd = BorgCommand.create(REMOTE_REPO, "a", ["/src"])
        args = cmd.to_args()
        assert args[:3] == ["--remote-path", "borg-1.2", "create"]
        assert cmd.is_remote
        assert cmd.repo_url == REMOTE_REPO.url

    def test_prune_args(self):
        job = JobDefinition(id="j", repo_id="r1", keep_daily=7, keep_weekly=4, keep_yearly=0)
        cmd = BorgCommand.prune_for_job(LOCAL_REPO, job)

        assert cmd.to_args() == [
            "prune",
            "-v",
            "--list",
            "--keep-daily",
            "7",
            "--keep-weekly",
            "4",
            "/mnt/backup/repo",
        ]

    def test_ratelimit_after_subcommand(self):
        cmd = BorgCommand(subcommand="list", target="user@host:repo", remote_ratelimit=500)
        assert cmd.to_args() == ["list", "--remote-ratelimit", "500", "user@host:repo"]

    def test_from_args_archive_target(self):
        cmd = BorgCommand.from_args(["extract", "--list", "/repo::arch", "home/x"])
        assert cmd.subcommand == "extract"
        assert cmd.flags == ["--list"]
        assert cmd.target == "/repo::arch"
        assert cmd.paths == ["home/x"]

    def test_from_args_remote_url(self):
        cmd = BorgCommand.from_args(["list", "--json", "ssh://user@host/./repo"])
        assert cmd.target == "ssh://user@host/./repo"
        assert cmd.is_remote

    def test_from_args_last_positional(self):
        cmd = BorgCommand.from_args(["info", "/local/repo"])
        assert cmd.target == "/local/repo"
        assert not cmd.is_remote

    def test_from_args_flags_only(self):
        cmd = BorgCommand.from_args(["--version"])
        assert cmd.subcommand == "--version"
        assert cmd.target is None
        assert cmd.to_args() == ["--version"]

    def test_from_args_remote_path(self):
        cmd = BorgCommand.from_args(["--remote-path", "borg1", "list", "user@host:repo"])
        assert cmd.remote_path == "borg1"
        assert cmd.to_args() == ["--remote-path", "borg1", "list", "user@host:repo"]

    def test_from_args_round_trip(self):
        args = ["create", "--stats", "/repo::a", "/src1", "/src2"]
        assert BorgCommand.from_args(args).to_args() == args

    def test_is_remote_url(self):
        assert is_remote_url("user@host:repo")
        assert is_remote_url("ssh://host/repo")
        assert not is_remote_url("/mnt/c/repo")


class TestExecutionEnvironment:
    def test_native_build(self):
        env = ExecutionEnvironment(borg_path="/usr/local/bin/borg")
        inv = env.build(BorgCommand(subcommand="list", target="/repo"), passphrase="pw")

        assert inv.binary == "/usr/local/bin/borg"
        assert inv.args == ["list", "/repo"]
        assert inv.env["BORG_PASSPHRASE"] == "pw"
        assert inv.env["BORG_RSH"] == "ssh -o BatchMode=yes"
        for key, value in BORG_ENV_DEFAULTS.items():
            assert inv.env[key] == value

    def test_no_passphrase_not_set(self):
        with patch.dict("os.environ", {}, clear=True):
            inv = ExecutionEnvironment().build(BorgCommand(subcommand="list", target="/repo"))
        assert "BORG_PASSPHRASE" not in inv.env

    def test_trust_host(self):
        env = ExecutionEnvironment()
        inv = env.build(BorgCommand(subcommand="list", target="u@h:r"), trust_host=True)
        assert "StrictHostKeyChecking=no" in inv.env["BORG_RSH"]

        env = ExecutionEnvironment(disable_host_check=True)
        assert "StrictHostKeyChecking=no" in env.ssh_command()

    def test_bandwidth_limit_only_for_remote(self):
        env = ExecutionEnvironment(limit_bandwidth=True, bandwidth_limit=250)

        remote = env.build(BorgCommand(subcommand="create", target="u@h:r::a", paths=["/x"]))
        local = env.build(BorgCommand(subcommand="create", target="/repo::a", paths=["/x"]))

        assert remote.args[:3] == ["create", "--remote-ratelimit", "250"]
        assert "--remote-ratelimit" not in local.args

    def test_remote_path_env(self):
        inv = ExecutionEnvironment().build(BorgCommand.create(REMOTE_REPO, "a", ["/x"]))
        assert inv.env["BORG_REMOTE_PATH"] == "borg-1.2"

    def test_borg_path_with_arguments(self):
        env = ExecutionEnvironment(borg_path="sudo -n borg")
        inv = env.build(BorgCommand(subcommand="list", target="/repo"))
        assert inv.binary == "sudo"
        assert inv.args == ["-n", "borg", "list", "/repo"]

    def test_wsl_wrapping(self):
        env = ExecutionEnvironment(use_wsl=True, wsl_user="backup")
        with patch.dict("os.environ", {}, clear=True):
            inv = env.build(BorgCommand(subcommand="list", target="/repo"), passphrase="pw")

        assert inv.binary == "wsl"
        assert inv.args == ["-u", "backup", "--exec", "borg", "list", "/repo"]
        forwarded = inv.env["WSLENV"].split(":")
        assert "BORG_PASSPHRASE/u" in forwarded
        assert "BORG_RSH/u" in forwarded

    def test_wsl_appends_existing_wslenv(self):
        env = ExecutionEnvironment(use_wsl=True)
        with patch.dict("os.environ", {"WSLENV": "USERPROFILE/p"}, clear=True):
            inv = env.wrap(["borg", "--version"], {"FOO": "1"})

        assert inv.args == ["--exec", "borg", "--version"]
        assert inv.env["WSLENV"] == "USERPROFILE/p:FOO/u"

    def test_wsl_without_env_leaves_wslenv(self):
        env = ExecutionEnvironment(use_wsl=True)
        with patch.dict("os.environ", {}, clear=True):
            inv = env.wrap(["echo", "hi"])
        assert "WSLENV" not in inv.env

    def test_from_settings(self):
        settings = AppSettings(use_wsl=True, borg_path="", wsl_user="me", limit_bandwidth=True, bandwidth_limit=10)
        env = ExecutionEnvironment.from_settings(settings)

        assert env.use_wsl is True
        assert env.borg_path == "borg"
        assert env.wsl_user == "me"
        assert env.translate_path("C:\\x") == "/mnt/c/x"

    def test_describe(self):
        inv = ExecutionEnvironment().build(BorgCommand(subcommand="create", target="/r::a", paths=["/my docs"]))
        assert inv.describe().endswith("create /r::a '/my docs'")
