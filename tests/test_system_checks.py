"""Tests for the WSL, borg and SSH probes."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from borgpilot.core.commands import ExecutionEnvironment
from borgpilot.core.executor import CommandResult
from borgpilot.core.system_checks import (
    FALLBACK_BORG_PATH,
    PROBE_TIMEOUT,
    WSL_ENCODING,
    WslReason,
    check_borg,
    check_wsl,
    extract_remote_user,
    get_preferred_wsl_distro,
    is_hetzner_storage_box,
    parse_wsl_list_output,
    prepare_wsl_mountpoint,
    probe_ssh_connection,
    resolve_ssh_key_install_options,
)

OK = CommandResult(code=0)

WSL_VERBOSE = (
    "\ufeff  NAME            STATE           VERSION\r\n"
    "* Ubuntu-22.04    Running         2\r\n"
    "  docker-desktop  Stopped         2\r\n"
)


def ok(stdout: str = "") -> CommandResult:
    return CommandResult(code=0, stdout=stdout)


def fail(stderr: str = "", code: int = 1) -> CommandResult:
    return CommandResult(code=code, stderr=stderr)


def scripted(*results: CommandResult) -> MagicMock:
    executor = MagicMock()
    executor.spawn_capture = AsyncMock(side_effect=list(results))
    return executor


def argv_of(executor: MagicMock, index: int) -> list[str]:
    call = executor.spawn_capture.call_args_list[index]
    return [call.args[0], *call.args[1]]


class TestParseWslList:
    def test_prefers_ubuntu(self):
        output = "Windows Subsystem for Linux Distributions:\nDebian\nUbuntu-24.04 (Default)\n"
        assert parse_wsl_list_output(output) == "Ubuntu-24.04"

    def test_debian_fallback(self):
        assert parse_wsl_list_output("docker-desktop\r\nDebian (Default)\r\n") == "Debian"

    def test_null_bytes_stripped(self):
        raw = "\0".join("Ubuntu (Default)") + "\0\r\0\n"
        assert parse_wsl_list_output(raw) == "Ubuntu"

    @pytest.mark.parametrize("output", [None, "", "There are no installed distributions.", "docker-desktop"])
    def test_none(self, output):
        assert parse_wsl_list_output(output) is None


class TestCheckWsl:
    @pytest.mark.asyncio
    async def test_happy_path(self):
        executor = scripted(ok("Default Distribution: Ubuntu"), ok(WSL_VERBOSE), ok("wsl_active\n"))

        status = await check_wsl(executor)

        assert status.installed is True
        assert status.distro == "Ubuntu-22.04"
        assert argv_of(executor, 0) == ["wsl", "--status"]
        assert executor.spawn_capture.call_args_list[0].kwargs["encoding"] == WSL_ENCODING
        assert executor.spawn_capture.call_args_list[0].kwargs["timeout"] == PROBE_TIMEOUT
        assert argv_of(executor, 2) == ["wsl", "-d", "Ubuntu-22.04", "--exec", "echo", "wsl_active"]

    @pytest.mark.asyncio
    async def test_status_failure_is_wsl_missing(self):
        executor = scripted(CommandResult(code=None, error="[Errno 2] No such file or directory: 'wsl'"))
        status = await check_wsl(executor)

        assert status.installed is False
        assert status.reason == WslReason.WSL_MISSING

    @pytest.mark.asyncio
    async def test_virtualization_missing(self):
        executor = scripted(fail("Please enable the Virtual Machine Platform Windows feature"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.VIRTUALIZATION_MISSING

    @pytest.mark.asyncio
    async def test_exit_zero_but_disabled(self):
        executor = scripted(ok("The Windows Subsystem for Linux optional component is not enabled."))
        status = await check_wsl(executor)
        assert status.reason == WslReason.WSL_MISSING

    @pytest.mark.asyncio
    async def test_list_failed(self):
        executor = scripted(ok(), fail("boom"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.WSL_LIST_FAILED

    @pytest.mark.asyncio
    async def test_no_distro(self):
        executor = scripted(ok(), ok("  NAME  STATE  VERSION\r\n"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.NO_DISTRO

    @pytest.mark.asyncio
    async def test_docker_default(self):
        listing = "  NAME STATE VERSION\n* docker-desktop Running 2\n"
        executor = scripted(ok(), ok(listing), ok("wsl_core_active\n"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.DOCKER_DEFAULT

    @pytest.mark.asyncio
    async def test_no_supported_distro(self):
        listing = "  NAME STATE VERSION\n* Alpine Running 2\n"
        executor = scripted(ok(), ok(listing), ok("wsl_core_active\n"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.NO_SUPPORTED_DISTRO
        assert "Alpine" in status.error

    @pytest.mark.asyncio
    async def test_unsupported_distro_core_broken(self):
        listing = "  NAME STATE VERSION\n* Alpine Running 2\n"
        executor = scripted(ok(), ok(listing), fail("HCS_E_HYPERV_NOT_INSTALLED hypervisor"))
        status = await check_wsl(executor)
        assert status.reason == WslReason.VIRTUALIZATION_MISSING

    @pytest.mark.asyncio
    async def test_distro_not_ready(self):
        executor = scripted(ok(), ok(WSL_VERBOSE), ok("Please create a default UNIX user account"))
        status = await check_wsl(executor)

        assert status.reason == WslReason.DISTRO_NOT_READY
        assert status.distro == "Ubuntu-22.04"


class TestCheckBorg:
    @pytest.mark.asyncio
    async def test_native(self):
        executor = scripted(ok("borg 1.2.8\n"))
        status = await check_borg(executor, ExecutionEnvironment())

        assert status.installed
        assert status.version == "borg 1.2.8"
        assert status.path is None
        assert argv_of(executor, 0) == ["borg", "--version"]

    @pytest.mark.asyncio
    async def test_native_fallback_path(self):
        executor = scripted(CommandResult(code=None, error="not found"), ok("borg 1.4.0"))
        status = await check_borg(executor, ExecutionEnvironment())

        assert status.installed
        assert status.path == FALLBACK_BORG_PATH
        assert argv_of(executor, 1) == [FALLBACK_BORG_PATH, "--version"]

    @pytest.mark.asyncio
    async def test_not_installed(self):
        executor = scripted(fail(), fail())
        status = await check_borg(executor, ExecutionEnvironment())
        assert status.installed is False

    @pytest.mark.asyncio
    async def test_wsl_uses_preferred_distro(self):
        executor = scripted(ok("Ubuntu (Default)\n"), ok("borg 1.2.0\n"))
        status = await check_borg(executor, ExecutionEnvironment(use_wsl=True))

        assert status.installed
        assert status.distro == "Ubuntu"
        assert argv_of(executor, 1) == ["wsl", "-d", "Ubuntu", "--exec", "borg", "--version"]

    @pytest.mark.asyncio
    async def test_wsl_default_distro(self):
        executor = scripted(fail(), fail(), ok("borg 1.2.0"))
        status = await check_borg(executor, ExecutionEnvironment(use_wsl=True))

        assert status.installed
        assert status.distro == "Default"
        assert status.path == FALLBACK_BORG_PATH
        assert argv_of(executor, 2) == ["wsl", "--exec", FALLBACK_BORG_PATH, "--version"]


class TestPreferredDistro:
    @pytest.mark.asyncio
    async def test_list_failure(self):
        assert await get_preferred_wsl_distro(scripted(fail())) is None


class TestPrepareMountpoint:
    @pytest.mark.asyncio
    async def test_windows_path_skipped(self):
        executor = scripted()
        result = await prepare_wsl_mountpoint(executor, "C:\\mnt")

        assert result.ok and result.skipped
        executor.spawn_capture.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_as_root(self):
        executor = scripted(ok("Ubuntu\n"), ok("alice\n"), OK)
        result = await prepare_wsl_mountpoint(executor, "/mnt/borg/restore")

        assert result.ok and not result.skipped
        argv = argv_of(executor, 2)
        assert argv[:6] == ["wsl", "-d", "Ubuntu", "-u", "root", "--exec"]
        assert argv[-2:] == ["/mnt/borg/restore", "alice"]

    @pytest.mark.asyncio
    async def test_not_writable(self):
        executor = scripted(ok("Ubuntu\n"), ok("alice\n"), fail("Permission denied"))
        result = await prepare_wsl_mountpoint(executor, "/mnt/borg")

        assert not result.ok
        assert "Permission denied" in result.error


class TestSshHelpers:
    def test_hetzner_detection(self):
        assert is_hetzner_storage_box("u123@u123.your-storagebox.de")
        assert not is_hetzner_storage_box("me@nas.local")
        assert not is_hetzner_storage_box(None)

    def test_extract_remote_user(self):
        assert extract_remote_user("u123@host") == "u123"
        assert extract_remote_user("host") == ""
        assert extract_remote_user(None) == ""

    @pytest.mark.parametrize("port,expected", [(None, "23"), ("22", "23"), ("2222", "2222")])
    def test_hetzner_port(self, port, expected):
        options = resolve_ssh_key_install_options("u1@u1.your-storagebox.de", port)
        assert options.is_hetzner
        assert options.port == expected
        assert options.remote_user == "u1"

    def test_regular_host_keeps_port(self):
        options = resolve_ssh_key_install_options("me@nas", None)
        assert options.port is None
        assert not options.is_hetzner

    @pytest.mark.asyncio
    async def test_probe_success(self):
        executor = scripted(ok("borgpilot_ok\n"))
        result = await probe_ssh_connection(executor, "me@nas", port="2222", trust_host=True)

        assert result.success
        argv = argv_of(executor, 0)
        assert argv[0] == "ssh"
        assert "BatchMode=yes" in argv
        assert "StrictHostKeyChecking=no" in argv
        assert argv[-5:] == ["-p", "2222", "me@nas", "echo", "borgpilot_ok"]

    @pytest.mark.asyncio
    async def test_probe_failure(self):
        executor = scripted(fail("Permission denied (publickey).", code=255))
        result = await probe_ssh_connection(executor, "me@nas")

        assert not result.success
        assert "publickey" in result.error

    @pytest.mark.asyncio
    async def test_probe_via_wsl(self):
        executor = scripted(ok("borgpilot_ok"))
        await probe_ssh_connection(executor, "me@nas", environment=ExecutionEnvironment(use_wsl=True))
        assert argv_of(executor, 0)[:3] == ["wsl", "--exec", "ssh"]
