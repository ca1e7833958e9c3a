"""Environment probes for BorgPilot (WSL, borg, mountpoints, SSH).

All probes run through ``CommandExecutor.spawn_capture`` with bounded
timeouts and return typed results; none of them raise for a failing
command.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import asdict, dataclass
from typing import Any

from loguru import logger

from borgpilot.core.commands import ExecutionEnvironment
from borgpilot.core.executor import CommandExecutor, CommandResult

PROBE_TIMEOUT = 15
PREPARE_TIMEOUT = 20

# `wsl.exe` writes UTF-16 for its own messages
WSL_ENCODING = "utf-16-le"

FALLBACK_BORG_PATH = "/usr/bin/borg"

VIRTUALIZATION_MARKERS = (
    "virtual machine platform",
    "enable virtualization",
    "hypervisor",
    "0x80370102",
)

WSL_DISABLED_MARKERS = (
    "optional component is not enabled",
    "not enabled",
    "is not installed",
    "wsl is not installed",
    "windows-subsystem für linux ist nicht aktiviert",
    "windows-subsystem für linux wurde nicht aktiviert",
)

# "* Ubuntu  Running  2" or "Ubuntu  Stopped  2"
WSL_VERBOSE_LINE_RE = re.compile(r"^\*?\s*(\S+)\s+(\S+)\s+(\d+)\s*$")


class WslReason:
    """Why WSL is not usable."""

    VIRTUALIZATION_MISSING = "virtualization-missing"
    WSL_MISSING = "wsl-missing"
    WSL_LIST_FAILED = "wsl-list-failed"
    NO_DISTRO = "no-distro"
    DOCKER_DEFAULT = "docker-default"
    NO_SUPPORTED_DISTRO = "no-supported-distro"
    DISTRO_NOT_READY = "distro-not-ready"


@dataclass
class WslStatus:
    installed: bool
    reason: str | None = None
    error: str | None = None
    distro: str | None = None
    details: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BorgStatus:
    installed: bool
    version: str | None = None
    distro: str | None = None
    path: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class MountpointResult:
    ok: bool
    skipped: bool = False
    error: str | None = None


@dataclass
class SshKeyInstallOptions:
    is_hetzner: bool
    port: str | None
    remote_user: str


@dataclass
class SshProbeResult:
    success: bool
    error: str | None = None


def _clean(text: str) -> str:
    return text.replace("\0", "").lstrip("\ufeff")


def _detail(result: CommandResult) -> str:
    return _clean(result.stderr or result.stdout or result.error or "").strip()


def _mentions_any(text: str, markers: tuple[str, ...]) -> bool:
    lower = text.lower()
    return any(marker in lower for marker in markers)


def parse_wsl_list_output(stdout: str | None) -> str | None:
    """Pick the preferred distro from ``wsl --list`` output.

    Ubuntu is preferred over Debian. The first token of the matching line
    is returned, e.g. ``Ubuntu-24.04 (Default)`` gives ``Ubuntu-24.04``.
    """
    if not stdout:
        return None

    lines = [line.strip() for line in re.split(r"[\r\n]+", _clean(stdout))]
    lines = [
        line
        for line in lines
        if line and "Windows Subsystem" not in line and "There are no" not in line
    ]

    for wanted in ("ubuntu", "debian"):
        match = next((line for line in lines if wanted in line.lower()), None)
        if match:
            return match.split()[0]
    return None


async def get_preferred_wsl_distro(executor: CommandExecutor) -> str | None:
    """Return the Ubuntu/Debian distro to use, or None for the WSL default."""
    result = await executor.spawn_capture(
        "wsl", ["--list"], encoding=WSL_ENCODING, timeout=PROBE_TIMEOUT
    )
    if not result.ok:
        return None
    return parse_wsl_list_output(result.stdout)


async def check_wsl(executor: CommandExecutor) -> WslStatus:
    """Check whether WSL can run a supported (Ubuntu/Debian) distro."""
    status = await executor.spawn_capture(
        "wsl", ["--status"], encoding=WSL_ENCODING, timeout=PROBE_TIMEOUT
    )
    if not status.ok:
        detail = _detail(status)
        if _mentions_any(detail, VIRTUALIZATION_MARKERS):
            return WslStatus(
                installed=False,
                reason=WslReason.VIRTUALIZATION_MISSING,
                error=(
                    "WSL is present but cannot start because virtualization is not available. "
                    "Enable nested virtualization (VT-x/AMD-V) for the VM, then try again."
                ),
            )
        return WslStatus(
            installed=False,
            reason=WslReason.WSL_MISSING,
            error=detail or "WSL is not enabled on this machine.",
        )

    # Exit code 0 does not always mean WSL is enabled
    detail = _clean(status.stderr or status.stdout).strip()
    if _mentions_any(detail, WSL_DISABLED_MARKERS):
        return WslStatus(
            installed=False,
            reason=WslReason.WSL_MISSING,
            error=detail or "WSL is not enabled on this machine.",
        )

    listing = await executor.spawn_capture(
        "wsl", ["--list", "--verbose"], encoding=WSL_ENCODING, timeout=PROBE_TIMEOUT
    )
    if not listing.ok:
        return WslStatus(
            installed=False,
            reason=WslReason.WSL_LIST_FAILED,
            error=_detail(listing) or "WSL is enabled but listing distributions failed.",
        )

    default_distro = ""
    distros: list[str] = []
    supported: list[str] = []
    for line in _clean(listing.stdout).splitlines():
        line = line.strip()
        match = WSL_VERBOSE_LINE_RE.match(line) if line else None
        if not match:
            continue
        name = match.group(1)
        distros.append(name)
        if line.startswith("*"):
            default_distro = name
        if "ubuntu" in name.lower() or "debian" in name.lower():
            supported.append(name)

    if not distros:
        return WslStatus(
            installed=False,
            reason=WslReason.NO_DISTRO,
            error=(
                "WSL is enabled but no Linux distribution is installed yet. Install Ubuntu and "
                "complete the first-run user setup, then retry."
            ),
        )

    if not supported:
        # Registered distros (e.g. docker-desktop) don't prove WSL can execute commands
        probe = await executor.spawn_capture(
            "wsl", ["--exec", "echo", "wsl_core_active"], timeout=PROBE_TIMEOUT
        )
        if not probe.ok or probe.stdout.strip() != "wsl_core_active":
            detail = _detail(probe)
            if _mentions_any(detail, VIRTUALIZATION_MARKERS):
                return WslStatus(
                    installed=False,
                    reason=WslReason.VIRTUALIZATION_MISSING,
                    error=(
                        "WSL is present but cannot start because virtualization is not available. "
                        'Enable virtualization and the "Virtual Machine Platform" feature, then retry.'
                    ),
                )
            return WslStatus(
                installed=False,
                reason=WslReason.WSL_MISSING,
                error=detail or "WSL is not enabled on this machine.",
            )

        if "docker" in default_distro.lower():
            logger.warning("WSL default distro is Docker, no Ubuntu/Debian found")
            return WslStatus(
                installed=False,
                reason=WslReason.DOCKER_DEFAULT,
                error=f"Default distro is '{default_distro}'. Ubuntu or Debian is required.",
            )

        hint = f" Default is '{default_distro}'." if default_distro else ""
        return WslStatus(
            installed=False,
            reason=WslReason.NO_SUPPORTED_DISTRO,
            error=f"No Ubuntu/Debian WSL distribution found.{hint} Install Ubuntu (WSL) and complete the first-run setup.",
        )

    preferred = supported[0]
    echo = await executor.spawn_capture(
        "wsl", ["-d", preferred, "--exec", "echo", "wsl_active"], timeout=PROBE_TIMEOUT
    )
    if echo.error or echo.stdout.strip() != "wsl_active":
        return WslStatus(
            installed=False,
            reason=WslReason.DISTRO_NOT_READY,
            distro=preferred,
            error=_detail(echo)
            or "WSL is enabled but cannot execute commands. The distro may not be initialized yet.",
        )

    return WslStatus(installed=True, distro=preferred, details=f"Default: {default_distro}")


async def check_borg(
    executor: CommandExecutor,
    environment: ExecutionEnvironment | None = None,
) -> BorgStatus:
    """Check that borg runs, falling back to ``/usr/bin/borg``."""
    environment = environment or ExecutionEnvironment()

    if environment.use_wsl:
        distro = await get_preferred_wsl_distro(executor)
        prefix = ["-d", distro] if distro else []
        for path in ("borg", FALLBACK_BORG_PATH):
            result = await executor.spawn_capture(
                "wsl", [*prefix, "--exec", path, "--version"], timeout=PROBE_TIMEOUT
            )
            if result.code == 0 and "borg" in result.stdout:
                return BorgStatus(
                    installed=True,
                    version=result.stdout.strip(),
                    distro=distro or "Default",
                    path=path if path != "borg" else None,
                )
        logger.info(f"Borg check failed on distro '{distro or 'default'}'")
        return BorgStatus(installed=False)

    candidates = [environment.borg_path or "borg"]
    if FALLBACK_BORG_PATH not in candidates:
        candidates.append(FALLBACK_BORG_PATH)
    for path in candidates:
        argv = shlex.split(path)
        result = await executor.spawn_capture(argv[0], [*argv[1:], "--version"], timeout=PROBE_TIMEOUT)
        if result.code == 0 and "borg" in result.stdout:
            return BorgStatus(
                installed=True,
                version=result.stdout.strip(),
                path=path if path != candidates[0] else None,
            )

    logger.info("Borg check failed: no runnable borg binary found")
    return BorgStatus(installed=False)


async def prepare_wsl_mountpoint(executor: CommandExecutor, mount_point: str) -> MountpointResult:
    """Create a Linux mountpoint inside WSL, writable by the distro's default user.

    Non-Linux paths are skipped.
    """
    if not isinstance(mount_point, str) or not mount_point.startswith("/"):
        return MountpointResult(ok=True, skipped=True)

    distro = await get_preferred_wsl_distro(executor)
    prefix = ["-d", distro] if distro else []

    user = await executor.spawn_capture(
        "wsl", [*prefix, "--exec", "bash", "-lc", "id -un"], timeout=PROBE_TIMEOUT
    )
    default_user = user.stdout.strip()

    script = (
        'MP="$1"; U="$2"; '
        'mkdir -p "$MP"; '
        'if [ -n "$U" ]; then chown "$U":"$U" "$MP" 2>/dev/null || true; fi; '
        'chmod 0777 "$MP" 2>/dev/null || true; '
        'test -d "$MP" && test -w "$MP"'
    )
    prep = await executor.spawn_capture(
        "wsl",
        [*prefix, "-u", "root", "--exec", "bash", "-lc", script, "borgpilot", mount_point, default_user],
        timeout=PREPARE_TIMEOUT,
    )
    if not prep.ok:
        return MountpointResult(
            ok=False,
            error=f"Mountpoint is not writable: {mount_point}. {_detail(prep)[:2000]}",
        )
    return MountpointResult(ok=True)


# SSH helpers


def is_hetzner_storage_box(target: str | None) -> bool:
    """Hetzner Storage Boxes take SSH keys on port 23."""
    return isinstance(target, str) and "storagebox.de" in target


def extract_remote_user(target: str | None) -> str:
    """User part of ``user@host``, or an empty string."""
    if not isinstance(target, str):
        return ""
    parts = target.split("@")
    return parts[0] if len(parts) > 1 else ""


def resolve_ssh_key_install_options(target: str, port: str | None = None) -> SshKeyInstallOptions:
    """Work out the port and user for installing an SSH key on ``target``."""
    final_port = port
    is_hetzner = is_hetzner_storage_box(target)
    if is_hetzner and (not final_port or final_port == "22"):
        final_port = "23"
    return SshKeyInstallOptions(
        is_hetzner=is_hetzner,
        port=final_port,
        remote_user=extract_remote_user(target),
    )


async def probe_ssh_connection(
    executor: CommandExecutor,
    target: str,
    port: str | None = None,
    environment: ExecutionEnvironment | None = None,
    trust_host: bool = False,
) -> SshProbeResult:
    """Check that key-based SSH login to ``target`` works without prompting."""
    environment = environment or ExecutionEnvironment()
    argv = ["ssh", "-o", "BatchMode=yes", "-o", "ConnectTimeout=10"]
    if trust_host or environment.disable_host_check:
        argv += ["-o", "StrictHostKeyChecking=no"]
    if port:
        argv += ["-p", str(port)]
    argv += [target, "echo", "borgpilot_ok"]

    invocation = environment.wrap(argv)
    result = await executor.spawn_capture(
        invocation.binary, invocation.args, env=invocation.env, timeout=PREPARE_TIMEOUT
    )
    if result.ok and "borgpilot_ok" in result.stdout:
        return SshProbeResult(success=True)
    return SshProbeResult(success=False, error=_detail(result) or f"SSH exited with code {result.code}")
