"""Borg command construction for BorgPilot.

A ``BorgCommand`` keeps the structure of an invocation (subcommand, target,
flags, paths) until spawn time, when an ``ExecutionEnvironment`` turns it
into a binary, an argv and an environment, wrapping it in WSL if needed.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass, field, replace

from borgpilot.models import AppSettings, Compression, JobDefinition, RepoDefinition

# Environment every borg invocation runs with
BORG_ENV_DEFAULTS = {
    "BORG_UNKNOWN_UNENCRYPTED_REPO_ACCESS_IS_OK": "yes",
    "BORG_RELOCATED_REPO_ACCESS_IS_OK": "yes",
    "BORG_DISPLAY_PASSPHRASE": "no",
}

# Windows drive path, e.g. C:\Users or D:/data
WINDOWS_PATH_RE = re.compile(r"^([a-zA-Z]):[\\/](.*)$", re.DOTALL)


def translate_path(path: str, use_wsl: bool = True) -> str:
    """Rewrite a Windows drive path to its WSL mount location.

    ``C:\\Users\\x\\Documents`` becomes ``/mnt/c/Users/x/Documents``. Other
    paths are returned unchanged.
    """
    if not use_wsl:
        return path
    match = WINDOWS_PATH_RE.match(path)
    if not match:
        return path
    drive, rest = match.groups()
    rest = rest.replace("\\", "/")
    return f"/mnt/{drive.lower()}/{rest}"


def is_remote_url(url: str) -> bool:
    """Check if a repository URL is reached over SSH."""
    return "@" in url or url.startswith("ssh://")


@dataclass
class BorgCommand:
    """A borg invocation before serialization to argv."""

    subcommand: str
    target: str | None = None  # repo URL or URL::archive
    flags: list[str] = field(default_factory=list)
    paths: list[str] = field(default_factory=list)
    remote_path: str | None = None
    remote_ratelimit: int | None = None  # KB/s

    @property
    def repo_url(self) -> str | None:
        if not self.target:
            return None
        return self.target.split("::", 1)[0]

    @property
    def is_remote(self) -> bool:
        return bool(self.repo_url) and is_remote_url(self.repo_url)

    def to_args(self) -> list[str]:
        """Serialize to borg arguments (without the binary)."""
        args: list[str] = []
        if self.remote_path:
            args += ["--remote-path", self.remote_path]
        args.append(self.subcommand)
        if self.remote_ratelimit:
            args += ["--remote-ratelimit", str(self.remote_ratelimit)]
        args += self.flags
        if self.target:
            args.append(self.target)
        args += self.paths
        return args

    @classmethod
    def create(
        cls,
        repo: RepoDefinition,
        archive_name: str,
        paths: list[str],
        compression: Compression | str = Compression.AUTO,
        exclude_patterns: list[str] | None = None,
    ) -> BorgCommand:
        """Build ``borg create --stats REPO::ARCHIVE PATH...``."""
        flags = ["--stats"]
        compression = Compression(compression)
        if compression != Compression.AUTO:
            flags += ["--compression", compression.value]
        for pattern in exclude_patterns or []:
            if pattern.strip():
                flags += ["--exclude", pattern.strip()]
        return cls(
            subcommand="create",
            target=f"{repo.url}::{archive_name}",
            flags=flags,
            paths=list(paths),
            remote_path=repo.remote_path,
        )

    @classmethod
    def prune(
        cls,
        repo: RepoDefinition,
        keep_daily: int | None = None,
        keep_weekly: int | None = None,
        keep_monthly: int | None = None,
        keep_yearly: int | None = None,
    ) -> BorgCommand:
        """Build ``borg prune -v --list --keep-*... REPO``."""
        flags = ["-v", "--list"]
        for name, value in (
            ("daily", keep_daily),
            ("weekly", keep_weekly),
            ("monthly", keep_monthly),
            ("yearly", keep_yearly),
        ):
            if value:
                flags += [f"--keep-{name}", str(value)]
        return cls(subcommand="prune", target=repo.url, flags=flags, remote_path=repo.remote_path)

    @classmethod
    def prune_for_job(cls, repo: RepoDefinition, job: JobDefinition) -> BorgCommand:
        return cls.prune(
            repo,
            keep_daily=job.keep_daily,
            keep_weekly=job.keep_weekly,
            keep_monthly=job.keep_monthly,
            keep_yearly=job.keep_yearly,
        )

    @classmethod
    def from_parts(
        cls,
        args: list[str],
        target: str,
        paths: list[str] | None = None,
    ) -> BorgCommand:
        """Build from ``[subcommand, *flags]`` with an explicit target.

        A leading ``--remote-path <path>`` pair is accepted as in
        ``from_args``.
        """
        args = list(args)
        remote_path = None
        if len(args) >= 2 and args[0] == "--remote-path":
            remote_path = args[1]
            args = args[2:]
        return cls(
            subcommand=args[0] if args else "",
            target=target,
            flags=args[1:],
            paths=list(paths or []),
            remote_path=remote_path,
        )

    @classmethod
    def from_args(cls, args: list[str]) -> BorgCommand:
        """Wrap pre-built arguments, locating the target by pattern.

        The first argument is the subcommand. The target is the first later
        argument naming an archive (``::``), else the first remote URL, else
        the last argument if it is not a flag.
        """
        args = list(args)
        remote_path = None
        if len(args) >= 2 and args[0] == "--remote-path":
            remote_path = args[1]
            args = args[2:]
        if not args:
            return cls(subcommand="", remote_path=remote_path)

        subcommand, rest = args[0], args[1:]
        target_index = next((i for i, a in enumerate(rest) if "::" in a), None)
        if target_index is None:
            target_index = next((i for i, a in enumerate(rest) if is_remote_url(a)), None)
        if target_index is None and rest and not rest[-1].startswith("-"):
            target_index = len(rest) - 1
        if target_index is None:
            return cls(subcommand=subcommand, flags=rest, remote_path=remote_path)
        return cls(
            subcommand=subcommand,
            target=rest[target_index],
            flags=rest[:target_index],
            paths=rest[target_index + 1 :],
            remote_path=remote_path,
        )


@dataclass
class Invocation:
    """A fully resolved process invocation."""

    binary: str
    args: list[str]
    env: dict[str, str]

    def describe(self) -> str:
        """Command line for logs (environment omitted)."""
        return " ".join([self.binary, *(shlex.quote(a) for a in self.args)])


@dataclass
class ExecutionEnvironment:
    """How borg is launched on this machine."""

    use_wsl: bool = False
    borg_path: str = "borg"
    wsl_user: str | None = None
    disable_host_check: bool = False
    limit_bandwidth: bool = False
    bandwidth_limit: int = 1000

    @classmethod
    def from_settings(cls, settings: AppSettings) -> ExecutionEnvironment:
        return cls(
            use_wsl=settings.use_wsl,
            borg_path=settings.borg_path or "borg",
            wsl_user=settings.wsl_user,
            disable_host_check=settings.disable_host_check,
            limit_bandwidth=settings.limit_bandwidth,
            bandwidth_limit=settings.bandwidth_limit,
        )

    def translate_path(self, path: str) -> str:
        return translate_path(path, self.use_wsl)

    def _borg_argv(self) -> list[str]:
        parts = shlex.split(self.borg_path, posix=os.name != "nt")
        return parts or ["borg"]

    def ssh_command(self, trust_host: bool = False) -> str:
        rsh = "ssh -o BatchMode=yes"
        if trust_host or self.disable_host_check:
            rsh += " -o StrictHostKeyChecking=no"
        return rsh

    def wrap(self, argv: list[str], env_vars: dict[str, str] | None = None) -> Invocation:
        """Resolve an argv (binary first) into an invocation, via WSL if enabled.

        Variables in ``env_vars`` are added to the inherited environment and,
        under WSL, forwarded through ``WSLENV``.
        """
        env_vars = dict(env_vars or {})
        if self.use_wsl:
            if env_vars:
                forwarded = ":".join(f"{name}/u" for name in env_vars)
                existing = os.environ.get("WSLENV")
                env_vars["WSLENV"] = f"{existing}:{forwarded}" if existing else forwarded
            prefix = ["-u", self.wsl_user] if self.wsl_user else []
            return Invocation("wsl", [*prefix, "--exec", *argv], {**os.environ, **env_vars})
        return Invocation(argv[0], argv[1:], {**os.environ, **env_vars})

    def build(
        self,
        command: BorgCommand,
        passphrase: str | None = None,
        trust_host: bool = False,
        extra_env: dict[str, str] | None = None,
    ) -> Invocation:
        """Resolve a borg command into an invocation.

        Args:
            command: The borg command
            passphrase: Repository passphrase, passed as ``BORG_PASSPHRASE``
            trust_host: Skip SSH host key verification for this repository
            extra_env: Additional variables for the child
        """
        if self.limit_bandwidth and command.is_remote and not command.remote_ratelimit:
            command = replace(command, remote_ratelimit=self.bandwidth_limit)

        env_vars = dict(BORG_ENV_DEFAULTS)
        env_vars.update(extra_env or {})
        env_vars["BORG_RSH"] = self.ssh_command(trust_host)
        if passphrase:
            env_vars["BORG_PASSPHRASE"] = passphrase
        if command.remote_path:
            env_vars["BORG_REMOTE_PATH"] = command.remote_path

        return self.wrap([*self._borg_argv(), *command.to_args()], env_vars)
