"""BorgPilot CLI application."""

from __future__ import annotations

import asyncio
import os
import signal
import sys
import time
from datetime import datetime

import psutil
import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from borgpilot import __version__
from borgpilot.config import (
    DATA_FILE_NAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_LOGS_DIR,
    DEFAULT_PID_FILE,
    SECRETS_FILE_NAME,
    create_default_config,
    ensure_config_dir,
    get_data_dir,
    load_config,
)
from borgpilot.core.supervisor import Supervisor

# Initialize
app = typer.Typer(
    name="borgpilot",
    help="BorgPilot - Scheduler and control plane for Borg backups",
    no_args_is_help=True,
)
console = Console()

# Sub-commands
daemon_app = typer.Typer(help="Daemon management commands")
app.add_typer(daemon_app, name="daemon")

secret_app = typer.Typer(help="Secret management commands")
app.add_typer(secret_app, name="secret")

LOG_FORMAT = "<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
DAEMON_LOG_FILE = DEFAULT_LOGS_DIR / "daemon.log"
DAEMON_OUT_FILE = DEFAULT_LOGS_DIR / "daemon.out"


def setup_logging(verbose: bool = False) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else "INFO"

    # Console logging
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level,
        colorize=True,
    )


def add_daemon_log_sink(level: str = "INFO") -> None:
    """Add the rotating daemon log file."""
    ensure_config_dir()
    logger.add(
        DAEMON_LOG_FILE,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message}",
        level=level.upper(),
        rotation="10 MB",
        retention=5,
        enqueue=True,
    )


def get_daemon_pid() -> int | None:
    """Get the PID of the running daemon."""
    if not DEFAULT_PID_FILE.exists():
        return None

    try:
        pid = int(DEFAULT_PID_FILE.read_text().strip())
        # Check if process is actually running
        if Supervisor.check_pid(pid):
            return pid
        else:
            # Stale PID file
            DEFAULT_PID_FILE.unlink()
            return None
    except (ValueError, FileNotFoundError):
        return None


def write_daemon_pid(pid: int) -> None:
    """Write the daemon PID to file."""
    ensure_config_dir()
    DEFAULT_PID_FILE.write_text(str(pid))


def remove_daemon_pid() -> None:
    """Remove the daemon PID file."""
    if DEFAULT_PID_FILE.exists():
        DEFAULT_PID_FILE.unlink()


def _daemon_client():
    """Return an API client if the daemon is up, else None."""
    if not get_daemon_pid():
        return None

    from borgpilot.cli.client import APIClient

    client = APIClient()
    if client.is_daemon_running():
        return client
    client.close()
    return None


# ============================================================================
# Daemon Commands
# ============================================================================


@daemon_app.command("start")
def daemon_start(
    foreground: bool = typer.Option(False, "--foreground", "-f", help="Run in foreground"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Start the BorgPilot daemon."""
    setup_logging(verbose)

    # Check if already running
    pid = get_daemon_pid()
    if pid:
        console.print(f"[yellow]Daemon is already running (PID: {pid})[/yellow]")
        raise typer.Exit(0)

    # Ensure config exists
    create_default_config()

    if foreground or not hasattr(os, "fork"):
        _run_daemon(verbose)
        return

    # Fork and run in background
    console.print("[blue]Starting daemon in background...[/blue]")

    pid = os.fork()
    if pid > 0:
        # Parent process: give the child a moment to write its PID file
        time.sleep(0.5)

        daemon_pid = get_daemon_pid()
        if daemon_pid:
            console.print(f"[green]✓ Daemon started (PID: {daemon_pid})[/green]")
        else:
            console.print("[red]✗ Daemon failed to start. Check logs.[/red]")
            raise typer.Exit(1)
        return

    # Child process - become daemon
    os.setsid()

    # Fork again to prevent zombie processes
    pid = os.fork()
    if pid > 0:
        os._exit(0)

    os.chdir("/")
    os.umask(0o022)

    # Redirect standard file descriptors
    ensure_config_dir()

    sys.stdout.flush()
    sys.stderr.flush()

    with open(os.devnull, "r") as f:
        os.dup2(f.fileno(), sys.stdin.fileno())

    with open(DAEMON_OUT_FILE, "a") as f:
        os.dup2(f.fileno(), sys.stdout.fileno())
        os.dup2(f.fileno(), sys.stderr.fileno())

    _run_daemon(verbose)


def _run_daemon(verbose: bool = False) -> None:
    """Run the daemon process."""
    write_daemon_pid(os.getpid())

    try:
        config = load_config()
        add_daemon_log_sink("DEBUG" if verbose else config.daemon.log_level)

        supervisor = Supervisor(config=config)

        def handle_signal(signum: int, frame: object) -> None:
            logger.info(f"Received signal {signum}")
            supervisor.shutdown()

        signal.signal(signal.SIGTERM, handle_signal)
        signal.signal(signal.SIGINT, handle_signal)

        asyncio.run(supervisor.run())

    except Exception as e:
        logger.error(f"Daemon error: {e}")
        raise
    finally:
        remove_daemon_pid()


@daemon_app.command("stop")
def daemon_stop(
    timeout: int = typer.Option(60, "--timeout", "-t", help="Shutdown timeout in seconds"),
) -> None:
    """Stop the BorgPilot daemon."""
    pid = get_daemon_pid()
    if not pid:
        console.print("[yellow]Daemon is not running[/yellow]")
        raise typer.Exit(1)

    console.print(f"[blue]Stopping daemon (PID: {pid})...[/blue]")

    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        console.print("[yellow]Daemon process not found[/yellow]")
        remove_daemon_pid()
        return

    start = time.time()
    while time.time() - start < timeout:
        if not Supervisor.check_pid(pid):
            console.print("[green]✓ Daemon stopped[/green]")
            remove_daemon_pid()
            return
        time.sleep(0.5)

    # Force kill
    console.print("[yellow]Daemon did not stop gracefully, force killing...[/yellow]")
    try:
        os.kill(pid, getattr(signal, "SIGKILL", signal.SIGTERM))
        time.sleep(0.5)
        console.print("[green]✓ Daemon killed[/green]")
    except ProcessLookupError:
        pass
    finally:
        remove_daemon_pid()


@daemon_app.command("status")
def daemon_status() -> None:
    """Show daemon status."""
    pid = get_daemon_pid()

    if not pid:
        console.print("[red]○ Daemon is not running[/red]")
        return

    console.print(f"[green]● Daemon is running (PID: {pid})[/green]")

    try:
        proc = psutil.Process(pid)
        uptime = datetime.now() - datetime.fromtimestamp(proc.create_time())
        mem = proc.memory_info().rss / (1024 * 1024)

        console.print(f"  Uptime: {uptime}")
        console.print(f"  Memory: {mem:.1f} MB")
    except psutil.Error:
        pass

    from borgpilot.cli.client import APIClient

    try:
        with APIClient() as client:
            status = client.status()
    except Exception as e:
        console.print(f"  [yellow]API unavailable: {e}[/yellow]")
        return

    running = status.get("runningJobs", [])
    console.print(f"  Busy: {'yes' if status.get('busy') else 'no'}")
    console.print(f"  Running jobs: {len(running)}" + (f" ({', '.join(running)})" if running else ""))
    console.print(f"  Processes: {len(status.get('processes', []))}")
    console.print(f"  Mounts: {len(status.get('mounts', []))}")


@daemon_app.command("logs")
def daemon_logs(
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow log output"),
    lines: int = typer.Option(50, "--lines", "-n", help="Number of lines to show"),
) -> None:
    """Show daemon logs."""
    if not DAEMON_LOG_FILE.exists():
        console.print("[yellow]No daemon logs found[/yellow]")
        return

    if follow:
        os.execvp("tail", ["tail", "-f", str(DAEMON_LOG_FILE)])
    else:
        os.execvp("tail", ["tail", "-n", str(lines), str(DAEMON_LOG_FILE)])


# ============================================================================
# Job Commands
# ============================================================================


def _format_schedule(job: dict) -> str:
    if not job.get("scheduleEnabled") or job.get("scheduleType") == "manual":
        return "[dim]manual[/dim]"
    if job.get("scheduleType") == "daily":
        return f"daily {job.get('scheduleTime') or '?'}"
    return job.get("scheduleType", "-")


@app.command("jobs")
def list_jobs(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """List backup jobs."""
    setup_logging(verbose)

    jobs_data = None
    client = _daemon_client()
    if client is not None:
        with client:
            try:
                jobs_data = client.list_jobs()
            except Exception as e:
                console.print(f"[yellow]Warning: Could not query daemon: {e}[/yellow]")

    if jobs_data is None:
        # Fallback to the state document
        from borgpilot.db import Database

        db = Database(get_data_dir(load_config()) / DATA_FILE_NAME)
        jobs_data = [{**job.to_json_dict(), "running": False, "nextRun": None} for job in db.data.jobs]

    if not jobs_data:
        console.print("[yellow]No jobs configured[/yellow]")
        return

    table = Table(title="Jobs")
    table.add_column("Job", style="cyan")
    table.add_column("Name")
    table.add_column("Repository")
    table.add_column("Schedule")
    table.add_column("Status")
    table.add_column("Next Run")

    for job in jobs_data:
        status_str = "[green]running[/green]" if job.get("running") else "[dim]idle[/dim]"
        next_run = job.get("nextRun")
        table.add_row(
            job["id"],
            job.get("name") or "-",
            job.get("repoId", "-"),
            _format_schedule(job),
            status_str,
            next_run[:16].replace("T", " ") if next_run else "-",
        )

    console.print(table)


@app.command("run")
def run_job(
    job_id: str = typer.Argument(..., help="Job ID to run"),
) -> None:
    """Run a backup job now (regardless of schedule)."""
    client = _daemon_client()
    if client is None:
        console.print("[red]Daemon is not running[/red]")
        raise typer.Exit(1)

    with client:
        try:
            res = client.run_job(job_id)
        except Exception as e:
            if "404" in str(e):
                console.print(f"[red]Job '{job_id}' not found[/red]")
            elif "409" in str(e):
                console.print(f"[yellow]Job '{job_id}' is already running[/yellow]")
            else:
                console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓ {res.get('message', 'Job triggered')}[/green]")


@app.command("stop")
def stop_job(
    job_id: str = typer.Argument(..., help="Job ID"),
) -> None:
    """Stop a running backup job."""
    client = _daemon_client()
    if client is None:
        console.print("[red]Daemon is not running[/red]")
        raise typer.Exit(1)

    with client:
        try:
            res = client.stop_job(job_id)
        except Exception as e:
            if "409" in str(e):
                console.print(f"[yellow]Job '{job_id}' is not running[/yellow]")
            else:
                console.print(f"[red]Error: {e}[/red]")
            raise typer.Exit(1)

    console.print(f"[green]✓ {res.get('message', 'Job stopped')}[/green]")


# ============================================================================
# System Checks
# ============================================================================


async def _local_checks(include_wsl: bool) -> tuple[dict | None, dict]:
    from borgpilot.core.commands import ExecutionEnvironment
    from borgpilot.core.executor import CommandExecutor
    from borgpilot.core.process_registry import ProcessRegistry
    from borgpilot.core.system_checks import check_borg, check_wsl
    from borgpilot.db import Database

    executor = CommandExecutor(ProcessRegistry())
    db = Database(get_data_dir(load_config()) / DATA_FILE_NAME)
    environment = ExecutionEnvironment.from_settings(db.data.settings)

    wsl = (await check_wsl(executor)).to_dict() if include_wsl else None
    borg = (await check_borg(executor, environment)).to_dict()
    return wsl, borg


@app.command("check")
def check(
    wsl: bool = typer.Option(sys.platform == "win32", "--wsl/--no-wsl", help="Also check WSL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Check that WSL and borg are usable."""
    setup_logging(verbose)

    wsl_status: dict | None = None
    borg_status: dict | None = None

    client = _daemon_client()
    if client is not None:
        with client:
            try:
                wsl_status = client.check_wsl() if wsl else None
                borg_status = client.check_borg()
            except Exception as e:
                console.print(f"[yellow]Warning: Could not query daemon: {e}[/yellow]")

    if borg_status is None:
        wsl_status, borg_status = asyncio.run(_local_checks(wsl))

    if wsl_status is not None:
        if wsl_status["installed"]:
            distro = wsl_status.get("distro") or "default"
            console.print(f"[green]✓ WSL is available (distro: {distro})[/green]")
        else:
            console.print(f"[red]✗ WSL is not usable: {wsl_status.get('reason')}[/red]")
            if wsl_status.get("error"):
                console.print(f"  [dim]{wsl_status['error']}[/dim]")

    if borg_status["installed"]:
        console.print(f"[green]✓ {borg_status.get('version')}[/green]")
        if borg_status.get("path"):
            console.print(f"  [dim]Path: {borg_status['path']}[/dim]")
    else:
        console.print("[red]✗ borg is not installed or not runnable[/red]")

    ok = borg_status["installed"] and (wsl_status is None or wsl_status["installed"])
    if not ok:
        raise typer.Exit(1)


# ============================================================================
# Config Commands
# ============================================================================


@app.command("init")
def init_config() -> None:
    """Initialize BorgPilot configuration."""
    ensure_config_dir()
    if create_default_config():
        console.print(f"[green]✓ Created configuration at {DEFAULT_CONFIG_DIR}[/green]")
    else:
        console.print(f"[dim]Configuration already exists at {DEFAULT_CONFIG_DIR}[/dim]")


@app.command("version")
def version() -> None:
    """Show version."""
    console.print(f"BorgPilot v{__version__}")


# ============================================================================
# Secret Commands
# ============================================================================


def _local_secrets():
    from borgpilot.secrets import SecretStore

    return SecretStore(get_data_dir(load_config()) / SECRETS_FILE_NAME)


@secret_app.command("set")
def secret_set(
    name: str = typer.Argument(..., help="Secret name (a repository id for passphrases)"),
    value: str = typer.Option(..., "--value", prompt=True, hide_input=True, help="Secret value"),
) -> None:
    """Store a secret."""
    client = _daemon_client()
    if client is not None:
        with client:
            client.set_secret(name, value)
        ok = True
    else:
        ok = _local_secrets().set_secret(name, value)

    if ok:
        console.print(f"[green]✓ Secret '{name}' stored[/green]")
    else:
        console.print(f"[red]✗ Failed to store secret '{name}'[/red]")
        raise typer.Exit(1)


@secret_app.command("list")
def secret_list() -> None:
    """List stored secret names."""
    client = _daemon_client()
    if client is not None:
        with client:
            secrets = client.list_secrets()
    else:
        secrets = _local_secrets().list_secrets()

    if not secrets:
        console.print("[dim]No secrets stored[/dim]")
        return

    console.print("[bold]Stored secrets:[/bold]")
    for name in secrets:
        console.print(f"  • {name}")


@secret_app.command("delete")
def secret_delete(
    name: str = typer.Argument(..., help="Secret name"),
) -> None:
    """Delete a secret."""
    client = _daemon_client()
    if client is not None:
        with client:
            try:
                client.delete_secret(name)
                ok = True
            except Exception:
                ok = False
    else:
        store = _local_secrets()
        ok = store.has_secret(name) and store.delete_secret(name)

    if ok:
        console.print(f"[green]✓ Secret '{name}' deleted[/green]")
    else:
        console.print(f"[yellow]Secret '{name}' not found or could not be deleted[/yellow]")


# ============================================================================
# Entry Point
# ============================================================================


def main() -> None:
    """Main entry point."""
    app()


if __name__ == "__main__":
    main()
