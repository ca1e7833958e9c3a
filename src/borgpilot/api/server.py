"""FastAPI server for the BorgPilot API."""

from __future__ import annotations

import asyncio
import json
from typing import TYPE_CHECKING, Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Security
from fastapi.responses import StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, ValidationError

from borgpilot.core.supervisor import MountRequest, SpawnRequest
from borgpilot.core.system_checks import (
    check_borg,
    check_wsl,
    prepare_wsl_mountpoint,
    probe_ssh_connection,
    resolve_ssh_key_install_options,
)

if TYPE_CHECKING:
    from borgpilot.core.supervisor import Supervisor

# Comment line sent on idle event streams
KEEPALIVE_INTERVAL = 15

# Global supervisor reference (set by daemon)
_supervisor: "Supervisor | None" = None


def set_supervisor(supervisor: "Supervisor | None") -> None:
    """Set the global supervisor reference."""
    global _supervisor
    _supervisor = supervisor


def get_supervisor() -> "Supervisor":
    """Get the supervisor instance."""
    if _supervisor is None:
        raise HTTPException(status_code=503, detail="Supervisor not initialized")
    return _supervisor


# Security
security = HTTPBearer(auto_error=False)


async def verify_token(
    credentials: HTTPAuthorizationCredentials | None = Security(security),
) -> bool:
    """Verify the API token if authentication is enabled."""
    if _supervisor is None:
        return True

    config = _supervisor.config
    if not config.api.auth.enabled:
        return True

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization token")

    if credentials.credentials != config.api.auth.token:
        raise HTTPException(status_code=401, detail="Invalid token")

    return True


# Request / Response Models
class HealthResponse(BaseModel):
    status: str
    version: str
    busy: bool = False
    jobs_running: int = 0
    jobs_total: int = 0


class ActionResponse(BaseModel):
    success: bool
    message: str
    job_id: str | None = None


class CommandBody(BaseModel):
    args: list[str]
    command_id: str | None = None
    repo_id: str | None = None
    target: str | None = None
    paths: list[str] = []
    binary: str | None = None
    timeout: float | None = None
    env: dict[str, str] = {}
    cwd: str | None = None
    stdin: str | None = None
    wait: bool = True


class CommandResponse(BaseModel):
    success: bool
    command_id: str
    code: int | None = None
    error: str | None = None
    timed_out: bool = False


class MountBody(BaseModel):
    args: list[str]
    mount_id: str | None = None
    repo_id: str | None = None
    target: str | None = None
    paths: list[str] = []
    env: dict[str, str] = {}


class MountResponse(BaseModel):
    success: bool
    mount_id: str
    error: str | None = None


class SecretBody(BaseModel):
    value: str


class MountpointBody(BaseModel):
    mount_point: str


class SshProbeBody(BaseModel):
    target: str
    port: str | None = None
    repo_id: str | None = None


def _format_sse(data: dict[str, Any], event: str | None = None) -> str:
    prefix = f"event: {event}\n" if event else ""
    return f"{prefix}data: {json.dumps(data, ensure_ascii=False)}\n\n"


# Create FastAPI app
def create_app() -> FastAPI:
    """Create the FastAPI application."""
    from borgpilot import __version__

    app = FastAPI(
        title="BorgPilot API",
        description="Control plane for Borg backups",
        version=__version__,
    )

    # Health endpoint
    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Get daemon health status."""
        supervisor = get_supervisor()
        return HealthResponse(
            status="healthy",
            version=__version__,
            busy=supervisor.registry.is_busy,
            jobs_running=len(supervisor.scheduler.running_job_ids),
            jobs_total=len(supervisor.db.data.jobs),
        )

    @app.get("/api/v1/status")
    async def daemon_status(_auth: bool = Depends(verify_token)):
        """Get runtime status (processes, mounts, running jobs)."""
        return get_supervisor().status()

    # State endpoints
    @app.get("/api/v1/state")
    async def get_state(_auth: bool = Depends(verify_token)):
        """Get the persisted application state."""
        return get_supervisor().db.data.to_json_dict()

    @app.put("/api/v1/state")
    async def put_state(
        partial: dict[str, Any] = Body(...),
        _auth: bool = Depends(verify_token),
    ):
        """Replace top-level state keys (repos, jobs, settings, ...)."""
        supervisor = get_supervisor()
        try:
            data = supervisor.save_state(partial)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        except OSError as e:
            raise HTTPException(status_code=500, detail=f"Failed to save state: {e}")
        return data.to_json_dict()

    # Jobs endpoints
    @app.get("/api/v1/jobs")
    async def list_jobs(_auth: bool = Depends(verify_token)):
        """List jobs with their runtime status."""
        jobs = get_supervisor().list_jobs()
        return {"jobs": jobs, "total": len(jobs)}

    @app.post("/api/v1/jobs/{job_id}/run", response_model=ActionResponse)
    async def run_job(job_id: str, _auth: bool = Depends(verify_token)):
        """Run a job now, outside its schedule."""
        supervisor = get_supervisor()

        if supervisor.db.get_job(job_id) is None:
            raise HTTPException(status_code=404, detail=f"Job '{job_id}' not found")
        if supervisor.scheduler.is_job_running(job_id):
            raise HTTPException(status_code=409, detail=f"Job '{job_id}' is already running")

        supervisor.run_job_now(job_id)
        return ActionResponse(success=True, message=f"Job '{job_id}' started", job_id=job_id)

    @app.post("/api/v1/jobs/{job_id}/stop", response_model=ActionResponse)
    async def stop_job(job_id: str, _auth: bool = Depends(verify_token)):
        """Stop a running job."""
        supervisor = get_supervisor()

        if not supervisor.scheduler.is_job_running(job_id):
            raise HTTPException(status_code=409, detail=f"Job '{job_id}' is not running")

        if not supervisor.stop_job(job_id):
            raise HTTPException(status_code=409, detail=f"Job '{job_id}' has no active process")

        return ActionResponse(success=True, message=f"Job '{job_id}' stopped", job_id=job_id)

    # Command endpoints
    @app.post("/api/v1/commands", response_model=CommandResponse)
    async def run_command(body: CommandBody, _auth: bool = Depends(verify_token)):
        """Run a borg (or other) command; output streams on /api/v1/events."""
        supervisor = get_supervisor()
        if body.command_id and supervisor.registry.get(body.command_id) is not None:
            raise HTTPException(status_code=409, detail=f"Command id '{body.command_id}' is already running")

        request = SpawnRequest(
            args=body.args,
            command_id=body.command_id,
            repo_id=body.repo_id,
            target=body.target,
            paths=body.paths,
            binary=body.binary,
            timeout=body.timeout,
            env=body.env,
            cwd=body.cwd,
            stdin=body.stdin,
        )

        if not body.wait:
            command_id = supervisor.start_command(request)
            return CommandResponse(success=True, command_id=command_id)

        result = await supervisor.spawn_command(request)
        return CommandResponse(
            success=result.success,
            command_id=result.command_id,
            code=result.code,
            error=result.error,
            timed_out=result.timed_out,
        )

    @app.delete("/api/v1/commands/{command_id}")
    async def stop_command(command_id: str, _auth: bool = Depends(verify_token)):
        """Stop a running command."""
        return {"success": get_supervisor().stop_command(command_id)}

    # Mount endpoints
    @app.post("/api/v1/mounts", response_model=MountResponse)
    async def mount(body: MountBody, _auth: bool = Depends(verify_token)):
        """Start a borg mount."""
        supervisor = get_supervisor()
        if body.mount_id and supervisor.registry.get(body.mount_id) is not None:
            raise HTTPException(status_code=409, detail=f"Mount id '{body.mount_id}' is already in use")

        result = await supervisor.mount(
            MountRequest(
                args=body.args,
                mount_id=body.mount_id,
                repo_id=body.repo_id,
                target=body.target,
                paths=body.paths,
                env=body.env,
            )
        )
        return MountResponse(success=result.success, mount_id=result.mount_id, error=result.error)

    @app.delete("/api/v1/mounts/{mount_id}")
    async def unmount(
        mount_id: str,
        local_path: str | None = Query(None, description="Mountpoint for borg umount"),
        _auth: bool = Depends(verify_token),
    ):
        """Stop a mount."""
        return {"success": await get_supervisor().unmount(mount_id, local_path)}

    @app.delete("/api/v1/mounts")
    async def unmount_all(_auth: bool = Depends(verify_token)):
        """Stop all mounts."""
        return {"success": True, "stopped": get_supervisor().stop_all_mounts()}

    # Notification endpoints
    @app.get("/api/v1/notifications")
    async def get_notifications(_auth: bool = Depends(verify_token)):
        """Get the notification configuration."""
        return get_supervisor().notifications.public_view()

    @app.put("/api/v1/notifications")
    async def put_notifications(
        updates: dict[str, Any] = Body(...),
        _auth: bool = Depends(verify_token),
    ):
        """Update the notification configuration."""
        supervisor = get_supervisor()
        smtp_password = updates.pop("smtpPass", None)
        try:
            supervisor.notifications.save(updates, smtp_password=smtp_password)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=str(e))
        return supervisor.notifications.public_view()

    # Secret endpoints
    @app.get("/api/v1/secrets")
    async def list_secrets(_auth: bool = Depends(verify_token)):
        """List secret names (never values)."""
        return {"secrets": get_supervisor().secrets.list_secrets()}

    @app.put("/api/v1/secrets/{name}")
    async def set_secret(name: str, body: SecretBody, _auth: bool = Depends(verify_token)):
        """Store a secret (e.g. a repository passphrase keyed by repo id)."""
        if not get_supervisor().secrets.set_secret(name, body.value):
            raise HTTPException(status_code=500, detail=f"Failed to store secret '{name}'")
        return {"success": True, "name": name}

    @app.delete("/api/v1/secrets/{name}")
    async def delete_secret(name: str, _auth: bool = Depends(verify_token)):
        """Delete a secret."""
        supervisor = get_supervisor()
        if not supervisor.secrets.has_secret(name):
            raise HTTPException(status_code=404, detail=f"Secret '{name}' not found")
        return {"success": supervisor.secrets.delete_secret(name), "name": name}

    # System endpoints
    @app.get("/api/v1/system/wsl")
    async def system_wsl(_auth: bool = Depends(verify_token)):
        """Check WSL availability."""
        status = await check_wsl(get_supervisor().executor)
        return status.to_dict()

    @app.get("/api/v1/system/borg")
    async def system_borg(_auth: bool = Depends(verify_token)):
        """Check that borg runs."""
        supervisor = get_supervisor()
        status = await check_borg(supervisor.executor, supervisor.environment)
        return status.to_dict()

    @app.post("/api/v1/system/mountpoint")
    async def system_mountpoint(body: MountpointBody, _auth: bool = Depends(verify_token)):
        """Create a writable mountpoint inside WSL."""
        result = await prepare_wsl_mountpoint(get_supervisor().executor, body.mount_point)
        return {"success": result.ok, "skipped": result.skipped, "error": result.error}

    @app.post("/api/v1/ssh/probe")
    async def ssh_probe(body: SshProbeBody, _auth: bool = Depends(verify_token)):
        """Check key-based SSH login to a host."""
        supervisor = get_supervisor()
        options = resolve_ssh_key_install_options(body.target, body.port)
        repo = supervisor.db.get_repo(body.repo_id) if body.repo_id else None
        result = await probe_ssh_connection(
            supervisor.executor,
            body.target,
            port=options.port,
            environment=supervisor.environment,
            trust_host=bool(repo and repo.trust_host),
        )
        return {
            "success": result.success,
            "error": result.error,
            "port": options.port,
            "isHetzner": options.is_hetzner,
            "remoteUser": options.remote_user,
        }

    # Event stream
    @app.get("/api/v1/events")
    async def event_stream(_auth: bool = Depends(verify_token)):
        """Server-sent events: terminal output, job and mount lifecycle."""
        supervisor = get_supervisor()
        queue = supervisor.events.open_queue()

        async def gen():
            try:
                while True:
                    try:
                        event = await asyncio.wait_for(queue.get(), KEEPALIVE_INTERVAL)
                    except asyncio.TimeoutError:
                        yield ": keepalive\n\n"
                        continue
                    yield _format_sse(event.to_dict(), event=event.name)
            finally:
                supervisor.events.close_queue(queue)

        return StreamingResponse(
            gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    return app


async def run_server(supervisor: "Supervisor", host: str = "127.0.0.1", port: int = 9877) -> None:
    """Run the API server."""
    import uvicorn

    set_supervisor(supervisor)
    app = create_app()

    config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_level="warning",  # Reduce uvicorn noise
    )
    server = uvicorn.Server(config)
    await server.serve()
