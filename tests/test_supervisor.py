"""Tests for the Supervisor boundary operations."""

import asyncio
import os
import shlex
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from borgpilot.core import events
from borgpilot.core.supervisor import MountRequest, SpawnRequest, Supervisor
from borgpilot.models import BorgPilotConfig

FAKE_BORG = Path(__file__).parent / "mock_jobs" / "fake_borg.py"


@pytest.fixture
def supervisor(tmp_path):
    config = BorgPilotConfig.model_validate({"daemon": {"data_dir": str(tmp_path)}})
    sup = Supervisor(config=config, power_gate=MagicMock(), keep_awake=MagicMock())
    borg_path = f"{shlex.quote(sys.executable)} {shlex.quote(str(FAKE_BORG))}"
    sup.save_state({"settings": {"useWsl": False, "borgPath": borg_path}})
    return sup


@pytest.fixture
def published(supervisor):
    received = []
    supervisor.events.subscribe(received.append)
    return received


async def wait_until(predicate, timeout=10.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.02)


def logs_for(published, process_id):
    return "".join(
        e.payload["text"]
        for e in published
        if e.name == events.TERMINAL_LOG and e.payload["id"] == process_id
    )


class TestState:
    def test_stores_live_in_data_dir(self, supervisor, tmp_path):
        assert (tmp_path / "data.json").exists()
        assert supervisor.db.path.parent == tmp_path

    def test_environment_follows_settings(self, supervisor):
        env = supervisor.environment
        assert env.use_wsl is False
        assert str(FAKE_BORG) in env.borg_path

    def test_list_jobs(self, supervisor):
        supervisor.save_state(
            {
                "jobs": [
                    {
                        "id": "j1",
                        "name": "Docs",
                        "repoId": "r1",
                        "sourcePath": "/home/docs",
                        "scheduleEnabled": True,
                        "scheduleType": "daily",
                        "scheduleTime": "03:00",
                    }
                ]
            }
        )
        jobs = supervisor.list_jobs()

        assert len(jobs) == 1
        assert jobs[0]["id"] == "j1"
        assert jobs[0]["running"] is False
        assert jobs[0]["nextRun"].endswith("03:00:00")

    def test_run_unknown_job(self, supervisor):
        assert supervisor.run_job_now("missing") is False
        assert supervisor.stop_job("missing") is False

    def test_status(self, supervisor):
        status = supervisor.status()
        assert status["running"] is False
        assert status["busy"] is False
        assert status["processes"] == []
        assert status["mounts"] == []
        assert status["runningJobs"] == []

    def test_check_pid(self):
        assert Supervisor.check_pid(os.getpid()) is True
        assert Supervisor.check_pid(99999999) is False


class TestCommands:
    @pytest.mark.asyncio
    async def test_spawn_command_streams_output(self, supervisor, published):
        result = await supervisor.spawn_command(
            SpawnRequest(args=["-c", "print('hello')"], command_id="c1", binary=sys.executable)
        )

        assert result.success
        assert result.code == 0
        assert result.command_id == "c1"
        assert "hello" in logs_for(published, "c1")

    @pytest.mark.asyncio
    async def test_spawn_command_passes_passphrase(self, supervisor, published):
        supervisor.secrets.set_secret("r1", "s3cret")
        code = "import os; print(os.environ.get('BORG_PASSPHRASE'))"

        await supervisor.spawn_command(
            SpawnRequest(args=["-c", code], command_id="c2", repo_id="r1", binary=sys.executable)
        )

        assert "s3cret" in logs_for(published, "c2")

    @pytest.mark.asyncio
    async def test_spawn_borg_command(self, supervisor, published):
        result = await supervisor.spawn_command(SpawnRequest(args=["list", "/srv/repo"], command_id="c3"))

        assert result.success
        assert "fake borg: list /srv/repo" in logs_for(published, "c3")

    @pytest.mark.asyncio
    async def test_spawn_borg_command_with_target(self, supervisor, published):
        result = await supervisor.spawn_command(
            SpawnRequest(args=["list", "--format", "{archive}"], target="/srv/repo", command_id="c5")
        )

        assert result.success
        assert "fake borg: list --format {archive} /srv/repo" in logs_for(published, "c5")

    @pytest.mark.asyncio
    async def test_command_id_in_use(self, supervisor):
        command_id = supervisor.start_command(
            SpawnRequest(args=["-c", "import time; time.sleep(30)"], command_id="busy", binary=sys.executable)
        )
        await wait_until(lambda: command_id in supervisor.registry.processes)

        result = await supervisor.spawn_command(
            SpawnRequest(args=["-c", "pass"], command_id="busy", binary=sys.executable)
        )

        assert not result.success
        assert "already in use" in result.error
        assert supervisor.registry.is_busy
        assert supervisor.stop_command("busy") is True

    @pytest.mark.asyncio
    async def test_spawn_failure_is_logged(self, supervisor, published):
        result = await supervisor.spawn_command(
            SpawnRequest(args=[], command_id="c4", binary="/nonexistent/borg")
        )

        assert not result.success
        assert result.code is None
        assert "Error:" in logs_for(published, "c4")

    @pytest.mark.asyncio
    async def test_start_and_stop_command(self, supervisor):
        command_id = supervisor.start_command(
            SpawnRequest(args=["-c", "import time; time.sleep(30)"], binary=sys.executable)
        )
        assert command_id.startswith("cmd")

        await wait_until(lambda: command_id in supervisor.registry.processes)
        assert supervisor.stop_command(command_id) is True
        await wait_until(lambda: not supervisor.registry.processes)

        assert supervisor.stop_command(command_id) is False

    @pytest.mark.asyncio
    async def test_busy_changes_keep_awake(self, supervisor, published):
        await supervisor.spawn_command(SpawnRequest(args=["-c", "pass"], binary=sys.executable))

        supervisor.keep_awake.set_busy.assert_any_call(True)
        assert supervisor.keep_awake.set_busy.call_args.args == (False,)
        busy = [e.payload["busy"] for e in published if e.name == events.BUSY_CHANGED]
        assert busy == [True, False]


class TestMounts:
    @pytest.mark.asyncio
    async def test_mount_stays_up(self, supervisor, published):
        result = await supervisor.mount(
            MountRequest(
                args=["mount", "/srv/repo::a1", "/mnt/restore"],
                mount_id="m1",
                env={"FAKE_BORG_SLEEP": "30"},
            )
        )

        assert result.success
        assert "m1" in supervisor.registry.mounts
        assert supervisor.status()["mounts"][0]["kind"] == "mount"

        assert await supervisor.unmount("m1") is True
        await wait_until(lambda: not supervisor.registry.mounts)
        assert any(e.name == events.MOUNT_EXITED and e.payload["mountId"] == "m1" for e in published)

    @pytest.mark.asyncio
    async def test_mount_exits_early(self, supervisor):
        result = await supervisor.mount(
            MountRequest(
                args=["mount", "/srv/repo::a1", "/mnt/restore"],
                mount_id="m2",
                env={"FAKE_BORG_EXIT": "2"},
            )
        )

        assert not result.success
        assert "Exited with code 2" in result.error
        assert "simulated failure" in result.error

    @pytest.mark.asyncio
    async def test_mount_id_in_use(self, supervisor, published):
        request = MountRequest(
            args=["mount"],
            target="/srv/repo::a1",
            paths=["/mnt/restore"],
            mount_id="m5",
            env={"FAKE_BORG_SLEEP": "30"},
        )
        assert (await supervisor.mount(request)).success

        second = await supervisor.mount(request)

        assert not second.success
        assert "already in use" in second.error
        assert not any(e.name == events.MOUNT_EXITED for e in published)
        supervisor.stop_all_mounts()

    @pytest.mark.asyncio
    async def test_stop_all_mounts(self, supervisor, published):
        for mount_id in ("m3", "m4"):
            await supervisor.mount(
                MountRequest(
                    args=["mount", f"/srv/repo::{mount_id}", f"/mnt/{mount_id}"],
                    mount_id=mount_id,
                    env={"FAKE_BORG_SLEEP": "30"},
                )
            )

        assert supervisor.stop_all_mounts() == 2
        await wait_until(lambda: not supervisor.registry.mounts)
        assert any(e.name == events.MOUNT_EXITED and e.payload["mountId"] == "all" for e in published)

    @pytest.mark.asyncio
    async def test_unmount_untracked(self, supervisor):
        assert await supervisor.unmount("nope") is False
        assert await supervisor.unmount("nope", "/mnt/restore") is True
