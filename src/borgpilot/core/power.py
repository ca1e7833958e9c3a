"""Power awareness for BorgPilot.

``PowerAwarenessGate`` decides whether a scheduled backup may run given the
battery and network state. ``KeepAwake`` keeps the machine from sleeping
while the process registry is busy.
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import sys
from dataclasses import dataclass
from typing import Callable

import psutil
from loguru import logger

from borgpilot.models import AppSettings


class SkipReason:
    """Why the gate refused a run."""

    ON_BATTERY = "on-battery"
    OFFLINE = "offline"


@dataclass
class GateDecision:
    """Result of a power policy check."""

    allowed: bool
    reason: str | None = None
    notify: bool = False  # Whether the user should get a low-priority notice


def is_on_battery() -> bool:
    """Check if the machine is running on battery power.

    Machines without a battery (or where psutil can't tell) count as plugged in.
    """
    sensors_battery = getattr(psutil, "sensors_battery", None)
    if sensors_battery is None:
        return False
    battery = sensors_battery()
    if battery is None:
        return False
    return battery.power_plugged is False


def is_online() -> bool:
    """Check if any non-loopback network interface is up."""
    for name, stats in psutil.net_if_stats().items():
        if not stats.isup:
            continue
        if name == "lo" or name.startswith("lo0") or "loopback" in name.lower():
            continue
        return True
    return False


class PowerAwarenessGate:
    """Battery / connectivity policy consulted before scheduled runs."""

    def __init__(
        self,
        battery_probe: Callable[[], bool] | None = None,
        online_probe: Callable[[], bool] | None = None,
    ):
        self._battery_probe = battery_probe or is_on_battery
        self._online_probe = online_probe or is_online

    def _probe(self, probe: Callable[[], bool], default: bool) -> bool:
        try:
            return probe()
        except Exception as e:
            logger.warning(f"Power probe {getattr(probe, '__name__', probe)!r} failed: {e}")
            return default

    def check(self, settings: AppSettings) -> GateDecision:
        """Decide whether a scheduled job may run now."""
        if settings.stop_on_battery and self._probe(self._battery_probe, False):
            return GateDecision(allowed=False, reason=SkipReason.ON_BATTERY, notify=True)

        if settings.stop_on_low_signal and not self._probe(self._online_probe, True):
            return GateDecision(allowed=False, reason=SkipReason.OFFLINE, notify=False)

        return GateDecision(allowed=True)


def _reap(process: subprocess.Popen[bytes]) -> None:
    try:
        process.wait(timeout=5)
    except subprocess.TimeoutExpired:
        process.kill()
        process.wait()


# SetThreadExecutionState flags
ES_CONTINUOUS = 0x80000000
ES_SYSTEM_REQUIRED = 0x00000001


class KeepAwake:
    """Holds a platform sleep inhibitor while active."""

    def __init__(self, platform: str | None = None):
        self._platform = platform or sys.platform
        self._process: subprocess.Popen[bytes] | None = None
        self._active = False

    @property
    def active(self) -> bool:
        return self._active

    def set_busy(self, busy: bool) -> None:
        if busy:
            self.acquire()
        else:
            self.release()

    def _inhibitor_command(self) -> list[str]:
        if self._platform == "darwin":
            return ["caffeinate", "-i", "-w", str(os.getpid())]
        return [
            "systemd-inhibit",
            "--what=sleep:idle",
            "--who=BorgPilot",
            "--why=Backup in progress",
            "--mode=block",
            "sleep",
            "infinity",
        ]

    def acquire(self) -> None:
        """Start preventing system sleep."""
        if self._active:
            return

        if self._platform == "win32":
            import ctypes

            ctypes.windll.kernel32.SetThreadExecutionState(ES_CONTINUOUS | ES_SYSTEM_REQUIRED)
        else:
            try:
                self._process = subprocess.Popen(
                    self._inhibitor_command(),
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                )
            except OSError as e:
                logger.debug(f"Sleep inhibitor unavailable: {e}")
                return

        self._active = True
        logger.debug("Sleep prevention enabled")

    def release(self) -> None:
        """Allow system sleep again."""
        if not self._active:
            return

        if self._platform == "win32":
            import ctypes

            ctypes.windll.kernel32.SetThreadExecutionState(ES_CONTINUOUS)
        elif self._process is not None:
            process, self._process = self._process, None
            if process.poll() is None:
                process.terminate()
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    _reap(process)
                else:
                    # Reaping blocks, keep it off the event loop
                    loop.run_in_executor(None, _reap, process)

        self._active = False
        logger.debug("Sleep prevention disabled")
