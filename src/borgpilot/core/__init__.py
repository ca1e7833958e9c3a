"""BorgPilot core components."""

from borgpilot.core.events import EventBus
from borgpilot.core.executor import CommandExecutor, CommandResult
from borgpilot.core.power import KeepAwake, PowerAwarenessGate
from borgpilot.core.process_registry import ProcessRegistry
from borgpilot.core.scheduler import JobScheduler
from borgpilot.core.supervisor import Supervisor

__all__ = [
    "CommandExecutor",
    "CommandResult",
    "EventBus",
    "JobScheduler",
    "KeepAwake",
    "PowerAwarenessGate",
    "ProcessRegistry",
    "Supervisor",
]
