"""BorgPilot - Scheduler and control plane for Borg backups."""

__version__ = "0.1.0"
