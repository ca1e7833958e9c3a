"""BorgPilot HTTP API."""
