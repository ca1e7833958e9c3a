"""BorgPilot command line interface."""
