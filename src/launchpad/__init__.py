"""launchpad: project provisioning orchestrator."""

__version__ = "0.1.0"
