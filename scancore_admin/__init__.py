"""Admin console and first-run installer for a self-hosted ScanCore deployment."""

__version__ = "0.1.0"
