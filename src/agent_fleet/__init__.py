"""Task lifecycle and worker coordination engine for coding-agent fleets."""

__version__ = "0.1.0"
