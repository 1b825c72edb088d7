"""Real-time collaborative board synchronization service."""

__version__ = "1.0.0"
