"""Real-time record synchronization with watermark catch-up."""

__version__ = "0.1.0"
