"""Command runner with streamed output, hard timeouts and an auto-retry loop."""

__version__ = "0.1.0"
