"""OCLoop: iteration harness for opencode agent sessions."""

__version__ = "0.1.0"
