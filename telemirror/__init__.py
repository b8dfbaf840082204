"""telemirror - mirror coding agent session logs into a chat surface."""

__version__ = "0.1.0"
