"""ThoughtTree: least-privilege bridge between a notes app and ACP coding agents."""

__version__ = "0.1.0"
