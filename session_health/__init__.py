"""Data layer behind the Claude Code statusline: tiered, cached, single-flight."""

__version__ = "2.0.0"
