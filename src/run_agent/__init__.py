"""Run execution and provenance tracking for CLI agent harnesses."""

__version__ = "0.3.0"
