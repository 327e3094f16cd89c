"""Local interactive-inference session manager."""

__version__ = "0.1.0"
