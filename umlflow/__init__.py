"""Activity-diagram workflow compiler and execution engine."""

__version__ = "1.0.0"
