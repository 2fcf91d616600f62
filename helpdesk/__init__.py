"""Support ticket and internal task lifecycle engine."""

__version__ = "0.1.0"
