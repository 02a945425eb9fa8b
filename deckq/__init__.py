"""Priority message queue core: scores, queue operations, configuration and housekeeping."""

__version__ = "0.1.0"