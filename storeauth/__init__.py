"""Authorization and assignment core for the store administration console."""

__version__ = "0.1.0"
