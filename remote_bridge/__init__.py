"""Bridge a local tool-calling agent to file and shell operations on an SSH host."""

__version__ = "1.0.0"
