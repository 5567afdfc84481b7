"""recall: search and resume past AI coding-assistant conversations."""

__version__ = "0.3.0"
