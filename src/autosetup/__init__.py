"""Post-imaging workstation setup automation."""

__version__ = "2.0.0"
