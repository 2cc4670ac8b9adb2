"""orderflow -- service order workflow engine for a creator marketplace."""

__version__ = "0.1.0"
