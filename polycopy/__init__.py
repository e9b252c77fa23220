"""polycopy - copy-trading execution engine for Polymarket binary markets."""

__version__ = "0.1.0"
