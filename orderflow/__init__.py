"""Order placement and inventory consistency service."""

__version__ = "0.1.0"
