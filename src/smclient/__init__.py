"""Certificate-authenticated Service Management client."""

__version__ = "0.1.0"
