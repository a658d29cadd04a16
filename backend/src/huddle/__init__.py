"""Room presence and reconnection core for peer-to-peer voice rooms."""

__version__ = "0.1.0"
