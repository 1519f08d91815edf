"""Policy-based, rate-limited sampling of whole traces."""

__version__ = "0.1.0"