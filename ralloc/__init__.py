"""ralloc - capacity-safe resource allocation engine."""

__version__ = "0.3.0"
