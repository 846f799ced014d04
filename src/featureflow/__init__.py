"""Pipeline engine for the feature factory dashboard."""

__version__ = "0.1.0"
