"""InsightX: proactive insights mined from browsing activity."""

__version__ = "0.1.0"
