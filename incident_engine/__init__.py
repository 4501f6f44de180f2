"""Signal aggregation, incident lifecycle and AI summarization engine."""

__version__ = "1.0.0"
