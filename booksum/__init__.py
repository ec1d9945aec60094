"""Summarize long documents (PDF, EPUB, FB2, text) with a local or hosted LLM."""

__version__ = "0.1.0"
