"""Batch speech-to-text driver running a lexicon decoder across worker threads."""

__version__ = "0.1.0"
