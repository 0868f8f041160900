"""Asynchronous AI-coach reply pipeline."""

__version__ = "0.4.0"
