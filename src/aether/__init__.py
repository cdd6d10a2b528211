"""Aether: streaming chat relay for Gemini with a terminal client."""

__version__ = "0.1.0"
