"""Hobbes - an AI chat client with tool-calling turns."""

__version__ = "0.1.0"

from hobbes.config import Config

__all__ = ["Config", "__version__"]
