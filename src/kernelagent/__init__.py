"""Kernel agent: an LLM reasoning loop that executes code in a sandbox."""

__version__ = "0.1.0"

__all__ = ["__version__"]
