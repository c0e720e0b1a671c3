"""polycodex: terminal coding agent over pluggable LLM providers."""

__version__ = "0.1.0"

__all__ = ["__version__"]
