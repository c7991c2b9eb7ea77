"""Client for credit-metered study tools: summarize, generate questions, explain, rewrite."""

__all__ = ["__version__"]

__version__ = "0.1.0"
