"""Lark chat bot bridging webhook events to streaming LLM backends."""

__version__ = "0.1.0"
