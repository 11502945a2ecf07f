"""Cellar - schema migrations and resilient persistence for stateful apps."""

__version__ = "0.1.0"
