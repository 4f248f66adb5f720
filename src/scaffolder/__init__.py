"""Durable task broker and sequential step worker for software templates."""

__version__ = "0.1.0"
