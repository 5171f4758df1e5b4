"""Ticket lifecycle engine for an IT help desk."""

__version__ = "0.1.0"
