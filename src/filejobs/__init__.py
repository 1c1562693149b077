"""Asynchronous file transformation jobs over a durable message queue."""

__version__ = "0.1.0"
