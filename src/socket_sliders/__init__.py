"""Asynchronous generation of printable socket holders."""

__version__ = "0.1.0"
