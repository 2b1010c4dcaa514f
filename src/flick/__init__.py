"""Flick - dual-mode SSH file transfer engine."""

__version__ = "0.3.0"
