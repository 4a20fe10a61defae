"""Dropfolio: cached Dropbox image pairs for the portfolio site."""

__version__ = "0.1.0"
