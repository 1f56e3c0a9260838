"""Keyward: API key issuance and request authentication core."""

__version__ = "0.1.0"
