"""Payrail - custodial and self-custody value transfer backend."""

__version__ = "0.1.0"
