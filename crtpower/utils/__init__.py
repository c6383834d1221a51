"""
Input parsing and validation utilities.
Internal utilities - not part of public API.
"""

from . import parsers, validators

__all__ = ["parsers", "validators"]
