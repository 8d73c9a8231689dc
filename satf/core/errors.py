"""
Training Errors
===============

Fatal error types raised during setup, before any training phase starts.

- ConfigError: invalid or contradictory options
- UsageError: invalid command line (a ConfigError)
- ResourceError: a required file (dictionary, word list, model) is missing

All carry the offending option name or file path in their message.

Author: Speech Alignment Training Framework Team
License: MIT
"""

from __future__ import annotations


class ConfigError(ValueError):
    """Invalid or contradictory configuration."""


class UsageError(ConfigError):
    """Invalid command line (unknown mode, option or value)."""


class ResourceError(FileNotFoundError):
    """A file required at setup could not be found."""

    def __init__(self, message: str, path: str = ''):
        super().__init__(message)
        self.path = path


__all__ = ['ConfigError', 'UsageError', 'ResourceError']
