"""
Configuration package.

This package contains configuration loading and validation.
"""

from algofleet.config.config import Settings
from algofleet.config.config_validator import ConfigValidator, validate_and_log

__all__ = [
    "Settings",
    "ConfigValidator",
    "validate_and_log",
]
