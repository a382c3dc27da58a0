"""
Validation module for FlatSync.

Provides configuration validation for the file server list and sync
tunables.
"""

from validation.config import FlatSyncConfig, ServerDescriptor, validate_config

__all__ = [
    'FlatSyncConfig',
    'ServerDescriptor',
    'validate_config',
]
