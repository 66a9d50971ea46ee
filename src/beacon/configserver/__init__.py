"""
Configuration Server

This package provides:
1. FileConfigStore — label/application/profile YAML tree with atomic publish
2. ConfigService — fetch path that marks documents served from cache as stale
3. ConfigDocument — immutable merged result
"""

from .service import ConfigService
from .store import (
    ConfigDocument,
    FileConfigStore,
    PropertySource,
    flatten,
    merge_properties,
    parse_profiles,
)

__all__ = [
    'ConfigDocument',
    'ConfigService',
    'FileConfigStore',
    'PropertySource',
    'flatten',
    'merge_properties',
    'parse_profiles',
]
