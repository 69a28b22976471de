"""
CLI runner module.

Provides commands:
- import: Extract, preview and optionally commit files
- queue: Offline queue status, sync and maintenance
- history: Recent imports
- init-config: Write the default configuration
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
