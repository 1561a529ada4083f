"""
Core application modules.
Contains configuration, logging, the shared store and other cross-cutting functionality.
"""
from .config import Settings, get_settings

__all__ = ["Settings", "get_settings"]
