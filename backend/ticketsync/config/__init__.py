"""
Configuration package.
"""
from .settings import SyncSettings, sync_settings, get_settings, DEFAULT_WELCOME_MESSAGE

__all__ = ['SyncSettings', 'sync_settings', 'get_settings', 'DEFAULT_WELCOME_MESSAGE']
