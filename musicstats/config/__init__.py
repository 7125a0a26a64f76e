"""
Configuration package for Music-Stats

Two components:

1. Settings Management (settings.py):
   - Dataclass sections loaded from YAML, .env and environment variables
   - Persisted cloud sync state (tokens, remote file id, last hash)

2. Google Authorization (auth.py):
   - OAuth2 PKCE loopback flow for the drive.appdata scope
   - Access token cache, expiry tracking and refresh

Usage:

    from musicstats.config import Settings, CredentialManager

    settings = Settings()
    credentials = CredentialManager(settings)
"""

from .settings import get_settings, reload_settings, Settings
from .auth import AuthResult, CredentialManager, TokenState

__all__ = [
    'get_settings',
    'reload_settings',
    'Settings',
    'AuthResult',
    'CredentialManager',
    'TokenState',
]
