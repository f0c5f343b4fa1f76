"""OAuth 2.1 authorization server: authorization code + PKCE, refresh rotation, bearer-protected UserInfo."""
from .config import Settings
from .server import create_app

__version__ = '0.1.0'

__all__ = ['Settings', 'create_app']
