from .app import create_app
from .auth import Principal, StaticTokenVerifier, TokenVerifier

__all__ = ["Principal", "StaticTokenVerifier", "TokenVerifier", "create_app"]
