# api/__init__.py
from api.server import ServerConfig, create_app

__all__ = [
    "ServerConfig",
    "create_app",
]
