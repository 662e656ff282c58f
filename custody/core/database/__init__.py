"""Database module for key-share custody"""
from .models import Base, KeyShare, KeyMapping
from .connection import get_db, get_async_db, get_session_factory, init_db, create_tables

__all__ = [
    'Base',
    'KeyShare',
    'KeyMapping',
    'get_db',
    'get_async_db',
    'get_session_factory',
    'init_db',
    'create_tables',
]
