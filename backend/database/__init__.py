from .connection import (
    get_db, get_engine, get_session_factory, create_engine_for_url,
    create_session_factory, init_db, Base
)

__all__ = [
    'get_db', 'get_engine', 'get_session_factory', 'create_engine_for_url',
    'create_session_factory', 'init_db', 'Base',
]
