"""Database module for VDID.

SQLAlchemy ORM models, session management and the principal repository.
"""

from vdid.db.models import Base
from vdid.db.repository import PrincipalRepository
from vdid.db.session import create_db_engine, get_db_session, init_database, make_session_factory

__all__ = [
    "Base",
    "PrincipalRepository",
    "create_db_engine",
    "get_db_session",
    "init_database",
    "make_session_factory",
]
