# Copyright (c) 2025 Cade Russell (Ghost Peony)
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

"""
Database Setup - SQLite
Local database backing the durable editor state (open tabs, active tab)
"""
import os
import logging
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

# Environment variables for configuration
SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

STATE_DB_FILENAME = "editor_state.db"

# Base class for models
Base = declarative_base()


def get_database_url(storage_path: Optional[str]) -> str:
    """SQLite URL for the given storage directory; in-memory when no path is given."""
    if not storage_path:
        return "sqlite://"
    return f"sqlite:///{os.path.join(storage_path, STATE_DB_FILENAME)}"


def create_state_engine(storage_path: Optional[str] = None) -> Engine:
    """Create the SQLite engine for the editor state database."""
    if storage_path:
        os.makedirs(storage_path, exist_ok=True)
    url = get_database_url(storage_path)
    return create_engine(url, echo=SQL_ECHO, future=True)


def init_db(engine: Engine) -> sessionmaker:
    """
    Create all tables and return a session factory bound to the engine.
    """
    try:
        # Import models to register them with Base
        import models.client_state  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info(f"✓ Editor state database initialized ({engine.url})")
    except Exception as e:
        logger.error(f"Failed to initialize editor state database: {e}")
        raise
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
