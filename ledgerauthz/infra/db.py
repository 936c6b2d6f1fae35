from __future__ import annotations

import logging
import os

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import create_engine

logger = logging.getLogger(__name__)

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://ledger:ledger@db:5432/ledgerauthz",
)
DB_ECHO = os.getenv("DB_ECHO", "false").lower() in {"1", "true", "yes"}


def build_engine(url: str = DATABASE_URL) -> Engine:
    if url.startswith("sqlite"):
        # sqlite is used for local runs; the audit writer opens a second connection
        return create_engine(url, echo=DB_ECHO, connect_args={"check_same_thread": False})
    return create_engine(url, echo=DB_ECHO, pool_pre_ping=True)


engine = build_engine()


def get_engine() -> Engine:
    return engine


def check_db_ready() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        logger.warning("database readiness check failed", exc_info=True)
        return False
