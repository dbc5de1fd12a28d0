"""
PostgreSQL connection helper.
Provides get_db() for use by services.
"""

import logging
import os
import psycopg2
from psycopg2.extras import RealDictCursor
from dotenv import load_dotenv

from backend.common.errors import PersistenceError

# Load .env variables from the project root
load_dotenv()

# Get the database URL from environment variable
DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    logging.warning("DATABASE_URL is not set. Generated poems will not be persisted.")


def get_db():
    """
    Returns a new psycopg2 connection with dictionary-based row access.

    Usage:
        with get_db() as conn:
            with conn.cursor() as cur:
                cur.execute(...)

    Returns:
        psycopg2.extensions.connection: A connection object with RealDictCursor factory.

    Raises:
        PersistenceError: If the database is not configured.
        psycopg2.Error: If connection fails.
    """
    if not DATABASE_URL:
        raise PersistenceError("数据库未初始化")
    try:
        conn = psycopg2.connect(DATABASE_URL, connect_timeout=10)

        # Rows come back as dicts, JSONB columns as Python objects
        # (e.g., {"id": "...", "poetry": {"content": [...]}})
        conn.cursor_factory = RealDictCursor
        return conn
    except Exception as e:
        logging.error(f"Error connecting to database: {e}")
        # Re-raise the exception so the caller knows the connection failed
        raise
