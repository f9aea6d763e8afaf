"""
Database configuration for Headshot Studio.
Supports both SQLite (development) and PostgreSQL (production).
"""

import os
import logging

logger = logging.getLogger(__name__)

# Database configuration
DATABASE_URL = os.environ.get("DATABASE_URL", "")

# Check if we're using PostgreSQL or SQLite
USE_POSTGRES = DATABASE_URL.startswith("postgres") or DATABASE_URL.startswith("postgresql")

# SQLite file location (ignored when USE_POSTGRES)
TEMP_DIR = os.path.abspath(os.environ.get("TEMP_DIR", "./temp"))
DB_PATH = os.environ.get("SQLITE_PATH", os.path.join(TEMP_DIR, "headshots.db"))

# PostgreSQL pool sizing
DB_POOL_MIN = int(os.environ.get("DB_POOL_MIN", "1"))
DB_POOL_MAX = int(os.environ.get("DB_POOL_MAX", "20"))

if USE_POSTGRES:
    logger.info("Using PostgreSQL database")
else:
    logger.info(f"Using SQLite database (local development): {DB_PATH}")
