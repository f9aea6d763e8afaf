"""
Authentication, billing and schema persistence layer.
Supports both SQLite (development) and PostgreSQL (production).
"""

import os
import uuid
import logging
import threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any

from db_config import DATABASE_URL, USE_POSTGRES, DB_PATH, DB_POOL_MIN, DB_POOL_MAX

logger = logging.getLogger(__name__)

if USE_POSTGRES:
    import psycopg2
    from psycopg2.extras import RealDictCursor
    from psycopg2.pool import SimpleConnectionPool

    IntegrityError = psycopg2.IntegrityError

    # Connection pool for PostgreSQL
    db_pool = None
    db_lock = threading.Lock()

    def get_connection():
        """Get a connection from the pool."""
        global db_pool
        if db_pool is None:
            with db_lock:
                if db_pool is None:
                    db_pool = SimpleConnectionPool(
                        DB_POOL_MIN, DB_POOL_MAX,
                        DATABASE_URL,
                        cursor_factory=RealDictCursor
                    )
        return db_pool.getconn()

    def release_connection(conn):
        """Release connection back to pool."""
        if db_pool:
            db_pool.putconn(conn)

else:
    # SQLite for local development
    import sqlite3

    IntegrityError = sqlite3.IntegrityError

    def get_connection():
        """Open a SQLite connection with foreign keys enforced."""
        conn = sqlite3.connect(DB_PATH, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.row_factory = sqlite3.Row
        return conn

    def release_connection(conn):
        """Close SQLite connection."""
        conn.close()


def utcnow() -> str:
    """Current UTC time as an ISO-8601 string (the stored timestamp format)."""
    return datetime.now(timezone.utc).isoformat()


def get_db():
    """Context manager for database connections."""
    class DBContext:
        def __enter__(self):
            self.conn = get_connection()
            return self.conn

        def __exit__(self, exc_type, exc_val, exc_tb):
            if exc_type:
                self.conn.rollback()
            else:
                self.conn.commit()
            release_connection(self.conn)
            return False

    return DBContext()


def _format_query(query: str) -> str:
    """Convert ? placeholders to %s for PostgreSQL if needed."""
    if USE_POSTGRES:
        return query.replace("?", "%s")
    return query


def init_db():
    """Initialize the database schema."""
    if not USE_POSTGRES:
        os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)

    with get_db() as conn:
        cursor = conn.cursor()

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                email TEXT UNIQUE NOT NULL,
                email_verified INT DEFAULT 0,
                name TEXT,
                avatar_url TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS oauth_identities (
                id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                provider_user_id TEXT NOT NULL,
                user_id TEXT NOT NULL REFERENCES users(id),
                access_token TEXT,
                refresh_token TEXT,
                token_expires_at INTEGER,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (provider, provider_user_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS images (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                type TEXT NOT NULL CHECK (type IN ('uploaded', 'generated')),
                url TEXT NOT NULL,
                storage_path TEXT,
                content_type TEXT,
                created_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_images_owner
            ON images(user_id, type, created_at)
        """)

        # generated_image_id is set exactly when the row is completed
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS headshots (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL REFERENCES users(id),
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
                prompt TEXT,
                generated_image_id TEXT REFERENCES images(id),
                preferences TEXT,
                request_key TEXT,
                step TEXT,
                error TEXT,
                paid INT NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                CHECK ((status = 'completed') = (generated_image_id IS NOT NULL))
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_headshots_owner
            ON headshots(user_id, created_at)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_headshots_request_key
            ON headshots(user_id, request_key, status)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_headshots_status
            ON headshots(status, updated_at)
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS headshot_images (
                headshot_id TEXT NOT NULL REFERENCES headshots(id) ON DELETE CASCADE,
                image_id TEXT NOT NULL REFERENCES images(id) ON DELETE CASCADE,
                PRIMARY KEY (headshot_id, image_id)
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                checkout_ref TEXT PRIMARY KEY,
                checkout_session_id TEXT,
                checkout_url TEXT,
                user_id TEXT NOT NULL REFERENCES users(id),
                headshot_id TEXT NOT NULL REFERENCES headshots(id),
                payment_id TEXT,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_headshot
            ON payments(headshot_id)
        """)

        cursor.execute("""
            CREATE INDEX IF NOT EXISTS idx_payments_session
            ON payments(checkout_session_id)
        """)

        # Processed webhooks table (idempotency)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS processed_webhooks (
                webhook_id TEXT PRIMARY KEY,
                event_type TEXT NOT NULL,
                received_at TEXT NOT NULL
            )
        """)

    logger.info(f"Database initialized: {'PostgreSQL' if USE_POSTGRES else 'SQLite'}")


# ============= USERS =============

def create_user(email: str, name: Optional[str] = None, avatar_url: Optional[str] = None) -> tuple[str, str]:
    """
    Create a new user.
    Returns: (user_id, email)
    Raises: IntegrityError if email already exists
    """
    user_id = uuid.uuid4().hex
    now = utcnow()

    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO users (id, email, email_verified, name, avatar_url, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?, ?, ?)
        """)
        cursor.execute(query, (user_id, email.lower(), name, avatar_url, now, now))
        return user_id, email.lower()


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    """Get user by email."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("SELECT * FROM users WHERE email = ?"), (email.lower(),))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_user_by_id(user_id: str) -> Optional[Dict[str, Any]]:
    """Get user by ID."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("SELECT * FROM users WHERE id = ?"), (user_id,))
        row = cursor.fetchone()
        return dict(row) if row else None


def get_user_by_oauth(provider: str, provider_user_id: str) -> Optional[Dict[str, Any]]:
    """Get user by OAuth provider and user ID."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            SELECT u.* FROM users u
            JOIN oauth_identities o ON u.id = o.user_id
            WHERE o.provider = ? AND o.provider_user_id = ?
        """)
        cursor.execute(query, (provider, provider_user_id))
        row = cursor.fetchone()
        return dict(row) if row else None


def link_oauth_identity(
    user_id: str,
    provider: str,
    provider_user_id: str,
    access_token: Optional[str] = None,
    refresh_token: Optional[str] = None,
    token_expires_at: Optional[int] = None
) -> None:
    """Link an OAuth identity to a user, replacing tokens if it already exists."""
    now = utcnow()

    with get_db() as conn:
        cursor = conn.cursor()
        # ON CONFLICT ... DO UPDATE is understood by both SQLite (3.24+) and PostgreSQL
        query = _format_query("""
            INSERT INTO oauth_identities
            (id, provider, provider_user_id, user_id, access_token, refresh_token,
             token_expires_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (provider, provider_user_id) DO UPDATE SET
                user_id = excluded.user_id,
                access_token = excluded.access_token,
                refresh_token = excluded.refresh_token,
                token_expires_at = excluded.token_expires_at,
                updated_at = excluded.updated_at
        """)
        cursor.execute(query, (
            uuid.uuid4().hex, provider, provider_user_id, user_id,
            access_token, refresh_token, token_expires_at, now, now
        ))


# ============= PAYMENTS =============

def record_checkout_session(
    checkout_ref: str,
    user_id: str,
    headshot_id: str,
    checkout_session_id: Optional[str] = None,
    checkout_url: Optional[str] = None,
) -> None:
    """Remember which user/headshot pair a checkout session was opened for."""
    now = utcnow()
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO payments
            (checkout_ref, checkout_session_id, checkout_url, user_id, headshot_id,
             payment_id, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, NULL, 'open', ?, ?)
            ON CONFLICT (checkout_ref) DO NOTHING
        """)
        cursor.execute(query, (
            checkout_ref, checkout_session_id, checkout_url, user_id, headshot_id, now, now
        ))


def get_open_checkout_url(user_id: str, headshot_id: str) -> Optional[str]:
    """URL of the newest still-open checkout session of a headshot, if any."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            SELECT checkout_url FROM payments
            WHERE user_id = ? AND headshot_id = ? AND status = 'open' AND checkout_url IS NOT NULL
            ORDER BY created_at DESC
        """)
        cursor.execute(query, (user_id, headshot_id))
        row = cursor.fetchone()
        return row["checkout_url"] if row else None


def mark_payment_succeeded(
    user_id: str,
    headshot_id: str,
    payment_id: Optional[str],
    checkout_ref: Optional[str] = None,
    checkout_session_id: Optional[str] = None,
) -> int:
    """
    Mark the checkout session that was actually paid as succeeded.
    The session is matched by our checkout reference or the provider's session id;
    other sessions of the same headshot are left alone.
    Returns the number of payment rows updated.
    """
    if not checkout_ref and not checkout_session_id:
        logger.warning(f"Payment {payment_id} for headshot {headshot_id} names no checkout session")
        return 0

    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            UPDATE payments SET status = 'succeeded', payment_id = ?, updated_at = ?
            WHERE user_id = ? AND headshot_id = ? AND status != 'succeeded'
              AND (checkout_ref = ? OR checkout_session_id = ?)
        """)
        cursor.execute(query, (
            payment_id, utcnow(), user_id, headshot_id, checkout_ref, checkout_session_id
        ))
        return cursor.rowcount


def get_payments_for_headshot(headshot_id: str) -> list[Dict[str, Any]]:
    """List payment rows recorded for a headshot."""
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("SELECT * FROM payments WHERE headshot_id = ? ORDER BY created_at")
        cursor.execute(query, (headshot_id,))
        return [dict(row) for row in cursor.fetchall()]


# ============= WEBHOOKS =============

def record_webhook(webhook_id: str, event_type: str) -> bool:
    """
    Record a processed webhook for idempotency.
    Returns True if newly recorded, False if already processed.
    """
    with get_db() as conn:
        cursor = conn.cursor()
        query = _format_query("""
            INSERT INTO processed_webhooks (webhook_id, event_type, received_at)
            VALUES (?, ?, ?)
            ON CONFLICT (webhook_id) DO NOTHING
        """)
        cursor.execute(query, (webhook_id, event_type, utcnow()))
        return cursor.rowcount > 0


def is_webhook_processed(webhook_id: str) -> bool:
    """Check if a webhook has already been processed."""
    with get_db() as conn:
        cursor = conn.cursor()
        cursor.execute(_format_query("SELECT 1 FROM processed_webhooks WHERE webhook_id = ?"), (webhook_id,))
        return cursor.fetchone() is not None


def clear_all_records():
    """Delete every row from every table (for testing)."""
    with get_db() as conn:
        cursor = conn.cursor()
        for table in (
            "processed_webhooks", "payments", "headshot_images",
            "headshots", "images", "oauth_identities", "users",
        ):
            cursor.execute(f"DELETE FROM {table}")
    logger.info("All records cleared")
