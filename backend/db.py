import logging
import threading
from contextlib import contextmanager

import psycopg2
from psycopg2 import pool as pg_pool

from errors import StorageUnavailable

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS voters (
    id SERIAL PRIMARY KEY,
    full_name TEXT NOT NULL,
    email TEXT UNIQUE NOT NULL,
    student_id TEXT UNIQUE NOT NULL,
    phone TEXT,
    gender TEXT,
    password_hash TEXT NOT NULL,
    has_voted BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS candidates (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    position TEXT NOT NULL,
    gender TEXT,
    manifesto TEXT,
    photo_url TEXT,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS votes (
    id SERIAL PRIMARY KEY,
    voter_id INTEGER NOT NULL REFERENCES voters(id),
    candidate_id INTEGER NOT NULL REFERENCES candidates(id),
    position TEXT NOT NULL,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS feedback (
    id SERIAL PRIMARY KEY,
    voter_id INTEGER NOT NULL UNIQUE REFERENCES voters(id),
    message TEXT NOT NULL,
    rating INTEGER,
    is_registered_voter BOOLEAN,
    candidate_satisfaction INTEGER,
    process_trust INTEGER,
    motivation TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS announcements (
    id SERIAL PRIMARY KEY,
    candidate_id INTEGER NOT NULL REFERENCES candidates(id) ON DELETE CASCADE,
    title TEXT NOT NULL,
    message TEXT NOT NULL,
    event_date TIMESTAMP,
    created_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS system_settings (
    setting_key TEXT PRIMARY KEY,
    setting_value TEXT NOT NULL,
    updated_at TIMESTAMP DEFAULT NOW()
);
CREATE TABLE IF NOT EXISTS results_publication (
    id INTEGER PRIMARY KEY,
    published BOOLEAN DEFAULT FALSE,
    published_at TIMESTAMP
);
CREATE TABLE IF NOT EXISTS admin_audit_log (
    id SERIAL PRIMARY KEY,
    admin_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    event_details JSONB,
    risk_level TEXT CHECK (risk_level IN ('LOW','MEDIUM','HIGH','CRITICAL')),
    decision_hash TEXT,
    created_at TIMESTAMP DEFAULT NOW()
);
"""

INDEX_SQL = (
    "CREATE UNIQUE INDEX IF NOT EXISTS votes_voter_position_unique ON votes(voter_id, position);",
    "CREATE INDEX IF NOT EXISTS idx_votes_candidate ON votes(candidate_id);",
    "CREATE INDEX IF NOT EXISTS idx_candidates_position ON candidates(position) WHERE is_active;",
)


class Database:
    """Lazily opened psycopg2 connection pool.

    One instance is created by the application factory and handed to the
    store; nothing connects until the first checkout.
    """

    def __init__(self, dsn, minconn=1, maxconn=10, sslmode="prefer", connect_timeout=10):
        if not dsn:
            raise RuntimeError("DATABASE_URL environment variable is not set")
        self.dsn = dsn
        self.minconn = minconn
        self.maxconn = maxconn
        self.sslmode = sslmode
        self.connect_timeout = connect_timeout
        self._pool = None
        self._pool_lock = threading.Lock()

    def _get_pool(self):
        with self._pool_lock:
            if self._pool is None:
                self._pool = pg_pool.ThreadedConnectionPool(
                    self.minconn,
                    self.maxconn,
                    dsn=self.dsn,
                    sslmode=self.sslmode,
                    connect_timeout=self.connect_timeout,
                )
            return self._pool

    def get_connection(self):
        try:
            return self._get_pool().getconn()
        except (psycopg2.OperationalError, pg_pool.PoolError) as exc:
            logger.error("Could not check out a database connection: %s", exc)
            raise StorageUnavailable() from exc

    def release_connection(self, conn):
        if conn and self._pool is not None:
            # A broken connection must not go back into circulation.
            self._pool.putconn(conn, close=bool(conn.closed))

    @contextmanager
    def connection(self):
        conn = self.get_connection()
        try:
            yield conn
        finally:
            self.release_connection(conn)

    def close(self):
        with self._pool_lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None


def ensure_schema(database):
    with database.connection() as conn:
        cur = conn.cursor()
        try:
            cur.execute(SCHEMA_SQL)
            for statement in INDEX_SQL:
                cur.execute(statement)
            cur.execute("INSERT INTO results_publication (id, published) VALUES (1, FALSE) ON CONFLICT (id) DO NOTHING;")
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
    logger.info("Database schema is up to date")
