"""
Database Infrastructure for ResQMob

Provides SQLite database management, connection pooling, migrations,
and transaction management for the SOS engine's persistent backend.
"""

import sqlite3
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import List, Optional, Tuple
from dataclasses import dataclass


@dataclass
class Migration:
    """Database migration definition"""
    version: int
    name: str
    sql: str
    rollback_sql: Optional[str] = None


class DatabaseError(Exception):
    """Database-related errors"""
    pass


class ConnectionPool:
    """Simple SQLite connection pool"""

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = database_path
        self.max_connections = max_connections
        self.connections = []
        self.in_use = set()
        self.lock = threading.Lock()
        self.logger = logging.getLogger(__name__)

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection from the pool"""
        with self.lock:
            # Try to reuse an existing connection
            for conn in self.connections:
                if conn not in self.in_use:
                    self.in_use.add(conn)
                    return conn

            # Create new connection if under limit
            if len(self.connections) < self.max_connections:
                conn = sqlite3.connect(
                    self.database_path,
                    check_same_thread=False,
                    timeout=30.0
                )
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                conn.execute("PRAGMA journal_mode = WAL")
                self.connections.append(conn)
                self.in_use.add(conn)
                return conn

            raise DatabaseError("Connection pool exhausted")

    def return_connection(self, conn: sqlite3.Connection):
        """Return a connection to the pool"""
        with self.lock:
            if conn in self.in_use:
                self.in_use.remove(conn)

    def close_all(self):
        """Close all connections in the pool"""
        with self.lock:
            for conn in self.connections:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    self.logger.warning(f"Error closing connection: {e}")
            self.connections.clear()
            self.in_use.clear()


class DatabaseManager:
    """
    Manages SQLite database operations, migrations, and connection pooling
    """

    def __init__(self, database_path: str, max_connections: int = 10):
        self.database_path = Path(database_path)
        self.pool = ConnectionPool(str(self.database_path), max_connections)
        self.logger = logging.getLogger(__name__)
        self.migrations = self._get_migrations()

        # Ensure database directory exists
        self.database_path.parent.mkdir(parents=True, exist_ok=True)

        self._initialize_database()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections"""
        conn = None
        try:
            conn = self.pool.get_connection()
            yield conn
        except Exception:
            if conn:
                conn.rollback()
            raise
        finally:
            if conn:
                self.pool.return_connection(conn)

    @contextmanager
    def transaction(self):
        """Context manager for database transactions"""
        with self.get_connection() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def _initialize_database(self):
        """Initialize database with schema and migrations"""
        self.logger.info(f"Initializing database at {self.database_path}")

        with self.get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    version INTEGER PRIMARY KEY,
                    name TEXT NOT NULL,
                    applied_at DATETIME DEFAULT CURRENT_TIMESTAMP
                )
            """)
            conn.commit()

        self._run_migrations()

    def _get_migrations(self) -> List[Migration]:
        """Get all database migrations"""
        return [
            Migration(
                version=1,
                name="initial_schema",
                sql="""
                -- Users known to the SOS engine, with their last known position
                CREATE TABLE users (
                    user_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL DEFAULT '',
                    push_token TEXT,
                    notifications_enabled BOOLEAN DEFAULT TRUE,
                    location_lat REAL,
                    location_lon REAL,
                    location_accuracy REAL,
                    location_updated_at DATETIME,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE emergency_contacts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    phone TEXT NOT NULL,
                    relationship TEXT DEFAULT '',
                    is_primary BOOLEAN DEFAULT FALSE,
                    notification_enabled BOOLEAN DEFAULT TRUE
                );

                CREATE TABLE sos_alerts (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    alert_type TEXT NOT NULL,
                    urgency_level INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    location_lat REAL NOT NULL,
                    location_lon REAL NOT NULL,
                    location_accuracy REAL,
                    location_address TEXT,
                    message TEXT,
                    created_at DATETIME NOT NULL,
                    resolved_at DATETIME,
                    escalation_level INTEGER NOT NULL DEFAULT 1,
                    notification_radius REAL NOT NULL,
                    responder_count INTEGER NOT NULL DEFAULT 0,
                    confirmations INTEGER NOT NULL DEFAULT 1,
                    is_anonymous BOOLEAN DEFAULT FALSE,
                    media_urls TEXT, -- JSON array
                    chat_room_id TEXT,
                    updated_at DATETIME NOT NULL,
                    last_activity_at DATETIME NOT NULL
                );

                CREATE TABLE sos_responders (
                    id TEXT PRIMARY KEY,
                    alert_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    distance_meters REAL NOT NULL DEFAULT 0,
                    eta_minutes INTEGER,
                    estimated_arrival DATETIME,
                    position INTEGER NOT NULL,
                    updated_at DATETIME NOT NULL,
                    UNIQUE (alert_id, user_id),
                    FOREIGN KEY (alert_id) REFERENCES sos_alerts (id)
                );

                -- At most one active alert per owner
                CREATE UNIQUE INDEX idx_sos_alerts_one_active
                    ON sos_alerts (owner_id) WHERE status = 'active';
                CREATE INDEX idx_sos_alerts_status ON sos_alerts (status);
                CREATE INDEX idx_sos_responders_alert ON sos_responders (alert_id);
                CREATE INDEX idx_users_location ON users (location_lat, location_lon);
                CREATE INDEX idx_contacts_user ON emergency_contacts (user_id);
                """
            ),
            Migration(
                version=2,
                name="notifications_and_chat_rooms",
                sql="""
                CREATE TABLE notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    recipient TEXT NOT NULL,
                    alert_id TEXT NOT NULL,
                    channel TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    title TEXT,
                    error TEXT,
                    timestamp DATETIME NOT NULL
                );

                CREATE TABLE chat_rooms (
                    id TEXT PRIMARY KEY,
                    alert_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    room_type TEXT NOT NULL DEFAULT 'emergency',
                    owner_id TEXT NOT NULL,
                    urgency_level INTEGER,
                    is_active BOOLEAN DEFAULT TRUE,
                    created_at DATETIME DEFAULT CURRENT_TIMESTAMP
                );

                CREATE INDEX idx_notifications_alert ON notifications (alert_id);
                CREATE INDEX idx_chat_rooms_alert ON chat_rooms (alert_id);
                """
            )
        ]

    def _run_migrations(self):
        """Run pending database migrations"""
        with self.get_connection() as conn:
            cursor = conn.execute("SELECT MAX(version) FROM migrations")
            result = cursor.fetchone()
            current_version = result[0] if result[0] is not None else 0

            for migration in self.migrations:
                if migration.version > current_version:
                    self.logger.info(f"Running migration {migration.version}: {migration.name}")

                    try:
                        conn.executescript(migration.sql)
                        conn.execute(
                            "INSERT INTO migrations (version, name) VALUES (?, ?)",
                            (migration.version, migration.name)
                        )
                        conn.commit()
                        self.logger.info(f"Migration {migration.version} completed successfully")

                    except sqlite3.Error as e:
                        conn.rollback()
                        self.logger.error(f"Migration {migration.version} failed: {e}")
                        raise DatabaseError(f"Migration failed: {e}")

    def execute_query(self, query: str, params: Tuple = ()) -> List[sqlite3.Row]:
        """Execute a SELECT query and return results"""
        with self.get_connection() as conn:
            cursor = conn.execute(query, params)
            return cursor.fetchall()

    def execute_update(self, query: str, params: Tuple = ()) -> int:
        """Execute an INSERT/UPDATE/DELETE query and return affected rows"""
        with self.transaction() as conn:
            cursor = conn.execute(query, params)
            return cursor.rowcount

    def execute_many(self, query: str, params_list: List[Tuple]) -> int:
        """Execute a query with multiple parameter sets"""
        with self.transaction() as conn:
            cursor = conn.executemany(query, params_list)
            return cursor.rowcount

    def close(self):
        """Close all database connections"""
        self.pool.close_all()
