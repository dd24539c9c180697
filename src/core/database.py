"""
Generic PostgreSQL connection management.
Shared by the custody historical store and the CLIs.
"""

import threading
from contextlib import contextmanager
from typing import Any

import psycopg2
import psycopg2.extras
import structlog

logger = structlog.get_logger(__name__)

# Errors that mean the store itself is unreachable, as opposed to a bad query
CONNECTION_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class PostgresConnection:
    """Base class for PostgreSQL connection management

    Each thread gets its own psycopg2 connection, opened on first use, so a
    commit or rollback in one thread never touches another thread's
    transaction.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout
        self._local = threading.local()
        self._connections = []
        self._lock = threading.Lock()
        self._connect()

    @property
    def connection(self):
        """Connection owned by the calling thread"""
        connection = getattr(self._local, "connection", None)
        if connection is None:
            connection = self._connect()
        return connection

    def _connect(self):
        """Establish a connection to PostgreSQL for the calling thread"""
        try:
            connection = psycopg2.connect(
                host=self.host,
                port=self.port,
                database=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=self.connect_timeout,
            )
            logger.info(
                "PostgreSQL connection established",
                host=self.host,
                database=self.database,
                thread=threading.current_thread().name,
            )
        except Exception as e:
            logger.error("Failed to connect to PostgreSQL", error=str(e))
            raise

        self._local.connection = connection
        with self._lock:
            self._connections.append(connection)
        return connection

    @contextmanager
    def get_cursor(self, as_dict: bool = False):
        """Context manager for database cursor with automatic commit/rollback

        Everything executed inside one block is committed together, so a block
        doubles as a transaction.

        Args:
            as_dict: Return rows as dicts (RealDictCursor) instead of tuples
        """
        cursor_factory = psycopg2.extras.RealDictCursor if as_dict else None
        cursor = self.connection.cursor(cursor_factory=cursor_factory)
        try:
            yield cursor
            self.connection.commit()
        except Exception as e:
            self.connection.rollback()
            logger.error("Database operation failed", error=str(e))
            raise
        finally:
            cursor.close()

    def fetch_one(self, query: str, params: Any = None) -> dict[str, Any] | None:
        """Run a query and return the first row as a dict (None when empty)"""
        with self.get_cursor(as_dict=True) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return dict(row) if row is not None else None

    def fetch_all(self, query: str, params: Any = None) -> list[dict[str, Any]]:
        """Run a query and return every row as a dict"""
        with self.get_cursor(as_dict=True) as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]

    def execute_query(self, query: str, params: dict[str, Any] | None = None) -> bool:
        """Execute a single write query with parameters"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute(query, params or {})
            return True
        except Exception as e:
            logger.error("Query execution failed", error=str(e), query=query)
            return False

    def check_health(self) -> bool:
        """Check if database connection is healthy"""
        try:
            with self.get_cursor() as cursor:
                cursor.execute("SELECT 1")
                return cursor.fetchone()[0] == 1
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def close(self):
        """Close every connection opened by any thread"""
        with self._lock:
            connections, self._connections = self._connections, []
            self._local = threading.local()
        for connection in connections:
            connection.close()
        if connections:
            logger.info("PostgreSQL connections closed", count=len(connections))
