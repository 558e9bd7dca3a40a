"""PostgreSQL access for the SQL thread storage"""
import logging
import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from typing import Optional, Dict, List, Any, Callable

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


class Database:
    """
    Threaded psycopg2 connection pool.

    The pool is created on first use so constructing a ``Database`` never
    touches the network. Connections that fail with an operational or
    interface error are discarded instead of being returned to the pool.
    """

    def __init__(self, dsn: Optional[str] = None, min_connections: int = 1,
                 max_connections: int = 10, **connection_params):
        self.min_connections = min_connections
        self.max_connections = max_connections
        self.connection_params: Dict[str, Any] = {
            'cursor_factory': RealDictCursor,
            'connect_timeout': 10,
            'options': '-c statement_timeout=30000',
        }
        if dsn:
            self.connection_params['dsn'] = dsn
        self.connection_params.update({k: v for k, v in connection_params.items() if v is not None})
        self.connection_pool: Optional[pool.ThreadedConnectionPool] = None

    def _ensure_pool(self) -> pool.ThreadedConnectionPool:
        if self.connection_pool is None:
            try:
                self.connection_pool = pool.ThreadedConnectionPool(
                    minconn=self.min_connections,
                    maxconn=self.max_connections,
                    **self.connection_params
                )
            except Exception as e:
                logger.error(f"Could not create thread storage pool: {str(e)}")
                raise
            logger.info(f"Thread storage pool ready ({self.min_connections}-{self.max_connections} connections)")
        return self.connection_pool

    @contextmanager
    def get_connection(self):
        """Borrow a connection, committing on success and rolling back on error"""
        connection_pool = self._ensure_pool()
        conn = connection_pool.getconn()
        discard = False
        try:
            yield conn
            conn.commit()
        except RETRYABLE_ERRORS:
            discard = True
            raise
        except Exception:
            try:
                conn.rollback()
            except psycopg2.Error:
                discard = True
            raise
        finally:
            connection_pool.putconn(conn, close=discard)

    def _execute(self, query: str, params: Optional[tuple], handle_cursor: Callable, max_retries: int):
        for attempt in range(max_retries + 1):
            try:
                with self.get_connection() as conn:
                    with conn.cursor() as cursor:
                        cursor.execute(query, params)
                        return handle_cursor(cursor)
            except RETRYABLE_ERRORS as e:
                if attempt == max_retries:
                    logger.error(f"Database call failed after {attempt + 1} attempts: {str(e)}")
                    raise
                logger.warning(f"Database call failed (attempt {attempt + 1}/{max_retries + 1}), retrying: {str(e)}")

    def execute_query(self, query: str, params: Optional[tuple] = None, max_retries: int = 2) -> List[Dict[str, Any]]:
        """Run a SELECT and return its rows as dicts"""
        return self._execute(query, params, lambda cursor: cursor.fetchall(), max_retries)

    def execute_update(self, query: str, params: Optional[tuple] = None, max_retries: int = 2) -> int:
        """Run an INSERT/UPDATE/DELETE/DDL statement and return the affected row count"""
        return self._execute(query, params, lambda cursor: cursor.rowcount, max_retries)

    def close_all_connections(self):
        """Close every pooled connection"""
        if self.connection_pool is not None:
            self.connection_pool.closeall()
            self.connection_pool = None
            logger.info("Thread storage pool closed")
