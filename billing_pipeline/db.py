import logging
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List

import psycopg2
from psycopg2.pool import ThreadedConnectionPool

from .config import Settings
from .errors import OrderRejected, StoreUnavailable
from .retry import RetryExhausted, linear_backoff, retry_with_backoff
from .schemas import Order

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    number_of_items TEXT NOT NULL,
    total_amount TEXT NOT NULL
);
"""

INSERT_ORDER_SQL = (
    "INSERT INTO orders (id, user_id, number_of_items, total_amount) VALUES (%s, %s, %s, %s)"
)
SELECT_ORDERS_SQL = "SELECT id, user_id, number_of_items, total_amount FROM orders"


class OrderStore:
    """
    PostgreSQL order table behind a thread-safe connection pool.

    Errors are classified for the consumer: ``OrderRejected`` when the
    database refuses the row itself, ``StoreUnavailable`` for everything
    else (connection loss, statement timeout, exhausted pool).
    """

    def __init__(self, settings: Settings):
        timeout_ms = int(settings.store_timeout * 1000)
        try:
            self._pool = ThreadedConnectionPool(
                settings.db_pool_min,
                max(settings.db_pool_min, settings.db_pool_max),
                dsn=settings.postgres_dsn(),
                connect_timeout=max(1, int(settings.store_timeout)),
                options=f"-c statement_timeout={timeout_ms}",
            )
        except psycopg2.Error as e:
            raise StoreUnavailable(f"cannot connect to the billing database: {e}") from e
        logger.info(f"Connected to PostgreSQL at {settings.db_host}:{settings.db_port}/{settings.db_name}")

    @contextmanager
    def _connection(self) -> Iterator["psycopg2.extensions.connection"]:
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as e:
            raise StoreUnavailable(f"no database connection available: {e}") from e
        try:
            yield conn
        finally:
            # broken connections are dropped instead of going back to the pool
            self._pool.putconn(conn, close=bool(conn.closed))

    @staticmethod
    def _rollback(conn) -> None:
        if conn.closed:
            return
        try:
            conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback failed: {e}")

    def init_schema(self) -> None:
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
                conn.commit()
            except psycopg2.Error as e:
                self._rollback(conn)
                raise StoreUnavailable(f"cannot create orders table: {e}") from e

    def create_order(self, order: Order) -> None:
        """Insert one order in its own transaction: fully visible afterwards or not at all."""
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(
                        INSERT_ORDER_SQL,
                        (order.id, order.user_id, order.number_of_items, order.total_amount),
                    )
                conn.commit()
            except (psycopg2.IntegrityError, psycopg2.DataError, ValueError) as e:
                # ValueError: psycopg2 refuses to send strings containing NUL bytes
                self._rollback(conn)
                raise OrderRejected(f"order {order.id} rejected by the database: {e}") from e
            except psycopg2.Error as e:
                self._rollback(conn)
                raise StoreUnavailable(f"failed to insert order {order.id}: {e}") from e

    def list_orders(self) -> List[Order]:
        with self._connection() as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(SELECT_ORDERS_SQL)
                    rows = cur.fetchall()
                conn.commit()
            except psycopg2.Error as e:
                self._rollback(conn)
                raise StoreUnavailable(f"failed to list orders: {e}") from e

        return [
            Order(id=r[0], user_id=r[1], number_of_items=r[2], total_amount=r[3])
            for r in rows
        ]

    def ping(self) -> bool:
        try:
            with self._connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                conn.commit()
            return True
        except (psycopg2.Error, StoreUnavailable) as e:
            logger.warning(f"Database ping failed: {e}")
            return False

    def close(self) -> None:
        self._pool.closeall()
        logger.info("PostgreSQL pool closed")


def connect_store(settings: Settings, sleep: Callable[[float], None] = time.sleep) -> OrderStore:
    """
    Open the store with the same bounded retry budget as the broker connection.

    Raises:
        StoreUnavailable: the database never came up
    """
    try:
        return retry_with_backoff(
            lambda: OrderStore(settings),
            attempts=settings.connect_attempts,
            delay=linear_backoff(settings.connect_backoff_unit),
            retry_on=(StoreUnavailable,),
            description="PostgreSQL connection",
            sleep=sleep,
        )
    except RetryExhausted as e:
        raise StoreUnavailable(f"database unavailable after {e.attempts} attempts: {e.last_error}") from e.last_error
