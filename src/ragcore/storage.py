"""Storage backends for the vector index.

Both backends accept SQL with ``:name`` placeholders. Vector-specific SQL
(similarity expressions, vector column types, ANN index DDL) is rendered by
the backend's :class:`SQLDialect`, so :class:`~ragcore.vectorindex.VectorIndex`
never hard-codes an engine.
"""

import asyncio
import json
import logging
import sqlite3
from functools import lru_cache
from typing import Any, Optional

from .base import BaseStorage
from .exceptions import StorageError
from .vectorindex import check_identifier, cosine_similarity

logger = logging.getLogger(__name__)


class SQLDialect:
    """Renders engine-specific SQL fragments."""

    name = "generic"
    supports_ann = False

    def vector_type(self, dimension: int) -> str:
        return "TEXT"

    json_type = "TEXT"
    timestamp_type = "TEXT"

    def cast(self, param: str, type_: Optional[str]) -> str:
        return param

    def distance(self, column: str, param: str) -> str:
        raise NotImplementedError

    def similarity(self, column: str, param: str) -> str:
        return f"(1 - {self.distance(column, param)})"

    def json_field(self, column: str, key: str) -> str:
        raise NotImplementedError

    def filter_value(self, value: Any) -> Any:
        return value

    def encode_vector(self, vector: list[float]) -> str:
        return json.dumps([float(v) for v in vector], separators=(",", ":"))

    def decode_vector(self, value: Any) -> list[float]:
        if isinstance(value, str):
            return [float(v) for v in json.loads(value)]
        return [float(v) for v in value]

    def encode_json(self, value: dict[str, Any]) -> str:
        return json.dumps(value, default=str)

    def decode_json(self, value: Any) -> dict[str, Any]:
        if value is None:
            return {}
        if isinstance(value, (str, bytes)):
            return json.loads(value)
        return dict(value)

    def create_index_sql(
        self,
        index_name: str,
        table: str,
        column: str,
        index_type: str,
        params: dict[str, int],
    ) -> str:
        raise NotImplementedError(f"{self.name} has no ANN index support")

    def drop_index_sql(self, index_name: str) -> str:
        return f"DROP INDEX IF EXISTS {check_identifier(index_name)}"


class SQLiteDialect(SQLDialect):
    """SQLite: vectors as JSON text, similarity through a Python SQL function."""

    name = "sqlite"

    def distance(self, column: str, param: str) -> str:
        return f"cosine_distance({column}, {param})"

    def json_field(self, column: str, key: str) -> str:
        return f"json_extract({column}, '$.{check_identifier(key)}')"

    def filter_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return int(value)
        return value


class PostgresDialect(SQLDialect):
    """PostgreSQL with the pgvector extension."""

    name = "postgresql"
    supports_ann = True
    json_type = "JSONB"
    timestamp_type = "TIMESTAMPTZ"

    def vector_type(self, dimension: int) -> str:
        return f"vector({int(dimension)})"

    def cast(self, param: str, type_: Optional[str]) -> str:
        return f"CAST({param} AS {type_})" if type_ else param

    def distance(self, column: str, param: str) -> str:
        return f"({column} <=> CAST({param} AS vector))"

    def json_field(self, column: str, key: str) -> str:
        return f"({column} ->> '{check_identifier(key)}')"

    def filter_value(self, value: Any) -> Any:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def create_index_sql(
        self,
        index_name: str,
        table: str,
        column: str,
        index_type: str,
        params: dict[str, int],
    ) -> str:
        options = ", ".join(f"{check_identifier(k)} = {int(v)}" for k, v in params.items())
        sql = (
            f"CREATE INDEX IF NOT EXISTS {check_identifier(index_name)} "
            f"ON {check_identifier(table)} USING {check_identifier(index_type)} "
            f"({check_identifier(column)} vector_cosine_ops)"
        )
        if options:
            sql += f" WITH ({options})"
        return sql


@lru_cache(maxsize=4096)
def _parse_vector(text: str) -> tuple[float, ...]:
    return tuple(json.loads(text))


def _cosine_distance(a: Optional[str], b: Optional[str]) -> Optional[float]:
    if a is None or b is None:
        return None
    return 1.0 - cosine_similarity(_parse_vector(a), _parse_vector(b))


class SQLiteStorage(BaseStorage):
    """SQLite-based vector storage.

    Keeps one connection (``:memory:`` works) and runs statements in the
    default executor, one at a time. Cosine distance is provided by a
    registered Python function, so every query is an exact scan.
    Suitable for single-machine deployments and tests.
    """

    def __init__(self, db_path: str = ":memory:"):
        """Initialize SQLite storage.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
        """
        self.db_path = db_path
        self._dialect = SQLiteDialect()
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = asyncio.Lock()

    @property
    def dialect(self) -> SQLDialect:
        return self._dialect

    def _get_connection(self) -> sqlite3.Connection:
        """Get or open the database connection."""
        if self._conn is None:
            conn = sqlite3.connect(self.db_path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.create_function("cosine_distance", 2, _cosine_distance, deterministic=True)
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL;")
            self._conn = conn
            logger.debug(f"Opened SQLite database {self.db_path}")
        return self._conn

    async def _run(self, fn, *args):
        async with self._lock:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, fn, *args)

    async def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        return await self._run(self._execute_sync, sql, params or {})

    def _execute_sync(self, sql: str, params: dict[str, Any]) -> int:
        conn = self._get_connection()
        try:
            cursor = conn.execute(sql, params)
            conn.commit()
            return cursor.rowcount
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e

    async def query(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        return await self._run(self._query_sync, sql, params or {})

    def _query_sync(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e
        return [dict(row) for row in rows]

    async def close(self) -> None:
        if self._conn is not None:
            await self._run(self._conn.close)
            self._conn = None


class PostgresStorage(BaseStorage):
    """PostgreSQL + pgvector storage through a SQLAlchemy engine.

    Statements run in the default executor on pooled connections. ANN
    indexes (``ivfflat``, ``hnsw``) are supported.

    Note: Requires the 'postgres' extra to be installed.
    """

    def __init__(self, url: str, **engine_kwargs: Any):
        """Initialize PostgreSQL storage.

        Args:
            url: ``postgresql://`` database URL
            **engine_kwargs: Passed to ``sqlalchemy.create_engine``
        """
        if url.startswith("postgresql://") or url.startswith("postgres://"):
            url = "postgresql+psycopg://" + url.split("://", 1)[1]
        self.url = url
        self.engine_kwargs = engine_kwargs
        self._dialect = PostgresDialect()
        self._engine = None

    @property
    def dialect(self) -> SQLDialect:
        return self._dialect

    def _get_engine(self):
        """Get or create the SQLAlchemy engine."""
        if self._engine is None:
            try:
                from sqlalchemy import create_engine
            except ImportError:
                raise ImportError(
                    "PostgreSQL storage requires 'sqlalchemy' and 'psycopg'. "
                    "Install them with: pip install ragcore[postgres]"
                )
            self._engine = create_engine(self.url, pool_pre_ping=True, **self.engine_kwargs)
            logger.info("Created PostgreSQL engine")
        return self._engine

    async def initialize(self) -> None:
        await self.execute("CREATE EXTENSION IF NOT EXISTS vector")

    async def execute(self, sql: str, params: Optional[dict[str, Any]] = None) -> int:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._execute_sync, sql, params or {})

    def _execute_sync(self, sql: str, params: dict[str, Any]) -> int:
        from sqlalchemy import text
        from sqlalchemy.exc import SQLAlchemyError

        try:
            with self._get_engine().begin() as conn:
                return conn.execute(text(sql), params).rowcount
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def query(self, sql: str, params: Optional[dict[str, Any]] = None) -> list[dict[str, Any]]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._query_sync, sql, params or {})

    def _query_sync(self, sql: str, params: dict[str, Any]) -> list[dict[str, Any]]:
        from sqlalchemy import text
        from sqlalchemy.exc import SQLAlchemyError

        try:
            with self._get_engine().connect() as conn:
                return [dict(row._mapping) for row in conn.execute(text(sql), params)]
        except SQLAlchemyError as e:
            raise StorageError(str(e)) from e

    async def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None


def create_storage(url: str = ":memory:") -> BaseStorage:
    """Build a storage backend from a SQLite path or a PostgreSQL URL."""
    if url.startswith("postgres"):
        return PostgresStorage(url)
    if url.startswith("sqlite:///"):
        url = url[len("sqlite:///"):]
    return SQLiteStorage(url)
