"""Database lifecycle: resolve the connection, migrate once, snapshot a baseline, reset on demand."""

import logging
import os
import shutil
import sqlite3
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path

from sqlalchemy import MetaData, column, create_engine, table, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.sql.expression import TableClause
from testcontainers.postgres import PostgresContainer

from api_test_quest.errors import ConfigurationError, DatabaseError, SqlHookError
from api_test_quest.parser.base import DatabaseSetup, EnvUrl, LiteralUrl
from . import sql

logger = logging.getLogger(__name__)

MIGRATIONS_TABLE = "_quest_migrations"
CONNECT_ATTEMPTS = 20
CONNECT_INTERVAL = 0.5
POSTGRES_PORT = 5432


@dataclass
class TableBaseline:
    """Rows of one table right after migrations. Columns are untyped so values round-trip as stored."""

    table: TableClause
    primary_key: list[str]
    rows: list[dict]


class DatabaseHandle:
    """The run's single database connection plus what is needed to reset it."""

    def __init__(
        self,
        setup: DatabaseSetup,
        url: str,
        temp_dir: Path | None = None,
        container: PostgresContainer | None = None,
    ):
        self.setup = setup
        self.url = url  # as handed to the system under test
        self.temp_dir = temp_dir
        self.container = container
        self.engine: Engine | None = None
        self.connection: Connection | None = None
        self.baseline: list[TableBaseline] = []

    @property
    def db_type(self) -> str:
        return self.setup.db_type

    @property
    def connected(self) -> bool:
        return self.connection is not None and not self.connection.closed


def resolve_url(setup: DatabaseSetup) -> tuple[str, Path | None]:
    """Resolve the connection source. Returns (url, temporary directory or None)."""
    source = setup.connection
    if isinstance(source, LiteralUrl):
        return source.url, None
    if isinstance(source, EnvUrl):
        value = os.environ.get(source.name)
        if not value:
            raise ConfigurationError(f"environment variable {source.name} is not set")
        return value, None

    if setup.db_type != "sqlite":
        raise ConfigurationError(f"no connection source configured for {setup.db_type}")
    temp_dir = Path(tempfile.mkdtemp(prefix="api-test-quest-"))
    return f"sqlite:///{temp_dir / 'quest.db'}", temp_dir


def sqlalchemy_url(url: str, db_type: str) -> str:
    """Map a user-facing URL onto the SQLAlchemy driver we ship with."""
    if db_type == "postgres":
        for prefix in ("postgres://", "postgresql://"):
            if url.startswith(prefix):
                return "postgresql+psycopg://" + url[len(prefix):]
        return url
    if "://" not in url:
        if url.startswith("sqlite:"):
            url = url[len("sqlite:"):]
        return f"sqlite:///{url}"
    return url


class DatabaseManager:
    """Provisions the run's database. Every failure is a fatal DatabaseError."""

    def prepare(self, setup: DatabaseSetup) -> DatabaseHandle:
        """Resolve the connection URL without connecting yet.

        Postgres without a connection source gets a throwaway container.
        """
        if setup.connection is None and setup.db_type == "postgres":
            return self._start_postgres(setup)
        url, temp_dir = resolve_url(setup)
        return DatabaseHandle(setup, url, temp_dir)

    def provision(self, setup: DatabaseSetup) -> DatabaseHandle:
        handle = self.prepare(setup)
        try:
            self.connect(handle)
        except BaseException:
            self.close(handle)
            raise
        return handle

    def connect(self, handle: DatabaseHandle) -> None:
        """Connect, apply migrations and init SQL, then snapshot the baseline."""
        url = sqlalchemy_url(handle.url, handle.db_type)
        try:
            handle.engine = create_engine(url)
        except (SQLAlchemyError, ImportError, ValueError) as e:
            raise DatabaseError(f"invalid database URL for {handle.db_type}: {e}") from e

        handle.connection = self._connect_with_retry(handle.engine)
        logger.info("Connected to %s database", handle.db_type)

        if handle.setup.migration_dir is not None:
            self.migrate(handle, handle.setup.migration_dir)
        if handle.setup.init_sql is not None:
            self._load_init_sql(handle, handle.setup.init_sql)
        handle.baseline = self._snapshot(handle)

    def migrate(self, handle: DatabaseHandle, migration_dir: Path) -> list[str]:
        """Apply *.sql files in filename order. Files already recorded are skipped."""
        if not migration_dir.is_dir():
            raise DatabaseError(f"migration directory {migration_dir} does not exist")

        conn = handle.connection
        files = sorted(
            (p for p in migration_dir.glob("*.sql") if not p.name.endswith(".down.sql")),
            key=lambda p: p.name,
        )
        try:
            sql.execute(
                conn,
                [
                    f"CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} "
                    "(filename VARCHAR(255) PRIMARY KEY, applied_at VARCHAR(64) NOT NULL)"
                ],
            )
            rows = sql.fetch_rows(conn, f"SELECT filename FROM {MIGRATIONS_TABLE}")
            applied = {row[0] for row in rows}
        except SqlHookError as e:
            raise DatabaseError(f"cannot prepare migration bookkeeping: {e.cause}") from e

        done = []
        for path in files:
            if path.name in applied:
                logger.debug("Migration %s already applied", path.name)
                continue
            logger.info("Applying migration %s", path.name)
            try:
                self._run_script(handle, path.read_text(encoding="utf-8"))
                conn.execute(
                    text(f"INSERT INTO {MIGRATIONS_TABLE} (filename, applied_at) VALUES (:f, :t)"),
                    {"f": path.name, "t": time.strftime("%Y-%m-%dT%H:%M:%S")},
                )
                conn.commit()
            except (SQLAlchemyError, sqlite3.Error, OSError) as e:
                _rollback(conn)
                raise DatabaseError(f"migration {path.name} failed: {_describe(e)}") from e
            done.append(path.name)
        return done

    def reset(self, handle: DatabaseHandle) -> None:
        """Restore every table to the post-migration baseline."""
        conn = handle.connection
        if conn is None:
            raise DatabaseError("database is not connected")
        logger.info("Resetting database to migration baseline")

        tables = [b.table for b in handle.baseline]
        try:
            sql.end_transaction(conn)
            with conn.begin():
                if handle.db_type == "postgres" and tables:
                    names = ", ".join(conn.dialect.identifier_preparer.format_table(t) for t in tables)
                    conn.exec_driver_sql(
                        f"TRUNCATE TABLE {names} RESTART IDENTITY CASCADE",
                        execution_options=sql.NO_PARAMETERS,
                    )
                else:
                    for clause in reversed(tables):
                        conn.execute(clause.delete())
                    if handle.db_type == "sqlite" and self._has_sqlite_sequence(conn):
                        conn.exec_driver_sql("DELETE FROM sqlite_sequence")

                for entry in handle.baseline:
                    if entry.rows:
                        conn.execute(entry.table.insert(), entry.rows)

                if handle.db_type == "postgres":
                    self._resync_sequences(conn, handle.baseline)
        except SQLAlchemyError as e:
            raise DatabaseError(f"database reset failed: {_describe(e)}") from e

    def close(self, handle: DatabaseHandle) -> None:
        """Close the connection and remove an ephemeral database. Idempotent."""
        if handle.connection is not None:
            try:
                _rollback(handle.connection)
                handle.connection.close()
            finally:
                handle.connection = None
        if handle.engine is not None:
            handle.engine.dispose()
            handle.engine = None
        if handle.temp_dir is not None:
            shutil.rmtree(handle.temp_dir, ignore_errors=True)
            handle.temp_dir = None
        if handle.container is not None:
            container, handle.container = handle.container, None
            self._stop_container(container)

    def _start_postgres(self, setup: DatabaseSetup) -> DatabaseHandle:
        logger.info("Starting postgres container %s", setup.image)
        container = PostgresContainer(
            setup.image,
            username="postgres",
            password="postgres",
            dbname="postgres",
            driver=None,
        )
        if setup.port is not None:
            container.with_bind_ports(POSTGRES_PORT, setup.port)
        try:
            container.start()
            url = container.get_connection_url()
        except Exception as e:  # docker, network and readiness failures all land here
            self._stop_container(container)
            raise DatabaseError(f"cannot start postgres container {setup.image}: {e}") from e
        logger.info("Postgres container ready at %s", url)
        return DatabaseHandle(setup, url, container=container)

    def _stop_container(self, container: PostgresContainer) -> None:
        try:
            container.stop()
        except Exception as e:
            logger.warning("Could not stop postgres container: %s", e)

    def _connect_with_retry(self, engine: Engine) -> Connection:
        last_error: Exception | None = None
        for _ in range(CONNECT_ATTEMPTS):
            try:
                conn = engine.connect()
                conn.exec_driver_sql("SELECT 1")
                conn.commit()
                return conn
            except SQLAlchemyError as e:
                last_error = e
                time.sleep(CONNECT_INTERVAL)
        raise DatabaseError(f"database is unreachable: {_describe(last_error)}")

    def _run_script(self, handle: DatabaseHandle, script: str) -> None:
        conn = handle.connection
        sql.end_transaction(conn)
        if handle.db_type == "sqlite":
            # sqlite3 only runs multi-statement scripts through executescript
            conn.connection.driver_connection.executescript(script)
        else:
            with conn.begin():
                conn.exec_driver_sql(script, execution_options=sql.NO_PARAMETERS)

    def _load_init_sql(self, handle: DatabaseHandle, path: Path) -> None:
        logger.info("Loading init SQL %s", path)
        try:
            self._run_script(handle, path.read_text(encoding="utf-8"))
        except (SQLAlchemyError, sqlite3.Error, OSError) as e:
            _rollback(handle.connection)
            raise DatabaseError(f"init SQL {path} failed: {_describe(e)}") from e

    def _snapshot(self, handle: DatabaseHandle) -> list[TableBaseline]:
        conn = handle.connection
        try:
            sql.end_transaction(conn)
            metadata = MetaData()
            metadata.reflect(bind=conn)
            baseline = []
            for reflected in metadata.sorted_tables:
                if reflected.name == MIGRATIONS_TABLE:
                    continue
                clause = table(
                    reflected.name,
                    *[column(c.name) for c in reflected.columns],
                    schema=reflected.schema,
                )
                rows = [dict(row._mapping) for row in conn.execute(clause.select())]
                baseline.append(
                    TableBaseline(
                        table=clause,
                        primary_key=[c.name for c in reflected.primary_key.columns],
                        rows=rows,
                    )
                )
            conn.commit()
        except SQLAlchemyError as e:
            raise DatabaseError(f"cannot snapshot database baseline: {_describe(e)}") from e
        logger.debug("Baseline: %s", {b.table.name: len(b.rows) for b in baseline})
        return baseline

    def _has_sqlite_sequence(self, conn: Connection) -> bool:
        row = conn.exec_driver_sql(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'sqlite_sequence'"
        ).first()
        return row is not None

    def _resync_sequences(self, conn: Connection, baseline: list[TableBaseline]) -> None:
        for entry in baseline:
            for name in entry.primary_key:
                values = [r[name] for r in entry.rows if isinstance(r.get(name), int)]
                if not values:
                    continue
                seq = conn.execute(
                    text("SELECT pg_get_serial_sequence(:t, :c)"),
                    {"t": entry.table.name, "c": name},
                ).scalar()
                if seq:
                    conn.execute(text("SELECT setval(:s, :v)"), {"s": seq, "v": max(values)})


def _rollback(conn: Connection | None) -> None:
    if conn is not None and not conn.closed and conn.in_transaction():
        conn.rollback()


def _describe(error: Exception | None) -> str:
    if isinstance(error, SQLAlchemyError):
        return sql.describe_error(error)
    return str(error)
