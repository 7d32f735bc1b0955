"""
Relational (SQLite) transport for m17orm.

Two connections are used: one for reading and one for writing. Each
connection lives on its own single-thread executor, so blocking SQLite calls
never run on the event loop and a connection is only ever touched by the
thread that opened it.

Saves of a language variant run the base-row upsert and the language-row
upsert inside one transaction on the write connection (see SaveTransaction).

Invariants:
    - The read connection is query-only and never joins a transaction
    - All writes hold the write lock; at most one save transaction is open
    - A transaction is rolled back at most once
    - Identifiers are validated before being interpolated into SQL;
      values are always bound parameters
    - search_by_field never returns more than MAX_LIMIT rows

How to change safely:
    - Keep every statement builder a pure function so it can be unit tested
    - Test failure injection for every SaveState before changing the protocol

Table layout (see create_tables):
    {resource_name}:
        - id INTEGER PRIMARY KEY AUTOINCREMENT
        - one column per EntityType.fields entry

    {resource_name}_language:
        - id INTEGER NOT NULL (references {resource_name}.id ON DELETE CASCADE)
        - language TEXT NOT NULL
        - one column per EntityType.language_fields entry
        - PRIMARY KEY (id, language)
"""

from __future__ import annotations

import asyncio
import functools
import logging
import sqlite3
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, TypeVar

from ..errors import BackendError, NotFoundError, TransactionError
from ..schema import Entity, EntityType, base_data, check_identifier, language_data
from .base import OtherLanguage, normalize_limits, normalize_order

if TYPE_CHECKING:
    from ..config import SqlConfig

logger = logging.getLogger(__name__)

T = TypeVar("T")


def quote(name: str) -> str:
    """Quote an already validated identifier."""
    return f'"{name}"'


def _uses_language(entity_type: EntityType, language: Optional[str]) -> bool:
    return language is not None and entity_type.is_multilingual


def build_select(entity_type: EntityType, with_language: bool) -> str:
    """Build the SELECT ... FROM part shared by get and search_by_field."""
    columns = ['b."id" AS "id"']
    columns += [f"b.{quote(name)} AS {quote(name)}" for name in entity_type.fields]

    if with_language:
        columns.append('l."language" AS "language"')
        columns += [f"l.{quote(name)} AS {quote(name)}" for name in entity_type.language_fields]
        source = (
            f"{quote(entity_type.language_resource_name)} AS l "
            f'INNER JOIN {quote(entity_type.resource_name)} AS b ON b."id" = l."id"'
        )
    else:
        source = f"{quote(entity_type.resource_name)} AS b"

    return f"SELECT {', '.join(columns)} FROM {source}"


def column_ref(entity_type: EntityType, name: str, with_language: bool, role: str = "field") -> str:
    """Qualify a caller-supplied column name with its relation alias.

    Raises:
        InvalidIdentifierError: If name is not a plain identifier
    """
    check_identifier(name, role)
    if with_language and (name == "language" or name in entity_type.language_fields):
        return f"l.{quote(name)}"
    return f"b.{quote(name)}"


def build_get(
    entity_type: EntityType,
    entity_id: Any,
    language: Optional[str] = None,
) -> tuple[str, list[Any]]:
    """Build the single-row lookup used by get()."""
    with_language = _uses_language(entity_type, language)
    query = build_select(entity_type, with_language) + ' WHERE b."id" = ?'
    params: list[Any] = [entity_id]

    if with_language:
        query += ' AND l."language" = ?'
        params.append(language)

    query += " LIMIT 1"
    return query, params


def build_search(
    entity_type: EntityType,
    field: str,
    value: Any,
    language: Optional[str] = None,
    order_by: Optional[str] = None,
    order_direction: Optional[str] = None,
    limit_from: Optional[int] = None,
    limit_to: Optional[int] = None,
) -> tuple[str, list[Any]]:
    """Build the equality search used by search_by_field().

    Returns:
        Tuple of (sql, params)

    Raises:
        InvalidIdentifierError: If field, or order_by when ordering applies,
            is not a plain identifier
    """
    with_language = _uses_language(entity_type, language)
    query = build_select(entity_type, with_language)
    query += f" WHERE {column_ref(entity_type, field, with_language)} = ?"
    params: list[Any] = [value]

    if with_language:
        query += ' AND l."language" = ?'
        params.append(language)

    order = normalize_order(order_by, order_direction)
    if order is not None:
        column = column_ref(entity_type, order[0], with_language, role="order")
        query += f" ORDER BY {column} {order[1].upper()}"

    offset, count = normalize_limits(limit_from, limit_to)
    query += " LIMIT ? OFFSET ?"
    params.extend([count, offset])

    return query, params


def build_other_languages(
    entity_type: EntityType,
    entity_id: Any,
    language: Optional[str],
    name_field: Optional[str] = None,
) -> tuple[str, list[Any], bool]:
    """Build the alternate-language lookup.

    name_field is only selected when it is one of the type's language fields.

    Returns:
        Tuple of (sql, params, includes_name)
    """
    columns = ['"language"']
    includes_name = name_field is not None and name_field in entity_type.language_fields
    if includes_name:
        columns.append(f'{quote(name_field)} AS "name"')

    query = (
        f"SELECT {', '.join(columns)} FROM {quote(entity_type.language_resource_name)}"
        ' WHERE "id" = ?'
    )
    params: list[Any] = [entity_id]

    if language is not None:
        query += ' AND "language" != ?'
        params.append(language)

    query += ' ORDER BY "language"'
    return query, params, includes_name


def build_base_upsert(
    entity_type: EntityType,
    entity_id: Any,
    data: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """Build the base-row write.

    Without an id this is a plain INSERT so the store generates the id.
    With an id it is an insert-or-update on conflict of id.
    """
    table = quote(entity_type.resource_name)
    names = list(data)

    if entity_id is None:
        if not names:
            return f"INSERT INTO {table} DEFAULT VALUES", []
        columns = ", ".join(quote(n) for n in names)
        placeholders = ", ".join("?" for _ in names)
        return (
            f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
            [data[n] for n in names],
        )

    return _upsert(table, ["id"], names, [entity_id] + [data[n] for n in names])


def build_language_upsert(
    entity_type: EntityType,
    entity_id: Any,
    language: str,
    data: Mapping[str, Any],
) -> tuple[str, list[Any]]:
    """Build the language-row insert-or-update on conflict of (id, language)."""
    table = quote(entity_type.language_resource_name)
    names = list(data)
    return _upsert(
        table,
        ["id", "language"],
        names,
        [entity_id, language] + [data[n] for n in names],
    )


def _upsert(table: str, keys: list[str], names: list[str], params: list[Any]) -> tuple[str, list[Any]]:
    columns = ", ".join(quote(n) for n in keys + names)
    placeholders = ", ".join("?" for _ in keys + names)
    conflict = ", ".join(quote(k) for k in keys)

    if names:
        updates = ", ".join(f"{quote(n)} = excluded.{quote(n)}" for n in names)
        action = f"DO UPDATE SET {updates}"
    else:
        action = "DO NOTHING"

    query = f"INSERT INTO {table} ({columns}) VALUES ({placeholders}) ON CONFLICT({conflict}) {action}"
    return query, params


def build_delete(table: str, where: str) -> str:
    """Build a DELETE capped to a single row."""
    return (
        f"DELETE FROM {quote(table)} WHERE rowid IN "
        f"(SELECT rowid FROM {quote(table)} WHERE {where} LIMIT 1)"
    )


def build_create_tables(entity_type: EntityType) -> list[str]:
    """Build CREATE TABLE IF NOT EXISTS statements for an entity type."""
    base = quote(entity_type.resource_name)
    base_columns = ['"id" INTEGER PRIMARY KEY AUTOINCREMENT']
    base_columns += [quote(name) for name in entity_type.fields]
    statements = [f"CREATE TABLE IF NOT EXISTS {base} ({', '.join(base_columns)})"]

    if entity_type.is_multilingual:
        language_columns = ['"id" INTEGER NOT NULL', '"language" TEXT NOT NULL']
        language_columns += [quote(name) for name in entity_type.language_fields]
        language_columns += [
            'PRIMARY KEY ("id", "language")',
            f'FOREIGN KEY ("id") REFERENCES {base} ("id") ON DELETE CASCADE',
        ]
        statements.append(
            f"CREATE TABLE IF NOT EXISTS {quote(entity_type.language_resource_name)} "
            f"({', '.join(language_columns)})"
        )

    return statements


class SaveState(Enum):
    """States of the atomic base + language save."""

    BEGIN = "begin"
    BASE_WRITTEN = "base_written"
    LANGUAGE_WRITTEN = "language_written"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


class SaveTransaction:
    """One execution of the atomic save of a language variant.

    Begin -> BaseWritten -> LanguageWritten -> Committed, with any failure
    leading to RolledBack. The caller must hold the transport's write lock.

    Attributes:
        entity: Entity being saved
        state: Last state reached, None before BEGIN succeeds
        rolled_back: Whether a rollback has been issued
    """

    def __init__(self, transport: SqlTransport, entity: Entity) -> None:
        self._transport = transport
        self.entity = entity
        self.state: Optional[SaveState] = None
        self.rolled_back = False

    def _transition(self, state: SaveState) -> None:
        logger.debug(
            "Save transaction state change",
            extra={
                "resource_name": self.entity.entity_type.resource_name,
                "entity_id": self.entity.id,
                "language": self.entity.language,
                "from_state": self.state.value if self.state else None,
                "to_state": state.value,
            },
        )
        self.state = state

    async def run(self) -> Entity:
        """Execute the protocol.

        Returns:
            The saved entity, with its id assigned on first insert

        Raises:
            BackendError: If the transaction could not be started
            TransactionError: If a write or the commit failed
        """
        transport = self._transport
        entity = self.entity
        entity_type = entity.entity_type

        try:
            await transport._write(transport._execute_write, "BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise BackendError(
                f"Failed to start transaction for {entity_type.resource_name}: {e}",
                cause=e,
            ) from e
        except BackendError:
            raise
        except BaseException:
            # Cancelled while BEGIN was queued or running; it may still complete
            await self.rollback()
            raise
        self._transition(SaveState.BEGIN)

        try:
            row_id = await transport._write(
                transport._upsert_base, entity_type, entity.id, base_data(entity)
            )
            self._transition(SaveState.BASE_WRITTEN)

            await transport._write(
                transport._upsert_language,
                entity_type,
                row_id,
                entity.language,
                language_data(entity),
            )
            self._transition(SaveState.LANGUAGE_WRITTEN)

            await transport._write(transport._execute_write, "COMMIT")
        except sqlite3.Error as e:
            failed_state = self.state
            await self.rollback()
            raise TransactionError(
                f"Failed to save {entity_type.resource_name} "
                f"after {failed_state.value if failed_state else 'start'}: {e}",
                cause=e,
                state=failed_state.value if failed_state else None,
            ) from e
        except BaseException:
            await self.rollback()
            raise

        self._transition(SaveState.COMMITTED)

        # Update the id on the entity when inserted for the first time
        if entity.id is None:
            entity.id = row_id

        return entity

    async def rollback(self) -> None:
        """Roll back once; later calls are ignored.

        Nothing is sent when the connection already left the transaction,
        e.g. after a failed COMMIT that SQLite rolled back itself.
        """
        if self.rolled_back:
            logger.debug("Transaction already rolled back; ignoring")
            return
        self.rolled_back = True

        transport = self._transport
        try:
            if await transport._write(transport._in_transaction):
                await transport._write(transport._execute_write, "ROLLBACK")
        except (sqlite3.Error, BackendError):
            logger.warning(
                "Rollback failed",
                exc_info=True,
                extra={
                    "resource_name": self.entity.entity_type.resource_name,
                    "state": self.state.value if self.state else None,
                },
            )
        self._transition(SaveState.ROLLED_BACK)


class SqlTransport:
    """SQLite implementation of the Transport protocol.

    Example:
        >>> transport = SqlTransport("/var/lib/app/content.db")
        >>> await transport.connect()
        >>> await transport.create_tables(Article)
        >>> article = await transport.save(
        ...     Article.new(title="X", authorId=7, language="en", body="hello")
        ... )
        >>> await transport.get(Article, article.id, "en")
    """

    def __init__(
        self,
        write_path: str,
        read_path: str | None = None,
        busy_timeout_ms: int = 5000,
        wal_mode: bool = True,
    ) -> None:
        """Initialize the transport.

        Args:
            write_path: Database file for the write connection
            read_path: Database file for the read connection (defaults to write_path)
            busy_timeout_ms: SQLite busy timeout
            wal_mode: Enable SQLite WAL mode on the write connection
        """
        self.write_path = str(write_path)
        self.read_path = str(read_path) if read_path else self.write_path
        self.busy_timeout_ms = busy_timeout_ms
        self.wal_mode = wal_mode

        self._read_conn: sqlite3.Connection | None = None
        self._write_conn: sqlite3.Connection | None = None
        self._read_executor: ThreadPoolExecutor | None = None
        self._write_executor: ThreadPoolExecutor | None = None
        self._write_lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: "SqlConfig") -> SqlTransport:
        return cls(
            write_path=config.write_path,
            read_path=config.read_path,
            busy_timeout_ms=config.busy_timeout_ms,
            wal_mode=config.wal_mode,
        )

    @property
    def is_connected(self) -> bool:
        return self._read_conn is not None and self._write_conn is not None

    # Connection management

    def _open(self, path: str, read_only: bool) -> sqlite3.Connection:
        """Open and configure a connection. Runs on the owning executor."""
        conn = sqlite3.connect(
            path,
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
        conn.execute("PRAGMA foreign_keys = ON")
        if read_only:
            conn.execute("PRAGMA query_only = ON")
        elif self.wal_mode:
            conn.execute("PRAGMA journal_mode = WAL")
        return conn

    async def connect(self) -> None:
        """Open the write and read connections.

        Raises:
            BackendError: If either connection cannot be opened
        """
        if self.is_connected:
            return

        self._write_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="m17orm-write")
        self._read_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="m17orm-read")

        try:
            # Write first so WAL mode is set before the reader attaches
            self._write_conn = await self._run(self._write_executor, self._open, self.write_path, False)
            self._read_conn = await self._run(self._read_executor, self._open, self.read_path, True)
        except sqlite3.Error as e:
            await self.close()
            raise BackendError(f"Failed to connect: {e}", cause=e) from e

        logger.info(
            "SQL transport connected",
            extra={"write_path": self.write_path, "read_path": self.read_path},
        )

    async def close(self) -> None:
        """Close both connections and stop their executors."""
        for conn_attr, executor_attr in (
            ("_read_conn", "_read_executor"),
            ("_write_conn", "_write_executor"),
        ):
            conn = getattr(self, conn_attr)
            executor = getattr(self, executor_attr)
            if conn is not None and executor is not None:
                await self._run(executor, conn.close)
            if executor is not None:
                executor.shutdown(wait=False)
            setattr(self, conn_attr, None)
            setattr(self, executor_attr, None)

        logger.debug("SQL transport closed")

    async def __aenter__(self) -> SqlTransport:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    async def _run(self, executor: ThreadPoolExecutor, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(executor, functools.partial(fn, *args))

    async def _read(self, fn: Callable[..., T], *args: Any) -> T:
        if self._read_executor is None or self._read_conn is None:
            raise BackendError("SQL transport is not connected")
        return await self._run(self._read_executor, fn, *args)

    async def _write(self, fn: Callable[..., T], *args: Any) -> T:
        if self._write_executor is None or self._write_conn is None:
            raise BackendError("SQL transport is not connected")
        return await self._run(self._write_executor, fn, *args)

    # Statement execution (run on the executors)

    def _reader(self) -> sqlite3.Connection:
        if self._read_conn is None:
            raise BackendError("SQL transport is not connected")
        return self._read_conn

    def _writer(self) -> sqlite3.Connection:
        if self._write_conn is None:
            raise BackendError("SQL transport is not connected")
        return self._write_conn

    def _fetch_all(self, query: str, params: list[Any]) -> list[dict[str, Any]]:
        logger.debug("Executing read", extra={"sql": query})
        cursor = self._reader().execute(query, params)
        return [dict(row) for row in cursor.fetchall()]

    def _execute_write(self, query: str, params: list[Any] | None = None) -> int:
        logger.debug("Executing write", extra={"sql": query})
        cursor = self._writer().execute(query, params or [])
        return cursor.rowcount

    def _in_transaction(self) -> bool:
        return self._writer().in_transaction

    def _upsert_base(self, entity_type: EntityType, entity_id: Any, data: Mapping[str, Any]) -> Any:
        """Write the base row; return the row's id (generated if entity_id is None)."""
        query, params = build_base_upsert(entity_type, entity_id, data)
        logger.debug("Executing write", extra={"sql": query})
        cursor = self._writer().execute(query, params)
        return cursor.lastrowid if entity_id is None else entity_id

    def _upsert_language(
        self,
        entity_type: EntityType,
        entity_id: Any,
        language: str,
        data: Mapping[str, Any],
    ) -> None:
        query, params = build_language_upsert(entity_type, entity_id, language, data)
        self._execute_write(query, params)

    # Schema bootstrap

    async def create_tables(self, *entity_types: EntityType) -> None:
        """Create the base and language tables for each type if missing.

        Existing tables are left untouched.
        """
        async with self._write_lock:
            for entity_type in entity_types:
                for statement in build_create_tables(entity_type):
                    try:
                        await self._write(self._execute_write, statement)
                    except sqlite3.Error as e:
                        raise BackendError(
                            f"Failed to create tables for {entity_type.resource_name}: {e}",
                            cause=e,
                        ) from e
                logger.info(
                    "Ensured tables",
                    extra={"resource_name": entity_type.resource_name},
                )

    # Transport operations

    async def get(
        self,
        entity_type: EntityType,
        entity_id: Any,
        language: Optional[str] = None,
    ) -> Entity:
        """Get an entity by id and optional language.

        Raises:
            NotFoundError: If no row matches
            BackendError: On query failure
        """
        query, params = build_get(entity_type, entity_id, language)
        try:
            rows = await self._read(self._fetch_all, query, params)
        except sqlite3.Error as e:
            raise BackendError(f"Failed to get {entity_type.resource_name}: {e}", cause=e) from e

        if not rows:
            raise NotFoundError(
                f"{entity_type.resource_name} {entity_id!r} not found"
                + (f" in language {language!r}" if language is not None else ""),
                resource_name=entity_type.resource_name,
                entity_id=entity_id,
                language=language,
            )

        return entity_type.create(rows[0])

    async def get_other_languages(
        self,
        entity: Entity,
        name_field: Optional[str] = None,
    ) -> list[OtherLanguage]:
        """Get the entity's other language variants.

        Args:
            entity: Entity whose variants to list
            name_field: Language field to return along with each locale tag

        Returns:
            Variants ordered by locale tag; empty if there are none
        """
        entity_type = entity.entity_type
        if not entity_type.is_multilingual or entity.id is None:
            return []

        query, params, includes_name = build_other_languages(
            entity_type, entity.id, entity.language, name_field
        )
        try:
            rows = await self._read(self._fetch_all, query, params)
        except sqlite3.Error as e:
            raise BackendError(
                f"Failed to list languages of {entity_type.resource_name}: {e}", cause=e
            ) from e

        return [
            OtherLanguage(
                language=row["language"],
                name=row["name"] if includes_name else None,
            )
            for row in rows
        ]

    async def search_by_field(
        self,
        entity_type: EntityType,
        field: str,
        value: Any,
        language: Optional[str] = None,
        order_by: Optional[str] = None,
        order_direction: Optional[str] = None,
        limit_from: Optional[int] = None,
        limit_to: Optional[int] = None,
    ) -> list[Entity]:
        """Search for entities where field equals value.

        Raises:
            InvalidIdentifierError: If field or order_by is not a plain identifier
            BackendError: On query failure
        """
        query, params = build_search(
            entity_type,
            field,
            value,
            language=language,
            order_by=order_by,
            order_direction=order_direction,
            limit_from=limit_from,
            limit_to=limit_to,
        )
        try:
            rows = await self._read(self._fetch_all, query, params)
        except sqlite3.Error as e:
            raise BackendError(
                f"Failed to search {entity_type.resource_name}: {e}", cause=e
            ) from e

        return entity_type.create_list(rows)

    async def remove(self, entity: Entity) -> None:
        """Remove an entity; language rows cascade with the base row."""
        entity_type = entity.entity_type
        query = build_delete(entity_type.resource_name, '"id" = ?')

        async with self._write_lock:
            try:
                deleted = await self._write(self._execute_write, query, [entity.id])
            except sqlite3.Error as e:
                raise BackendError(
                    f"Failed to remove {entity_type.resource_name} {entity.id!r}: {e}", cause=e
                ) from e

        logger.debug(
            "Removed entity",
            extra={
                "resource_name": entity_type.resource_name,
                "entity_id": entity.id,
                "deleted": deleted,
            },
        )

    async def remove_language(self, entity: Entity) -> None:
        """Remove just the (id, language) row of an entity."""
        entity_type = entity.entity_type
        if not entity_type.is_multilingual:
            return

        query = build_delete(entity_type.language_resource_name, '"id" = ? AND "language" = ?')

        async with self._write_lock:
            try:
                deleted = await self._write(
                    self._execute_write, query, [entity.id, entity.language]
                )
            except sqlite3.Error as e:
                raise BackendError(
                    f"Failed to remove {entity_type.language_resource_name} "
                    f"{entity.id!r}/{entity.language!r}: {e}",
                    cause=e,
                ) from e

        logger.debug(
            "Removed language variant",
            extra={
                "resource_name": entity_type.resource_name,
                "entity_id": entity.id,
                "language": entity.language,
                "deleted": deleted,
            },
        )

    async def save(self, entity: Entity) -> Entity:
        """Save an entity.

        A language variant of a multilingual type is saved atomically with
        its base row; anything else is a single upsert of the base row.

        Returns:
            The same entity, with id assigned on first insert

        Raises:
            TransactionError: If the atomic save failed
            BackendError: On any other store failure
        """
        entity_type = entity.entity_type

        if entity.language and entity_type.is_multilingual:
            async with self._write_lock:
                return await SaveTransaction(self, entity).run()

        async with self._write_lock:
            try:
                row_id = await self._write(
                    self._upsert_base, entity_type, entity.id, base_data(entity)
                )
            except sqlite3.Error as e:
                raise BackendError(
                    f"Failed to save {entity_type.resource_name}: {e}", cause=e
                ) from e

        # Update the id on the entity when inserted for the first time
        if entity.id is None:
            entity.id = row_id

        logger.debug(
            "Saved entity",
            extra={"resource_name": entity_type.resource_name, "entity_id": entity.id},
        )
        return entity
