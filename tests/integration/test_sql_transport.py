"""
Integration tests for the SQLite transport.

Tests cover:
- Create/update with id assignment
- Atomic save of base and language rows
- Rollback on failure at each protocol step
- Removal of entities and single language variants
- Search ordering and pagination limits
- Alternate language discovery
"""

import asyncio
import os
import sqlite3
import tempfile
import threading
from unittest.mock import patch

import pytest
import pytest_asyncio

from m17orm import registry
from m17orm.errors import BackendError, InvalidIdentifierError, NotFoundError, TransactionError
from m17orm.schema import EntityType
from m17orm.transports.base import MAX_LIMIT, OtherLanguage
from m17orm.transports.sql import SaveState, SaveTransaction, SqlTransport

Article = EntityType(
    resource_name="articles",
    fields=("title", "authorId"),
    language_fields=("body",),
)

Tag = EntityType(resource_name="tags", fields=("label", "rank"))


def count_rows(transport: SqlTransport, table: str) -> int:
    """Count committed rows through an independent connection."""
    conn = sqlite3.connect(transport.write_path)
    try:
        return conn.execute(f'SELECT COUNT(*) FROM "{table}"').fetchone()[0]
    finally:
        conn.close()


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def transport(data_dir):
    """Connected transport with tables for Article and Tag."""
    transport = SqlTransport(os.path.join(data_dir, "content.db"))
    await transport.connect()
    await transport.create_tables(Article, Tag)
    yield transport
    await transport.close()


class TestConnection:
    """Tests for connection lifecycle."""

    @pytest.mark.asyncio
    async def test_connect_close(self, data_dir):
        transport = SqlTransport(os.path.join(data_dir, "a.db"))
        assert not transport.is_connected

        async with transport:
            assert transport.is_connected

        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_operations_require_connection(self, data_dir):
        transport = SqlTransport(os.path.join(data_dir, "a.db"))

        with pytest.raises(BackendError, match="not connected"):
            await transport.get(Article, 1)

    def test_statement_helpers_require_connection(self, data_dir):
        """Executor-side helpers raise BackendError instead of failing on None."""
        transport = SqlTransport(os.path.join(data_dir, "a.db"))

        with pytest.raises(BackendError, match="not connected"):
            transport._execute_write("SELECT 1")
        with pytest.raises(BackendError, match="not connected"):
            transport._fetch_all("SELECT 1", [])
        with pytest.raises(BackendError, match="not connected"):
            transport._in_transaction()

    @pytest.mark.asyncio
    async def test_connect_failure(self, data_dir):
        """A missing directory surfaces as BackendError."""
        transport = SqlTransport(os.path.join(data_dir, "missing", "a.db"))

        with pytest.raises(BackendError) as exc_info:
            await transport.connect()

        assert isinstance(exc_info.value.cause, sqlite3.Error)
        assert not transport.is_connected

    @pytest.mark.asyncio
    async def test_read_connection_is_query_only(self, transport):
        """The read connection refuses writes."""
        with pytest.raises(sqlite3.OperationalError):
            await transport._read(transport._fetch_all, 'DELETE FROM "tags"', [])

    @pytest.mark.asyncio
    async def test_create_tables_is_idempotent(self, transport):
        await transport.create_tables(Article, Tag)

        assert count_rows(transport, "articles") == 0


class TestSave:
    """Tests for save()."""

    @pytest.mark.asyncio
    async def test_create_assigns_id(self, transport):
        """First save assigns a generated id onto the entity."""
        tag = Tag.new(label="python", rank=1)

        saved = await transport.save(tag)

        assert saved is tag
        assert tag.id is not None
        fetched = await transport.get(Tag, tag.id)
        assert fetched.label == "python"
        assert fetched.rank == 1

    @pytest.mark.asyncio
    async def test_second_save_updates(self, transport):
        """Saving again with the id updates instead of inserting."""
        tag = Tag.new(label="python", rank=1)
        await transport.save(tag)
        first_id = tag.id

        tag.rank = 2
        await transport.save(tag)

        assert tag.id == first_id
        assert count_rows(transport, "tags") == 1
        assert (await transport.get(Tag, first_id)).rank == 2

    @pytest.mark.asyncio
    async def test_ids_are_distinct(self, transport):
        """Concurrent creates each receive their own id."""
        tags = [Tag.new(label=f"t{i}", rank=i) for i in range(20)]

        await asyncio.gather(*(transport.save(t) for t in tags))

        assert len({t.id for t in tags}) == 20
        assert count_rows(transport, "tags") == 20

    @pytest.mark.asyncio
    async def test_save_with_language_writes_both_rows(self, transport):
        article = Article.new(title="X", authorId=7, language="en", body="hello")

        await transport.save(article)

        assert count_rows(transport, "articles") == 1
        assert count_rows(transport, "articles_language") == 1

    @pytest.mark.asyncio
    async def test_save_without_language_writes_base_only(self, transport):
        """A multilingual type saved without language touches only the base row."""
        article = Article.new(title="X", authorId=7, body="ignored")

        await transport.save(article)

        assert count_rows(transport, "articles") == 1
        assert count_rows(transport, "articles_language") == 0
        with pytest.raises(NotFoundError):
            await transport.get(Article, article.id, "en")

    @pytest.mark.asyncio
    async def test_update_language_variant(self, transport):
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(article)

        article.body = "hi"
        article.title = "Y"
        await transport.save(article)

        fetched = await transport.get(Article, article.id, "en")
        assert fetched.body == "hi"
        assert fetched.title == "Y"
        assert count_rows(transport, "articles_language") == 1

    @pytest.mark.asyncio
    async def test_undeclared_attributes_not_persisted(self, transport):
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        article.draft = "private"

        await transport.save(article)

        fetched = await transport.get(Article, article.id, "en")
        assert not hasattr(fetched, "draft")

    @pytest.mark.asyncio
    async def test_plain_save_failure_is_backend_error(self, transport):
        """A failing single upsert raises BackendError, not TransactionError."""
        Broken = EntityType(resource_name="tags", fields=("label", "missing_column"))
        tag = Broken.new(label="x")

        with pytest.raises(BackendError) as exc_info:
            await transport.save(tag)

        assert not isinstance(exc_info.value, TransactionError)
        assert isinstance(exc_info.value.cause, sqlite3.OperationalError)
        assert tag.id is None


class TestSaveTransaction:
    """Tests for the atomic base + language save."""

    @pytest.mark.asyncio
    async def test_base_failure_rolls_back(self, transport):
        """A failing base write leaves nothing behind."""
        Broken = EntityType(
            resource_name="articles",
            fields=("title", "missing_column"),
            language_fields=("body",),
        )
        article = Broken.new(title="X", language="en", body="hello")

        with pytest.raises(TransactionError) as exc_info:
            await transport.save(article)

        assert exc_info.value.state == SaveState.BEGIN.value
        assert isinstance(exc_info.value.cause, sqlite3.OperationalError)
        assert article.id is None
        assert count_rows(transport, "articles") == 0

    @pytest.mark.asyncio
    async def test_language_failure_rolls_back_base(self, transport):
        """A failing language write also discards the base write."""
        Broken = EntityType(
            resource_name="articles",
            fields=("title", "authorId"),
            language_fields=("missing_column",),
        )
        article = Broken.new(title="X", authorId=7, language="en")

        with pytest.raises(TransactionError) as exc_info:
            await transport.save(article)

        assert exc_info.value.state == SaveState.BASE_WRITTEN.value
        assert article.id is None
        assert count_rows(transport, "articles") == 0
        assert count_rows(transport, "articles_language") == 0

    @pytest.mark.asyncio
    async def test_failure_leaves_connection_usable(self, transport):
        """After a rollback the write connection accepts new saves."""
        Broken = EntityType(
            resource_name="articles",
            fields=("title", "authorId"),
            language_fields=("missing_column",),
        )
        with pytest.raises(TransactionError):
            await transport.save(Broken.new(title="X", authorId=7, language="en"))

        article = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(article)

        assert article.id is not None
        assert not await transport._write(transport._in_transaction)

    @pytest.mark.asyncio
    async def test_commit_failure_rolls_back_once(self, transport):
        """A failed commit is reported and rolled back exactly once."""
        original = transport._execute_write

        def failing_commit(query, params=None):
            if query == "COMMIT":
                raise sqlite3.OperationalError("database is locked")
            return original(query, params)

        article = Article.new(title="X", authorId=7, language="en", body="hello")
        with patch.object(transport, "_execute_write", side_effect=failing_commit) as spy:
            with pytest.raises(TransactionError) as exc_info:
                await transport.save(article)

        statements = [c.args[0] for c in spy.call_args_list]
        assert statements.count("ROLLBACK") == 1
        assert exc_info.value.state == SaveState.LANGUAGE_WRITTEN.value
        assert str(exc_info.value.cause) == "database is locked"
        assert exc_info.value.__cause__ is exc_info.value.cause
        assert article.id is None
        assert count_rows(transport, "articles") == 0

    @pytest.mark.asyncio
    async def test_rollback_is_issued_once(self, transport):
        """Repeated rollback calls on one transaction send one ROLLBACK."""
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        transaction = SaveTransaction(transport, article)
        original = transport._execute_write

        with patch.object(transport, "_execute_write", side_effect=original) as spy:
            await transport._write(transport._execute_write, "BEGIN IMMEDIATE")
            await transaction.rollback()
            await transaction.rollback()

        statements = [c.args[0] for c in spy.call_args_list]
        assert statements == ["BEGIN IMMEDIATE", "ROLLBACK"]
        assert transaction.rolled_back is True
        assert transaction.state == SaveState.ROLLED_BACK

    @pytest.mark.asyncio
    async def test_cancel_during_begin_rolls_back(self, transport):
        """A save cancelled while BEGIN runs leaves no open transaction."""
        started = threading.Event()
        release = threading.Event()
        original = transport._execute_write

        def slow_begin(query, params=None):
            result = original(query, params)
            if query == "BEGIN IMMEDIATE":
                started.set()
                release.wait(5)
            return result

        article = Article.new(title="X", authorId=7, language="en", body="hello")
        with patch.object(transport, "_execute_write", side_effect=slow_begin):
            task = asyncio.create_task(transport.save(article))
            await asyncio.get_running_loop().run_in_executor(None, started.wait, 5)
            task.cancel()
            release.set()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert not await transport._write(transport._in_transaction)
        assert article.id is None

        retry = Article.new(title="Y", authorId=8, language="en", body="again")
        await transport.save(retry)
        assert (await transport.get(Article, retry.id, "en")).body == "again"
        assert count_rows(transport, "articles") == 1

    @pytest.mark.asyncio
    async def test_existing_id_kept(self, transport):
        """Saving a variant of a stored entity keeps its id."""
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(article)
        first_id = article.id

        french = Article.new(id=first_id, title="X", authorId=7, language="fr", body="bonjour")
        await transport.save(french)

        assert french.id == first_id
        assert count_rows(transport, "articles") == 1
        assert count_rows(transport, "articles_language") == 2

    @pytest.mark.asyncio
    async def test_uncommitted_writes_invisible_to_reads(self, transport):
        """The read connection never observes an open write transaction."""
        await transport._write(transport._execute_write, "BEGIN IMMEDIATE")
        row_id = await transport._write(
            transport._upsert_base, Article, None, {"title": "hidden", "authorId": 1}
        )

        with pytest.raises(NotFoundError):
            await transport.get(Article, row_id)

        await transport._write(transport._execute_write, "ROLLBACK")


class TestGet:
    """Tests for get()."""

    @pytest.mark.asyncio
    async def test_missing_id_not_found(self, transport):
        with pytest.raises(NotFoundError) as exc_info:
            await transport.get(Article, 999)

        assert exc_info.value.resource_name == "articles"
        assert exc_info.value.entity_id == 999
        assert exc_info.value.code == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_base_only_get(self, transport):
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(article)

        fetched = await transport.get(Article, article.id)

        assert fetched.title == "X"
        assert fetched.language is None
        assert not hasattr(fetched, "body")


class TestRemove:
    """Tests for remove() and remove_language()."""

    @pytest.mark.asyncio
    async def test_remove_cascades_languages(self, transport):
        article = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(article)
        await transport.save(
            Article.new(id=article.id, title="X", authorId=7, language="fr", body="bonjour")
        )

        await transport.remove(article)

        assert count_rows(transport, "articles") == 0
        assert count_rows(transport, "articles_language") == 0
        with pytest.raises(NotFoundError):
            await transport.get(Article, article.id)

    @pytest.mark.asyncio
    async def test_remove_does_not_mutate_instance(self, transport):
        tag = Tag.new(label="x", rank=1)
        await transport.save(tag)
        tag_id = tag.id

        await transport.remove(tag)

        assert tag.id == tag_id
        assert tag.label == "x"

    @pytest.mark.asyncio
    async def test_remove_only_target(self, transport):
        a, b = Tag.new(label="a", rank=1), Tag.new(label="b", rank=2)
        await transport.save(a)
        await transport.save(b)

        await transport.remove(a)

        assert count_rows(transport, "tags") == 1
        assert (await transport.get(Tag, b.id)).label == "b"

    @pytest.mark.asyncio
    async def test_remove_language_only_that_variant(self, transport):
        """Other variants and the base row survive."""
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)
        french = Article.new(id=english.id, title="X", authorId=7, language="fr", body="bonjour")
        await transport.save(french)

        await transport.remove_language(english)

        with pytest.raises(NotFoundError):
            await transport.get(Article, english.id, "en")
        assert (await transport.get(Article, english.id, "fr")).body == "bonjour"
        assert (await transport.get(Article, english.id)).title == "X"

    @pytest.mark.asyncio
    async def test_remove_language_no_match(self, transport):
        """Removing a variant that does not exist deletes nothing."""
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)

        await transport.remove_language(
            Article.new(id=english.id, language="de")
        )

        assert count_rows(transport, "articles_language") == 1


class TestSearch:
    """Tests for search_by_field()."""

    @pytest_asyncio.fixture
    async def tags(self, transport):
        tags = [
            Tag.new(label="b", rank=1),
            Tag.new(label="c", rank=1),
            Tag.new(label="a", rank=1),
            Tag.new(label="z", rank=2),
        ]
        for tag in tags:
            await transport.save(tag)
        return tags

    @pytest.mark.asyncio
    async def test_equality_filter(self, transport, tags):
        results = await transport.search_by_field(Tag, "rank", 1)

        assert sorted(t.label for t in results) == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_no_match_is_empty(self, transport, tags):
        assert await transport.search_by_field(Tag, "rank", 99) == []

    @pytest.mark.asyncio
    async def test_ordering(self, transport, tags):
        ascending = await transport.search_by_field(
            Tag, "rank", 1, order_by="label", order_direction="asc"
        )
        descending = await transport.search_by_field(
            Tag, "rank", 1, order_by="label", order_direction="desc"
        )

        assert [t.label for t in ascending] == ["a", "b", "c"]
        assert [t.label for t in descending] == ["c", "b", "a"]

    @pytest.mark.asyncio
    async def test_invalid_direction_ignores_order_by(self, transport, tags):
        """An unusable direction never reaches the query, even with a bad order_by."""
        results = await transport.search_by_field(
            Tag, "rank", 1, order_by="label; DROP TABLE tags", order_direction="sideways"
        )

        assert len(results) == 3
        assert count_rows(transport, "tags") == 4

    @pytest.mark.asyncio
    async def test_pagination(self, transport, tags):
        page = await transport.search_by_field(
            Tag, "rank", 1, order_by="label", order_direction="asc", limit_from=1, limit_to=1
        )

        assert [t.label for t in page] == ["b"]

    @pytest.mark.asyncio
    async def test_unsafe_field_rejected(self, transport, tags):
        with pytest.raises(InvalidIdentifierError):
            await transport.search_by_field(Tag, "rank = 1 OR 1", 1)

    @pytest.mark.asyncio
    async def test_result_cap(self, transport):
        """Never more than MAX_LIMIT rows; 5000 behaves like 1000."""
        conn = sqlite3.connect(transport.write_path)
        try:
            conn.executemany(
                'INSERT INTO "tags" ("label", "rank") VALUES (?, ?)',
                [(f"t{i}", 5) for i in range(MAX_LIMIT + 5)],
            )
            conn.commit()
        finally:
            conn.close()

        default = await transport.search_by_field(Tag, "rank", 5)
        capped = await transport.search_by_field(Tag, "rank", 5, limit_to=1000)
        requested = await transport.search_by_field(Tag, "rank", 5, limit_to=5000)

        assert len(default) == MAX_LIMIT
        assert [t.id for t in requested] == [t.id for t in capped]
        assert len(requested) == MAX_LIMIT

    @pytest.mark.asyncio
    async def test_search_with_language(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)
        await transport.save(
            Article.new(id=english.id, title="X", authorId=7, language="fr", body="bonjour")
        )
        await transport.save(Article.new(title="Y", authorId=8, language="en", body="other"))

        results = await transport.search_by_field(Article, "authorId", 7, language="fr")

        assert len(results) == 1
        assert results[0].id == english.id
        assert results[0].language == "fr"
        assert results[0].body == "bonjour"

    @pytest.mark.asyncio
    async def test_search_on_language_field(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)

        results = await transport.search_by_field(Article, "body", "hello", language="en")

        assert [r.id for r in results] == [english.id]


class TestOtherLanguages:
    """Tests for get_other_languages()."""

    @pytest.mark.asyncio
    async def test_excludes_current_language(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)
        for language, body in (("fr", "bonjour"), ("de", "hallo")):
            await transport.save(
                Article.new(id=english.id, title="X", authorId=7, language=language, body=body)
            )

        others = await transport.get_other_languages(english)

        assert others == [OtherLanguage("de"), OtherLanguage("fr")]

    @pytest.mark.asyncio
    async def test_with_name_field(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)
        await transport.save(
            Article.new(id=english.id, title="X", authorId=7, language="fr", body="bonjour")
        )

        others = await transport.get_other_languages(english, "body")

        assert others == [OtherLanguage("fr", "bonjour")]

    @pytest.mark.asyncio
    async def test_base_field_not_returned_as_name(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)
        await transport.save(
            Article.new(id=english.id, title="X", authorId=7, language="fr", body="bonjour")
        )

        others = await transport.get_other_languages(english, "title")

        assert others == [OtherLanguage("fr")]

    @pytest.mark.asyncio
    async def test_none_is_empty(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)

        assert await transport.get_other_languages(english) == []

    @pytest.mark.asyncio
    async def test_without_language_lists_all(self, transport):
        english = Article.new(title="X", authorId=7, language="en", body="hello")
        await transport.save(english)

        base = await transport.get(Article, english.id)

        assert await transport.get_other_languages(base) == [OtherLanguage("en")]


class TestEndToEnd:
    """Full article scenario through the process-wide registry."""

    @pytest.fixture(autouse=True)
    def clean_registry(self):
        registry.reset_transport()
        yield
        registry.reset_transport()

    @pytest.mark.asyncio
    async def test_article_lifecycle(self, transport):
        registry.set_transport(transport)

        english = Article.new(authorId=7, language="en", title="X", body="hello")
        assert english.id is None

        saved = await registry.save(english)
        assert saved.id is not None

        fetched = await registry.get(Article, saved.id, "en")
        assert (fetched.title, fetched.authorId, fetched.body) == ("X", 7, "hello")

        with pytest.raises(NotFoundError):
            await registry.get(Article, saved.id, "fr")

        french = Article.new(id=saved.id, authorId=7, language="fr", title="X", body="bonjour")
        await registry.save(french)

        others = await registry.get_other_languages(english)
        assert {o.language for o in others} == {"fr"}
