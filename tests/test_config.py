"""Tests for settings, structured logging and the lexical index helpers."""

import io
import json
import logging
from pathlib import Path

import pytest

from memory_engineering.config import settings
from memory_engineering.database import build_fts_query
from memory_engineering.errors import ConfigurationError
from memory_engineering.logging_config import (
    StructuredFormatter,
    configure_logging,
    current_request_id,
    request_id_var,
    with_request_id,
)

PROJECT = "project-under-test"


class TestSettings:

    def test_defaults(self):
        fresh = settings.model_copy()
        assert fresh.embedding_model == "voyage-3"
        assert fresh.embedding_dimensions == 1024
        assert fresh.embedding_batch_size == 50
        assert (fresh.hybrid_vector_weight, fresh.hybrid_text_weight) == (0.7, 0.3)
        assert fresh.loop_max_calls == 3
        assert fresh.working_memory_ttl_days == 30

    def test_project_storage_path(self, project_dir):
        config = settings.model_copy(update={"storage_path": None, "qdrant_path": None})
        storage = config.get_storage_path(project_dir)

        assert Path(storage) == Path(project_dir).resolve() / ".memory-engineering" / "storage"
        assert Path(storage).is_dir()
        assert Path(config.get_qdrant_path(project_dir)) == Path(storage) / "qdrant"

    def test_explicit_storage_path(self, temp_storage, project_dir):
        config = settings.model_copy(update={"storage_path": temp_storage})
        assert config.get_storage_path(project_dir) == temp_storage

    def test_startup_requires_api_key(self):
        with pytest.raises(ConfigurationError, match="VOYAGE_API_KEY"):
            settings.model_copy(update={"voyage_api_key": None}).validate_for_startup()

    def test_startup_rejects_bad_numbers(self):
        config = settings.model_copy(update={"voyage_api_key": "k", "embedding_batch_size": 0})
        with pytest.raises(ConfigurationError):
            config.validate_for_startup()

    def test_startup_accepts_valid_config(self, test_settings):
        test_settings.validate_for_startup()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers = handlers
    root.setLevel(level)


class TestStructuredLogging:

    def test_formatter_emits_json(self):
        record = logging.LogRecord("memory_engineering.memory", logging.INFO, __file__, 1, "Saved %s", ("brief",), None)
        record.tool_name = "update_memory"
        data = json.loads(StructuredFormatter().format(record))

        assert data["message"] == "Saved brief"
        assert data["level"] == "INFO"
        assert data["tool_name"] == "update_memory"

    def test_configure_logging_writes_json_lines(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("DEBUG", stream=stream)
        logging.getLogger("memory_engineering.test").debug("hello")

        line = stream.getvalue().strip().splitlines()[-1]
        assert json.loads(line)["message"] == "hello"

    @pytest.mark.asyncio
    async def test_request_id_scoped_to_call(self):
        seen = []

        @with_request_id
        async def tool():
            seen.append(current_request_id())
            return "ok"

        assert await tool() == "ok"
        assert seen[0] and len(seen[0]) == 8
        assert request_id_var.get() == ""
        assert current_request_id() is None

    @pytest.mark.asyncio
    async def test_completion_line_records_outcome(self, restore_root_logger):
        stream = io.StringIO()
        configure_logging("INFO", stream=stream)

        @with_request_id
        async def read_memory(memory_name, project_path=""):
            return {"error": "NOT_FOUND", "message": f"{memory_name} does not exist"}

        await read_memory("projectbrief", project_path="/work/app")

        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["message"] == "Tool completed"
        assert line["tool_name"] == "read_memory"
        assert line["outcome"] == "NOT_FOUND"
        assert line["project_path"] == "/work/app"


class TestFtsQuery:

    def test_tokens_are_quoted_and_deduplicated(self):
        assert build_fts_query("Retry retry POLICY") == '"retry" OR "policy"'

    def test_punctuation_is_dropped(self):
        assert build_fts_query('foo("bar") AND -baz*') == '"foo" OR "bar" OR "and" OR "baz"'

    def test_nothing_searchable(self):
        assert build_fts_query("?!  ") is None

    @pytest.mark.asyncio
    async def test_search_survives_fts_syntax(self, stack, seed):
        await seed("projectbrief")
        hits = await stack.db.fts_search("memory_documents", 'invoices" OR (', PROJECT)
        assert len(hits) == 1
