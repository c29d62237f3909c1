"""Tests for the memory store: gates, versioning, access tracking and working memory."""

from datetime import datetime, timedelta, timezone

import pytest

from memory_engineering.errors import ConfigurationError
from memory_engineering.memory_structures import MEMORY_HIERARCHY, MEMORY_NAMES
from memory_engineering.qdrant_store import QdrantVectorStore

PROJECT = "project-under-test"
MEMORIES = QdrantVectorStore.COLLECTION_MEMORIES


class TestDependencyGate:

    @pytest.mark.asyncio
    async def test_every_memory_needs_its_dependencies(self, stack, valid_memories):
        for name in MEMORY_NAMES:
            deps = list(MEMORY_HIERARCHY[name].depends_on)
            if not deps:
                continue
            result = await stack.memory.update(PROJECT, name, valid_memories[name])
            assert result["error"] == "MISSING_DEPENDENCIES"
            assert result["missing"] == deps

        assert await stack.memory.existing_names(PROJECT) == []

    @pytest.mark.asyncio
    async def test_active_context_names_exact_missing_set(self, stack, seed, valid_memories):
        await seed("projectbrief")
        result = await stack.memory.update(PROJECT, "activeContext", valid_memories["activeContext"])
        assert result["error"] == "MISSING_DEPENDENCIES"
        assert result["missing"] == ["productContext", "systemPatterns", "techContext"]

    @pytest.mark.asyncio
    async def test_full_hierarchy_in_order(self, stack, seed):
        await seed(*MEMORY_NAMES)
        listing = await stack.memory.list_memories(PROJECT)
        assert [m["memoryName"] for m in listing] == MEMORY_NAMES

    @pytest.mark.asyncio
    async def test_projects_are_isolated(self, stack, seed, valid_memories):
        await seed("projectbrief")
        result = await stack.memory.update("other-project", "productContext", valid_memories["productContext"])
        assert result["error"] == "MISSING_DEPENDENCIES"


class TestWriteGates:

    @pytest.mark.asyncio
    async def test_unknown_memory(self, stack):
        result = await stack.memory.update(PROJECT, "roadmap", "anything")
        assert result["error"] == "UNKNOWN_MEMORY"
        assert result["validNames"] == MEMORY_NAMES

    @pytest.mark.asyncio
    async def test_empty_content(self, stack):
        result = await stack.memory.update(PROJECT, "projectbrief", "   \n")
        assert result["error"] == "EMPTY_CONTENT"

    @pytest.mark.asyncio
    async def test_quality_rejection_leaves_no_trace(self, stack):
        result = await stack.memory.update(PROJECT, "projectbrief", "## Overview\nA thing.")

        assert result["error"] == "QUALITY_REJECTED"
        assert result["grade"] == "F"
        assert result["template"]
        assert await stack.memory.get(PROJECT, "projectbrief") is None
        assert stack.embedder.calls == []


class TestVersioning:

    @pytest.mark.asyncio
    async def test_create_then_update(self, stack, valid_memories):
        first = await stack.memory.update(PROJECT, "projectbrief", valid_memories["projectbrief"])
        assert first["success"] and first["created"]
        assert first["version"] == 1
        assert first["embedding"] == "updated"

        revised = valid_memories["projectbrief"] + "\n## Notes\nPayroll may come back into scope in 2027.\n"
        second = await stack.memory.update(PROJECT, "projectbrief", revised)
        assert second["success"] and not second["created"]
        assert second["version"] == 2

        read = await stack.memory.read(PROJECT, "projectbrief")
        assert read["content"] == revised
        assert read["metadata"]["version"] == 2

    @pytest.mark.asyncio
    async def test_expected_version(self, stack, valid_memories):
        content = valid_memories["projectbrief"]

        conflict = await stack.memory.update(PROJECT, "projectbrief", content, expected_version=1)
        assert conflict["error"] == "VERSION_CONFLICT"
        assert conflict["currentVersion"] == 0

        created = await stack.memory.update(PROJECT, "projectbrief", content, expected_version=0)
        assert created["version"] == 1

        stale = await stack.memory.update(PROJECT, "projectbrief", content, expected_version=0)
        assert stale["error"] == "VERSION_CONFLICT"
        assert stale["currentVersion"] == 1

        updated = await stack.memory.update(PROJECT, "projectbrief", content, expected_version=1)
        assert updated["version"] == 2

    @pytest.mark.asyncio
    async def test_embedding_failure_still_persists(self, stack, valid_memories):
        stack.embedder.fail = True
        result = await stack.memory.update(PROJECT, "projectbrief", valid_memories["projectbrief"])

        assert result["success"]
        assert result["embedding"] == "failed"
        assert stack.vector_store.count(MEMORIES, PROJECT) == 0

        read = await stack.memory.read(PROJECT, "projectbrief")
        assert read["content"] == valid_memories["projectbrief"]
        assert read["hasVector"] is False

    @pytest.mark.asyncio
    async def test_failed_reembedding_drops_stale_vector(self, stack, seed, valid_memories):
        await seed("projectbrief")
        assert stack.vector_store.count(MEMORIES, PROJECT) == 1

        stack.embedder.fail = True
        revised = valid_memories["projectbrief"] + "\n## Notes\nScope now includes expenses.\n"
        result = await stack.memory.update(PROJECT, "projectbrief", revised)

        assert result["version"] == 2
        assert stack.vector_store.count(MEMORIES, PROJECT) == 0


class TestVectorIndexIntegrity:

    def test_reopening_index_with_other_dimension_fails(self, temp_storage):
        path = f"{temp_storage}/qdrant"
        QdrantVectorStore(path, dimension=8).close()

        with pytest.raises(ConfigurationError, match="8-dimensional"):
            QdrantVectorStore(path, dimension=4)

        reopened = QdrantVectorStore(path, dimension=8)
        assert reopened.collection_dimension(MEMORIES) == 8
        reopened.close()

    @pytest.mark.asyncio
    async def test_wrong_size_vector_is_not_indexed(self, stack, seed, valid_memories):
        await seed("projectbrief")
        stack.embedder.dimensions = 4

        revised = valid_memories["projectbrief"] + "\n## Notes\nScope now includes expenses.\n"
        result = await stack.memory.update(PROJECT, "projectbrief", revised)

        assert result["success"]
        assert result["version"] == 2
        assert result["embedding"] == "failed"
        assert stack.vector_store.count(MEMORIES, PROJECT) == 0
        assert (await stack.memory.read(PROJECT, "projectbrief"))["hasVector"] is False

    @pytest.mark.asyncio
    async def test_upsert_failure_clears_vector(self, stack, seed, valid_memories, monkeypatch):
        await seed("projectbrief")

        def broken_upsert(*args, **kwargs):
            raise RuntimeError("storage offline")

        monkeypatch.setattr(stack.vector_store, "upsert", broken_upsert)
        revised = valid_memories["projectbrief"] + "\n## Notes\nScope now includes expenses.\n"
        result = await stack.memory.update(PROJECT, "projectbrief", revised)

        assert result["success"]
        assert result["embedding"] == "failed"
        assert stack.vector_store.count(MEMORIES, PROJECT) == 0

        read = await stack.memory.read(PROJECT, "projectbrief")
        assert read["content"] == revised
        assert read["hasVector"] is False


class TestReads:

    @pytest.mark.asyncio
    async def test_reads_count_as_access(self, stack, seed):
        await seed("projectbrief")

        first = await stack.memory.read(PROJECT, "projectbrief")
        second = await stack.memory.read(PROJECT, "projectbrief")

        assert first["metadata"]["accessCount"] == 1
        assert second["metadata"]["accessCount"] == 2
        assert second["metadata"]["lastAccessed"] is not None
        assert second["metadata"]["version"] == 1

    @pytest.mark.asyncio
    async def test_listing_does_not_count_as_access(self, stack, seed):
        await seed("projectbrief")
        await stack.memory.list_memories(PROJECT)
        listing = await stack.memory.list_memories(PROJECT)

        assert listing[0]["metadata"]["accessCount"] == 0
        assert "content" not in listing[0]
        assert listing[0]["size"] > 0

    @pytest.mark.asyncio
    async def test_not_found_is_never_template_text(self, stack):
        result = await stack.memory.read(PROJECT, "techContext")

        assert result["error"] == "NOT_FOUND"
        assert "content" not in result
        assert result["missingDependencies"] == ["projectbrief"]
        assert "dependencies" in result["requiredSections"]

    @pytest.mark.asyncio
    async def test_read_all(self, stack, seed):
        await seed("projectbrief", "techContext")
        result = await stack.memory.read_all(PROJECT)

        assert [m["memoryName"] for m in result["memories"]] == ["projectbrief", "techContext"]
        assert result["missing"] == ["productContext", "systemPatterns", "activeContext", "progress", "codebaseMap"]
        assert all(m["metadata"]["accessCount"] == 1 for m in result["memories"])


class TestDelete:

    @pytest.mark.asyncio
    async def test_dependents_block_delete(self, stack, seed):
        await seed("projectbrief", "productContext")

        blocked = await stack.memory.delete(PROJECT, "projectbrief")
        assert blocked["error"] == "DEPENDENTS_EXIST"
        assert blocked["dependents"] == ["productContext"]

        assert (await stack.memory.delete(PROJECT, "productContext"))["success"]
        assert (await stack.memory.delete(PROJECT, "projectbrief"))["success"]
        assert await stack.memory.existing_names(PROJECT) == []
        assert stack.vector_store.count(MEMORIES, PROJECT) == 0

    @pytest.mark.asyncio
    async def test_delete_missing(self, stack):
        result = await stack.memory.delete(PROJECT, "projectbrief")
        assert result["error"] == "NOT_FOUND"


class TestWorkingMemory:

    @pytest.mark.asyncio
    async def test_remember_and_recall(self, stack):
        stored = await stack.memory.remember(PROJECT, "deploy-notes", "Staging needs a manual cache flush.")
        assert stored["key"] == "deploy-notes"

        recalled = await stack.memory.recall(PROJECT, "deploy-notes")
        assert recalled["content"] == "Staging needs a manual cache flush."

    @pytest.mark.asyncio
    async def test_rewrite_replaces_entry(self, stack):
        await stack.memory.remember(PROJECT, "deploy-notes", "first")
        await stack.memory.remember(PROJECT, "deploy-notes", "second")

        recalled = await stack.memory.recall(PROJECT, "deploy-notes")
        assert recalled["content"] == "second"

    @pytest.mark.asyncio
    async def test_expired_entry_is_not_recalled(self, stack):
        await stack.memory.remember(PROJECT, "deploy-notes", "Staging needs a manual cache flush.")
        later = datetime.now(timezone.utc) + timedelta(days=31)

        result = await stack.memory.recall(PROJECT, "deploy-notes", now=later)
        assert result["error"] == "NOT_FOUND"
