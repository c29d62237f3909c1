# tests/conftest.py
"""
Pytest configuration and shared fixtures for Memory Engineering tests.

Everything runs against a temporary SQLite file, an in-process Qdrant and
a deterministic local embedder; no test touches the network.
"""

import re
import shutil
import tempfile
import zlib
from types import SimpleNamespace

import pytest

from memory_engineering.code_indexer import CodeIndexManager
from memory_engineering.config import settings
from memory_engineering.database import DatabaseManager
from memory_engineering.errors import EmbeddingError
from memory_engineering.memory import MemoryStore
from memory_engineering.qdrant_store import QdrantVectorStore
from memory_engineering.search import HybridSearchEngine
from memory_engineering.tracking import AccessTracker, LoopGuard
from memory_engineering.validator import QualityValidator

# Register pytest-asyncio plugin
pytest_plugins = ('pytest_asyncio',)

DIMENSIONS = 8
PROJECT = "project-under-test"

FILLER = "Reviewed with the team during the weekly planning session and kept in sync with the code."


def _document(sections):
    return "\n".join(f"## {heading}\n{body}\n{FILLER}\n" for heading, body in sections)


VALID_MEMORIES = {
    "projectbrief": _document([
        ("Overview", "Invoicing service for small agencies that replaces their billing spreadsheets."),
        ("Goals", "Meet the billing requirement set by finance and ship a first release in 2026."),
        ("Scope", "In scope are invoices and payments. Payroll is out of scope."),
        ("Success Criteria", "Invoices go out within 5 minutes of approval for 95 percent of agencies."),
    ]),
    "productContext": _document([
        ("Why This Exists", "Agencies lose track of unpaid work when invoices live in email threads."),
        ("Problems It Solves", "It solves late payment and duplicate invoice numbers."),
        ("How It Should Work", "An approved timesheet becomes an invoice with one click."),
        ("User Experience Goals", "Every user sees outstanding balances on the first screen."),
    ]),
    "systemPatterns": _document([
        ("Architecture Overview", "A layered architecture with one service module per billing domain."),
        ("Key Technical Decisions", "Money is stored as integer cents to avoid rounding drift."),
        ("Design Patterns", "The repository pattern isolates data access from the services."),
        ("Component Relationships", "The web component calls the billing module through its service layer."),
    ]),
    "techContext": _document([
        ("Technologies Used", "Python 3.12 with PostgreSQL 16 for storage."),
        ("Development Setup", "Create a virtualenv and install the package in editable mode."),
        ("Technical Constraints", "Builds must work offline, which is a hard requirement from operations."),
        ("Dependencies", "FastAPI version 0.110 and SQLAlchemy version 2.0 are pinned."),
    ]),
    "activeContext": _document([
        ("Current Focus", "Payment reminders, updated 2026-10-01 at 14:30."),
        ("Active Tasks", "Wire the reminder scheduler, next we add the email templates."),
        ("Recent Changes", "Invoice numbering moved into a database sequence."),
        ("Learnings & Insights", "Batching reminders keeps the mail provider within its rate limits."),
    ]),
    "progress": _document([
        ("What Works", "Invoice creation is complete and works end to end."),
        ("What's Left to Build", "Reminders and the remaining export formats come next."),
        ("Current Status", "Private beta with 3 agencies."),
        ("Known Issues", "Currency rounding in exported statements is off by one cent."),
    ]),
    "codebaseMap": _document([
        ("Directory Structure", "The src directory holds the domain code and tests mirrors it."),
        ("Key Files", "src/billing/main.py is the entry point for the web process."),
        ("Module Organization", "One package per bounded context with a shared utilities package."),
        ("Data Flow", "Requests pass through the router into services and then repositories."),
    ]),
}


class FakeEmbedder:
    """Deterministic bag-of-words embedder. Set `fail` to simulate a provider outage."""

    def __init__(self, dimensions: int = DIMENSIONS):
        self.dimensions = dimensions
        self.fail = False
        self.calls = []

    async def embed(self, text, mode="document"):
        return (await self.embed_batch([text], mode=mode))[0]

    async def embed_batch(self, texts, mode="document"):
        if self.fail:
            raise EmbeddingError("provider unavailable")
        self.calls.append((list(texts), mode))
        return [self._vector(text) for text in texts]

    def _vector(self, text):
        vector = [0.0] * self.dimensions
        for token in re.findall(r"\w+", text.lower()):
            vector[zlib.crc32(token.encode("utf-8")) % self.dimensions] += 1.0
        if not any(vector):
            vector[0] = 1.0
        return vector


@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def project_dir():
    """Create a temporary project source tree."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_settings(temp_storage):
    return settings.model_copy(update={
        "voyage_api_key": "test-key",
        "embedding_dimensions": DIMENSIONS,
        "storage_path": temp_storage,
    })


@pytest.fixture
async def stack(temp_storage, test_settings):
    """A fully wired engine over temporary storage."""
    db = DatabaseManager(temp_storage)
    await db.init_db()
    vector_store = QdrantVectorStore(":memory:", dimension=DIMENSIONS)
    embedder = FakeEmbedder()
    tracker = AccessTracker(db)
    memory = MemoryStore(db, embedder, vector_store, QualityValidator(), tracker)

    yield SimpleNamespace(
        db=db,
        vector_store=vector_store,
        embedder=embedder,
        tracker=tracker,
        memory=memory,
        search=HybridSearchEngine(db, embedder, vector_store, tracker, test_settings),
        indexer=CodeIndexManager(db, embedder, vector_store, memory, config=test_settings),
        loop_guard=LoopGuard(db),
    )

    vector_store.close()
    await db.close()


@pytest.fixture
def valid_memories():
    return dict(VALID_MEMORIES)


@pytest.fixture
def seed(stack):
    """Create the named memories, in the order given, with valid content."""
    async def _seed(*names, project_id=PROJECT):
        for name in names:
            result = await stack.memory.update(project_id, name, VALID_MEMORIES[name])
            assert result.get("success"), result
    return _seed


def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test."
    )
