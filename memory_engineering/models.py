"""
Memory Engineering Models - Schema for memory documents, code chunks and loop-guard state.

Tables:
- memory_documents: The fixed set of named, versioned project memories
- working_memories: Ephemeral keyed notes with a fixed expiry
- code_chunks: Embeddable units of source code, replaced wholesale per sync
- execution_states: Call counters for long-running agent tasks
"""

from sqlalchemy import Column, Integer, String, Text, JSON, DateTime, LargeBinary, Index, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase
from datetime import datetime, timezone

from . import vectors


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


class Base(DeclarativeBase):
    pass


class MemoryDocument(Base):
    """
    One facet of project knowledge (project brief, tech context, progress...).

    memory_name is restricted to the names in memory_structures.MEMORY_HIERARCHY.
    Exactly one live row exists per (project_id, memory_name).
    """
    __tablename__ = "memory_documents"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    memory_name = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=False)

    # Packed floats; cleared whenever content changes and embedding fails
    content_vector = Column(LargeBinary, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    last_modified = Column(DateTime, default=_utcnow)
    access_count = Column(Integer, nullable=False, default=0)
    last_accessed = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        UniqueConstraint('project_id', 'memory_name', name='uq_memory_project_name'),
    )

    def to_dict(self, include_vector: bool = False) -> dict:
        data = {
            "id": self.id,
            "projectId": self.project_id,
            "memoryName": self.memory_name,
            "content": self.content,
            "hasVector": self.content_vector is not None,
            "metadata": {
                "version": self.version,
                "lastModified": _iso(self.last_modified),
                "accessCount": self.access_count,
                "lastAccessed": _iso(self.last_accessed),
            },
            "createdAt": _iso(self.created_at),
            "updatedAt": _iso(self.updated_at),
        }
        if include_vector:
            data["contentVector"] = vectors.decode(self.content_vector)
        return data


class WorkingMemory(Base):
    """Ephemeral note. expires_at is fixed at creation; core memories never expire."""
    __tablename__ = "working_memories"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    key = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime, default=_utcnow)
    expires_at = Column(DateTime, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint('project_id', 'key', name='uq_working_memory_key'),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "key": self.key,
            "content": self.content,
            "createdAt": _iso(self.created_at),
            "expiresAt": _iso(self.expires_at),
        }


class CodeChunk(Base):
    """
    An extracted unit of source code (function, class or whole module).

    codebase_map_id points at the codebaseMap memory that owned the index run.
    Lines are 1-based and inclusive.
    """
    __tablename__ = "code_chunks"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    codebase_map_id = Column(Integer, nullable=True)
    file_path = Column(String, nullable=False, index=True)

    chunk_type = Column(String, nullable=False)  # function, class, module
    name = Column(String, nullable=False)
    signature = Column(Text, nullable=True)
    content = Column(Text, nullable=False)
    context = Column(Text, nullable=True)
    start_line = Column(Integer, nullable=False)
    end_line = Column(Integer, nullable=False)

    content_vector = Column(LargeBinary, nullable=True)
    searchable_text = Column(Text, nullable=False, default="")

    dependencies = Column(JSON, default=list)
    exports = Column(JSON, default=list)
    patterns = Column(JSON, default=list)
    size = Column(Integer, default=0)

    created_at = Column(DateTime, default=_utcnow)

    __table_args__ = (
        Index('ix_code_chunks_project_type', 'project_id', 'chunk_type'),
    )

    def to_dict(self, include_vector: bool = False) -> dict:
        data = {
            "id": self.id,
            "projectId": self.project_id,
            "codebaseMapId": self.codebase_map_id,
            "filePath": self.file_path,
            "chunk": {
                "type": self.chunk_type,
                "name": self.name,
                "signature": self.signature,
                "content": self.content,
                "context": self.context,
                "startLine": self.start_line,
                "endLine": self.end_line,
            },
            "searchableText": self.searchable_text,
            "metadata": {
                "dependencies": self.dependencies or [],
                "exports": self.exports or [],
                "patterns": self.patterns or [],
                "size": self.size,
            },
        }
        if include_vector:
            data["contentVector"] = vectors.decode(self.content_vector)
        return data


class ExecutionState(Base):
    """
    Loop-guard record for a long-running agent task.

    Status: planning -> executing -> complete | failed.
    """
    __tablename__ = "execution_states"

    id = Column(Integer, primary_key=True, index=True)
    project_id = Column(String, nullable=False, index=True)
    task_name = Column(String, nullable=False, index=True)
    execution_id = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="planning")

    call_count = Column(Integer, nullable=False, default=1)
    last_called = Column(DateTime, default=_utcnow)

    total_steps = Column(Integer, default=0)
    current_step = Column(String, nullable=True)
    completed_steps = Column(JSON, default=list)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=_utcnow)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self) -> dict:
        return {
            "executionId": self.execution_id,
            "taskName": self.task_name,
            "status": self.status,
            "callCount": self.call_count,
            "lastCalled": _iso(self.last_called),
            "totalSteps": self.total_steps,
            "currentStep": self.current_step,
            "completedSteps": self.completed_steps or [],
            "error": self.error,
            "completedAt": _iso(self.completed_at),
        }


def as_utc(value):
    """SQLite hands back naive datetimes; everything is stored in UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
