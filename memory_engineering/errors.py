"""Exception hierarchy for Memory Engineering."""


class MemoryEngineeringError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(MemoryEngineeringError):
    """Missing or invalid configuration. Fatal at startup."""


class EmbeddingError(MemoryEngineeringError):
    """The embedding provider failed or returned an unusable response."""


class MissingCredentialsError(EmbeddingError, ConfigurationError):
    """No provider API key; raised before any network call."""


class DimensionMismatchError(MemoryEngineeringError):
    """A vector's length does not match the index dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Vector dimension mismatch: expected {expected}, got {actual}")


class IndexNotReadyError(MemoryEngineeringError):
    """The vector index is still provisioning."""

    def __init__(self, collection: str, retry_after: float = 5.0):
        self.collection = collection
        self.retry_after = retry_after
        super().__init__(f"Index '{collection}' is not ready yet")
