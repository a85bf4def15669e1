"""
Exception hierarchy for the Market Snapshot Service

Entity-level failures (SourceUnavailableError, CodecError) are recovered and
aggregated into the collection run. Cycle-level failures (EmptyFetchError,
StorageError) propagate to the caller of the collector or query service.
"""


class SnapshotServiceError(Exception):
    """Base class for all service errors"""


class SourceUnavailableError(SnapshotServiceError):
    """Fetch from a market data source failed or timed out"""

    def __init__(self, message: str, entity_key: str = None):
        super().__init__(message)
        self.entity_key = entity_key


class CodecError(SnapshotServiceError):
    """A value could not be encoded to or decoded from its storage form"""


class StorageError(SnapshotServiceError):
    """Document store call failed or the backend is unavailable"""


class EmptyFetchError(SnapshotServiceError):
    """Source returned no entities, most likely an upstream outage"""

    def __init__(self, source_tag: str):
        super().__init__(f"No entities retrieved from source '{source_tag}'")
        self.source_tag = source_tag
