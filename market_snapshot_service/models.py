"""
Pydantic models for the Market Snapshot Service
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

# Field names stamped on every stored snapshot
ENTITY_KEY_FIELD = "entityKey"
SOURCE_TAG_FIELD = "sourceTag"
CAPTURED_AT_FIELD = "capturedAt"
DOCUMENT_ID_FIELD = "_id"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CollectionMode(str, Enum):
    """Write discipline for a collection run"""
    UPSERT = "upsert"
    HISTORICAL = "historical"


class EntityDescriptor(BaseModel):
    """An entity a market data source can report on (e.g. a perp market)"""
    key: str = Field(description="Entity key, e.g. SOL-PERP")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class WriteError(BaseModel):
    """Entry-level failure inside a bulk write"""
    index: int = Field(description="Position of the entry in the submitted batch")
    message: str


class WriteResult(BaseModel):
    """Aggregate outcome of a bulk write"""
    matched: int = 0
    modified: int = 0
    upserted: int = 0
    inserted: int = 0
    errors: List[WriteError] = Field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.errors)


class EntityOutcome(BaseModel):
    """Per-entity result of one collection run"""
    entity_key: str
    success: bool
    documents: int = 0
    error: Optional[str] = None
    error_type: Optional[str] = None


class CollectionRun(BaseModel):
    """Ephemeral record of one collection cycle"""
    source_tag: str
    mode: CollectionMode
    collection: str
    started_at: datetime = Field(default_factory=utc_now)
    finished_at: Optional[datetime] = None
    outcomes: List[EntityOutcome] = Field(default_factory=list)
    matched: int = 0
    modified: int = 0
    upserted: int = 0
    inserted: int = 0

    @property
    def succeeded(self) -> List[str]:
        return [o.entity_key for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[str]:
        return [o.entity_key for o in self.outcomes if not o.success]

    def summary(self) -> Dict[str, Any]:
        """Compact representation for logs and scheduler status"""
        return {
            "source_tag": self.source_tag,
            "mode": self.mode.value,
            "collection": self.collection,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "entities_succeeded": len(self.succeeded),
            "entities_failed": len(self.failed),
            "matched": self.matched,
            "modified": self.modified,
            "upserted": self.upserted,
            "inserted": self.inserted,
        }

