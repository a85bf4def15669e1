"""
Market data source interface

A source reports the entities it knows about (perp markets, pools, ...) and
the current detail payload for each one. The collector stamps and stores
whatever the source returns.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Union

from market_snapshot_service.models import EntityDescriptor

DetailPayload = Union[Mapping[str, Any], List[Mapping[str, Any]]]


class MarketDataSource(ABC):
    """Abstract market data source"""

    def __init__(self, source_tag: str):
        self.source_tag = source_tag

    @abstractmethod
    async def list_entities(self) -> List[EntityDescriptor]:
        """
        Enumerate the entities this source can report on

        Raises:
            SourceUnavailableError: if the listing cannot be fetched
        """
        pass

    @abstractmethod
    async def fetch_detail(self, key: str) -> DetailPayload:
        """
        Fetch the current detail for one entity

        Returns:
            A single mapping (one snapshot) or a list of mappings (several
            entries for the same entity, e.g. funding-rate records)

        Raises:
            SourceUnavailableError: if the detail cannot be fetched
        """
        pass

    async def connect(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def describe(self) -> Dict[str, Any]:
        return {"source_tag": self.source_tag, "type": type(self).__name__}
