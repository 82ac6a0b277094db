"""Connector contract shared by every pulled source."""

from abc import ABC
from abc import abstractmethod
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from identity_sync.enums import Source
from identity_sync.models.sync import ConnectionReport

RawRecord = Dict[str, Any]


class SourceConnector(ABC):
    """
    Pulls raw user attribute maps from one external system.

    Implementations own their I/O timeouts; the orchestrator never cancels a running fetch.
    """

    source: Source

    @abstractmethod
    def is_configured(self) -> bool:
        """True when every credential needed to connect is present."""

    @abstractmethod
    async def fetch(self, since: Optional[datetime] = None) -> List[RawRecord]:
        """
        Return every user entry as an untyped attribute map.

        Args:
            since: Only entries changed after this time, where the source can filter on it

        Raises:
            NotConfigured: credentials are missing
            SourceConnectionError: transport or protocol failure
        """

    @abstractmethod
    async def test_connection(self) -> ConnectionReport:
        """Check the source is reachable without fetching users; never raises."""
