"""Fake source connector for testing."""

import asyncio
from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from identity_sync.connectors.base import RawRecord
from identity_sync.connectors.base import SourceConnector
from identity_sync.enums import Source
from identity_sync.errors import IdentitySyncError
from identity_sync.errors import NotConfigured
from identity_sync.models.sync import ConnectionReport


class FakeConnector(SourceConnector):
    """Test implementation of SourceConnector.

    Usage:
        fake = FakeConnector(Source.LDAP)
        fake.seed({"dn": "cn=a,dc=x", "mail": "a@x.com"})

        records = await fake.fetch()
        assert fake._calls == [("fetch", None)]

    ``gate`` holds fetch() open until the test sets it, for single-flight tests.
    """

    def __init__(self, source: Source, configured: bool = True) -> None:
        self.source = source
        self.configured = configured
        self.gate: Optional[asyncio.Event] = None
        self.fetch_started = asyncio.Event()
        self._records: List[RawRecord] = []
        self._error: Optional[IdentitySyncError] = None
        self._calls: List[tuple] = []

    def is_configured(self) -> bool:
        return self.configured

    async def fetch(self, since: Optional[datetime] = None) -> List[RawRecord]:
        self._calls.append(("fetch", since))
        self.fetch_started.set()
        if not self.configured:
            raise NotConfigured("Fake connector is not configured", source=self.source.value)
        if self.gate is not None:
            await self.gate.wait()
        if self._error is not None:
            raise self._error
        return [dict(record) for record in self._records]

    async def test_connection(self) -> ConnectionReport:
        self._calls.append(("test_connection",))
        if not self.configured:
            return ConnectionReport(success=False, details={"error": NotConfigured.code})
        if self._error is not None:
            return ConnectionReport(success=False, details={"error": self._error.code})
        return ConnectionReport(success=True, details={"records": len(self._records)})

    # Test helpers

    def seed(self, *records: Dict[str, Any]) -> None:
        """Records returned by every following fetch()."""
        self._records.extend(records)

    def replace(self, *records: Dict[str, Any]) -> None:
        self._records = list(records)

    def fail_with(self, error: Optional[IdentitySyncError]) -> None:
        """Make fetch() raise ``error``; None restores normal behavior."""
        self._error = error

    def hold(self) -> asyncio.Event:
        """Block fetch() until the returned event is set."""
        self.gate = asyncio.Event()
        return self.gate
