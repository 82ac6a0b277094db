"""Fake trigger backend for testing."""

from datetime import datetime
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Set

from identity_sync.scheduler.triggers import TriggerCallback


class FakeTriggerBackend:
    """Test implementation of TriggerBackend.

    Usage:
        backend = FakeTriggerBackend()
        handle = backend.register_trigger("0 6 * * *", "Europe/Berlin", callback)

        await backend.fire(handle)
        backend.cancel(handle)
        assert backend.cancelled == [handle]
    """

    def __init__(self) -> None:
        self.running = False
        self.triggers: Dict[str, Dict[str, Any]] = {}
        self.cancelled: List[str] = []
        self.rejected_expressions: Set[str] = set()
        self._counter = 0

    def start(self) -> None:
        self.running = True

    def shutdown(self) -> None:
        self.running = False

    def register_trigger(
        self, cron_expression: str, timezone_name: str, callback: TriggerCallback, name: Optional[str] = None
    ) -> str:
        if cron_expression in self.rejected_expressions:
            raise ValueError(f"Rejected cron expression: {cron_expression}")
        self._counter += 1
        handle = f"trigger-{self._counter}"
        self.triggers[handle] = {
            "cron_expression": cron_expression,
            "timezone": timezone_name,
            "callback": callback,
            "name": name,
        }
        return handle

    def cancel(self, handle: str) -> None:
        self.triggers.pop(handle, None)
        self.cancelled.append(handle)

    def next_fire_time(self, handle: str) -> Optional[datetime]:
        return None

    # Test helpers

    async def fire(self, handle: str) -> Any:
        """Invoke a registered callback as the real backend would."""
        return await self.triggers[handle]["callback"]()

    def reject(self, cron_expression: str) -> None:
        """Make registration of ``cron_expression`` fail."""
        self.rejected_expressions.add(cron_expression)
