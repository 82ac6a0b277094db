"""
Engine State

Process-wide mutable state shared by the orchestrator and the scheduler: the running job
per source and the trigger handle per schedule. Owned by the engine, created in
initialize() and cleared in shutdown().
"""

import asyncio
from typing import Any
from typing import Dict
from typing import Optional

from loguru import logger

from identity_sync.enums import Source
from identity_sync.models.sync import SyncJob


class EngineState:
    """Single-flight registry for sync jobs plus the registered schedule triggers."""

    def __init__(self) -> None:
        self.running_jobs: Dict[Source, SyncJob] = {}
        self.triggers: Dict[str, Any] = {}
        self._lock: Optional[asyncio.Lock] = None

    def initialize(self) -> None:
        # The lock binds to the running loop on first use; create it per engine lifetime
        self._lock = asyncio.Lock()
        self.running_jobs.clear()
        self.triggers.clear()

    def shutdown(self) -> None:
        if self.running_jobs:
            logger.warning(
                "Abandoning running sync jobs on shutdown",
                sources=[source.value for source in self.running_jobs],
            )
        self.running_jobs.clear()
        self.triggers.clear()

    @property
    def lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    async def try_register(self, source: Source, job: SyncJob) -> bool:
        """Register ``job`` as the running job of ``source``; False if one is already running."""
        async with self.lock:
            if source in self.running_jobs:
                return False
            self.running_jobs[source] = job
            return True

    async def release(self, source: Source, job: SyncJob) -> None:
        """Remove the guard, but only if it still holds this job."""
        async with self.lock:
            current = self.running_jobs.get(source)
            if current is not None and current.id == job.id:
                del self.running_jobs[source]

    def get_running(self, source: Source) -> Optional[SyncJob]:
        return self.running_jobs.get(source)
