"""
Identity Sync Engine

Wires stores, connectors, orchestrator, aggregator, ingest and scheduler together and
owns their lifecycle. One instance per process, stored on ``app.state.engine``.
"""

from typing import Dict
from typing import Optional

from loguru import logger

from identity_sync.clock import Clock
from identity_sync.clock import utc_now
from identity_sync.connectors.base import SourceConnector
from identity_sync.connectors.directory import DirectoryConnector
from identity_sync.connectors.ldap import LdapConnector
from identity_sync.db.pool import IdentityDBPool
from identity_sync.db.repository_history import HistoryRepository
from identity_sync.db.repository_identity import PostgresIdentityStore
from identity_sync.db.repository_schedule import ScheduleRepository
from identity_sync.enums import Source
from identity_sync.scheduler.retry import RetryQueue
from identity_sync.scheduler.service import SchedulerService
from identity_sync.scheduler.triggers import APSchedulerBackend
from identity_sync.scheduler.triggers import TriggerBackend
from identity_sync.schema.registry import SchemaRegistry
from identity_sync.settings import Settings
from identity_sync.state import EngineState
from identity_sync.store.memory import InMemoryHistoryRepository
from identity_sync.store.memory import InMemoryIdentityStore
from identity_sync.store.memory import InMemoryScheduleRepository
from identity_sync.store.protocols import HistoryRepositoryProtocol
from identity_sync.store.protocols import IdentityStore
from identity_sync.store.protocols import ScheduleRepositoryProtocol
from identity_sync.sync.aggregator import UserAggregator
from identity_sync.sync.conflicts import ConflictDetector
from identity_sync.sync.ingest import ManualRecordService
from identity_sync.sync.ingest import UploadIngestor
from identity_sync.sync.orchestrator import SyncOrchestrator


def build_connectors(settings: Settings) -> Dict[Source, SourceConnector]:
    """One connector per pulled source, configured or not."""
    return {
        Source.DIRECTORY: DirectoryConnector.from_settings(settings),
        Source.LDAP: LdapConnector.from_settings(settings),
    }


class IdentitySyncEngine:
    """Composition root of the sync engine."""

    def __init__(
        self,
        store: IdentityStore,
        schedules: ScheduleRepositoryProtocol,
        history: HistoryRepositoryProtocol,
        connectors: Dict[Source, SourceConnector],
        backend: TriggerBackend,
        settings: Optional[Settings] = None,
        pool: Optional[IdentityDBPool] = None,
        clock: Clock = utc_now,
    ):
        self.settings = settings or Settings()
        self.pool = pool
        self.store = store
        self.state = EngineState()

        self.registry = SchemaRegistry(store, clock=clock)
        self.detector = ConflictDetector(store)
        self.orchestrator = SyncOrchestrator(
            store=store,
            registry=self.registry,
            connectors=connectors,
            detector=self.detector,
            state=self.state,
            clock=clock,
        )
        self.aggregator = UserAggregator(store, self.detector)
        self.uploads = UploadIngestor(store, self.registry, clock=clock)
        self.manual = ManualRecordService(store, self.registry, clock=clock)
        self.scheduler = SchedulerService(
            schedules=schedules,
            history=history,
            orchestrator=self.orchestrator,
            state=self.state,
            backend=backend,
            retry_queue=RetryQueue(max_size=self.settings.retry_queue_max_size),
            clock=clock,
            default_timezone=self.settings.default_timezone,
            poll_interval_seconds=self.settings.retry_poll_interval_seconds,
        )
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: Settings) -> "IdentitySyncEngine":
        """PostgreSQL-backed engine when a connection string is set, in-memory otherwise."""
        connectors = build_connectors(settings)
        backend = APSchedulerBackend()

        if settings.identity_db_connection_string:
            pool = IdentityDBPool(settings.identity_db_connection_string)
            return cls(
                store=PostgresIdentityStore(pool),
                schedules=ScheduleRepository(pool),
                history=HistoryRepository(pool),
                connectors=connectors,
                backend=backend,
                settings=settings,
                pool=pool,
            )

        logger.warning("identity_db_connection_string not set - using in-memory stores (data is lost on restart)")
        return cls(
            store=InMemoryIdentityStore(),
            schedules=InMemoryScheduleRepository(),
            history=InMemoryHistoryRepository(),
            connectors=connectors,
            backend=backend,
            settings=settings,
        )

    async def initialize(self, start_scheduler: Optional[bool] = None) -> None:
        """Open the pool, create every source's tables and start the scheduler."""
        if self._initialized:
            return

        if self.pool is not None:
            await self.pool.initialize()

        self.state.initialize()
        for source in Source:
            await self.store.initialize(source)

        if self.settings.create_default_schedules:
            await self.scheduler.create_default_schedules()

        if self.settings.enable_scheduler if start_scheduler is None else start_scheduler:
            await self.scheduler.start()

        self._initialized = True
        logger.success(
            "Identity sync engine initialized",
            persistence="postgresql" if self.pool is not None else "memory",
            configured_sources=[
                source.value for source, connector in self.orchestrator.connectors.items() if connector.is_configured()
            ],
        )

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self.scheduler.shutdown()
        self.state.shutdown()
        if self.pool is not None:
            await self.pool.close()
        self._initialized = False
        logger.info("Identity sync engine stopped")
