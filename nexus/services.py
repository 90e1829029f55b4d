"""Process-wide dependencies, constructed once and passed explicitly."""

from __future__ import annotations

from dataclasses import dataclass

from nexus.compression.client import CompressionClient
from nexus.config.schema import Config
from nexus.db.engine import Database
from nexus.graph.linker import GraphLinker
from nexus.graph.locks import ProjectLockRegistry
from nexus.logging import get_logger
from nexus.memory.assembler import ContextAssembler
from nexus.memory.longterm import LongTermMemoryStore, create_memory_store
from nexus.memory.summarizer import TurnSummarizer
from nexus.providers.registry import ProviderRegistry
from nexus.turn.orchestrator import TurnOrchestrator

logger = get_logger(__name__)


@dataclass
class Services:
    config: Config
    database: Database
    providers: ProviderRegistry
    compressor: CompressionClient
    memory_store: LongTermMemoryStore
    orchestrator: TurnOrchestrator

    @classmethod
    def build(
        cls,
        config: Config,
        *,
        database: Database | None = None,
        providers: ProviderRegistry | None = None,
        compressor: CompressionClient | None = None,
        memory_store: LongTermMemoryStore | None = None,
    ) -> "Services":
        """Wire the pipeline from *config*; any collaborator may be injected instead."""
        database = database or Database.from_config(config.database)
        providers = providers or ProviderRegistry.from_config(config)
        compressor = compressor or CompressionClient(config.compression)
        memory_store = memory_store or create_memory_store(config.memory)

        orchestrator = TurnOrchestrator(
            database=database,
            providers=providers,
            assembler=ContextAssembler(
                compressor=compressor,
                memory_store=memory_store,
                system_instructions=config.system_instructions,
            ),
            linker=GraphLinker(database, ProjectLockRegistry()),
            summarizer=TurnSummarizer(),
            memory_store=memory_store,
            user_id=config.dev_user_id,
        )
        logger.info(
            "services_ready",
            providers=providers.names,
            compression=compressor.enabled,
            memory=type(memory_store).__name__,
            database=database.dialect,
        )
        return cls(
            config=config,
            database=database,
            providers=providers,
            compressor=compressor,
            memory_store=memory_store,
            orchestrator=orchestrator,
        )

    async def aclose(self) -> None:
        await self.providers.aclose()
        await self.compressor.aclose()
        await self.memory_store.aclose()
        await self.database.dispose()
