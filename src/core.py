"""Composition root: builds the memory core from Settings and tears it down."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from src.context.assembler import ContextAssembler
from src.conversation.manager import ConversationHistoryManager
from src.infra.database import create_db_engine, ensure_schema, make_session_factory
from src.infra.retry import RetryPolicy
from src.memory.index import SimilarityIndex
from src.memory.retention import RetentionPolicy
from src.memory.store import MemoryStore
from src.providers.embedding import HashEmbeddingProvider, OpenAIEmbeddingProvider
from src.providers.extraction import LLMExtractionProvider, RuleBasedExtractionProvider
from src.providers.model_client import OpenAICompatModelClient

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

    from src.config.settings import Settings
    from src.providers.embedding import EmbeddingProvider
    from src.providers.extraction import ExtractionProvider

logger = structlog.get_logger()


@dataclass
class MemoryCore:
    """Long-lived service objects sharing one engine and one similarity index."""

    engine: AsyncEngine
    db_session_factory: async_sessionmaker[AsyncSession]
    store: MemoryStore
    retention: RetentionPolicy
    conversations: ConversationHistoryManager
    assembler: ContextAssembler

    async def close(self) -> None:
        await self.engine.dispose()
        logger.info("db_engine_disposed")


def build_embedding_provider(settings: Settings) -> EmbeddingProvider:
    if settings.embedding.provider == "hash":
        return HashEmbeddingProvider(settings.embedding.dimension)
    if not settings.openai.api_key:
        raise RuntimeError(
            "EMBEDDING_PROVIDER=openai requires OPENAI_API_KEY. "
            "Set the key or use EMBEDDING_PROVIDER=hash for offline use."
        )
    return OpenAIEmbeddingProvider(
        settings.openai.api_key,
        model=settings.embedding.model,
        dimension=settings.embedding.dimension,
        base_url=settings.openai.base_url,
    )


def build_extraction_provider(settings: Settings) -> ExtractionProvider:
    if settings.provider.extraction == "rules":
        return RuleBasedExtractionProvider()
    if not settings.openai.api_key:
        raise RuntimeError(
            "PROVIDER_EXTRACTION=llm requires OPENAI_API_KEY. "
            "Set the key or use PROVIDER_EXTRACTION=rules."
        )
    client = OpenAICompatModelClient(
        api_key=settings.openai.api_key,
        base_url=settings.openai.base_url,
    )
    return LLMExtractionProvider(
        client, model=settings.openai.model, temperature=settings.provider.temperature
    )


async def create_memory_core(
    settings: Settings,
    *,
    embedding_provider: EmbeddingProvider | None = None,
    extraction_provider: ExtractionProvider | None = None,
) -> MemoryCore:
    """Create engine, schema and services. Providers may be injected (tests, scripts)."""
    embedder = embedding_provider or build_embedding_provider(settings)
    extractor = extraction_provider or build_extraction_provider(settings)
    retry_policy = RetryPolicy.from_settings(settings.provider)

    engine = await create_db_engine(settings.database)
    await ensure_schema(engine, settings.database.schema_)
    db_session_factory = make_session_factory(engine)

    store = MemoryStore(
        db_session_factory,
        embedder,
        settings.memory,
        index=SimilarityIndex(embedder.dimension),
        retry_policy=retry_policy,
    )
    conversations = ConversationHistoryManager(
        db_session_factory,
        settings.conversation,
        summarizer=extractor,
        retry_policy=retry_policy,
    )
    assembler = ContextAssembler(
        store,
        conversations,
        extractor,
        settings.context,
        extraction_fallback=settings.provider.extraction_fallback,
        retry_policy=retry_policy,
    )

    logger.info(
        "memory_core_started",
        embedding_model=embedder.model,
        embedding_dimension=embedder.dimension,
        extraction=type(extractor).__name__,
    )
    return MemoryCore(
        engine=engine,
        db_session_factory=db_session_factory,
        store=store,
        retention=RetentionPolicy(store, settings.memory),
        conversations=conversations,
        assembler=assembler,
    )
