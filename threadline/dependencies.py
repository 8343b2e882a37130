from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from threadline.config import Settings
from threadline.database import create_engine, create_session_factory, init_models
from threadline.logging_config import get_logger
from threadline.schemas.onboarding import load_group_onboarding_config, load_onboarding_config
from threadline.services.a1base_service import A1BaseClient, MessagingProvider
from threadline.services.background import BackgroundTasks
from threadline.services.conversation_service import ConversationService
from threadline.services.dedup_service import RedisDedupGuard, create_redis_client
from threadline.services.dispatch_service import Dispatcher
from threadline.services.extraction_service import FieldExtractor
from threadline.services.group_onboarding_service import GroupOnboardingManager
from threadline.services.llm import LLMProvider, OpenAIProvider
from threadline.services.memory_service import MemoryExtractor
from threadline.services.onboarding_service import OnboardingManager
from threadline.services.reply_service import ReplyGenerator
from threadline.services.repository import (
    ConversationRepository,
    FallbackConversationRepository,
    InMemoryConversationRepository,
    SqlConversationRepository,
)
from threadline.services.triage_service import TriageRouter

logger = get_logger("dependencies")


@dataclass
class Components:
    settings: Settings
    repository: ConversationRepository
    onboarding: OnboardingManager
    conversation: ConversationService
    background: BackgroundTasks
    engine: Optional[AsyncEngine] = None
    dedup: Optional[RedisDedupGuard] = None
    group_onboarding: Optional[GroupOnboardingManager] = None


async def build_repository(settings: Settings) -> tuple[ConversationRepository, Optional[AsyncEngine]]:
    if not settings.database_url:
        logger.info("DATABASE_URL not set, conversations are kept in memory only")
        return InMemoryConversationRepository(context_window=settings.context_window), None

    engine = create_engine(settings.database_url)
    try:
        await init_models(engine)
    except Exception as exc:
        # The fallback repository keeps serving from memory until the database is reachable.
        logger.error("Database schema setup failed", extra={"context": {"error": str(exc)}})
    sql = SqlConversationRepository(create_session_factory(engine), context_window=settings.context_window)
    memory = InMemoryConversationRepository(
        context_window=settings.context_window,
        max_entries=settings.fallback_cache_size,
    )
    return FallbackConversationRepository(sql, memory), engine


def build_components(
    settings: Settings,
    repository: ConversationRepository,
    *,
    llm: Optional[LLMProvider] = None,
    provider: Optional[MessagingProvider] = None,
    dedup: Optional[RedisDedupGuard] = None,
    engine: Optional[AsyncEngine] = None,
) -> Components:
    """Wire the service graph; tests pass their own llm and provider."""
    if llm is None:
        llm = OpenAIProvider(
            settings.openai_api_key,
            default_model=settings.openai_model,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    if provider is None:
        provider = A1BaseClient(
            api_key=settings.a1base_api_key,
            api_secret=settings.a1base_api_secret,
            account_id=settings.a1base_account_id,
            agent_number=settings.agent_number,
            base_url=settings.a1base_base_url,
        )

    flow = load_onboarding_config(settings.onboarding_config_path)
    if not settings.onboarding_enabled:
        flow = flow.model_copy(update={"enabled": False})

    group_onboarding = None
    if settings.group_onboarding_enabled:
        group_onboarding = GroupOnboardingManager(
            repository, load_group_onboarding_config(settings.group_onboarding_config_path)
        )

    background = BackgroundTasks()
    onboarding = OnboardingManager(repository, FieldExtractor(llm), llm, flow)
    conversation = ConversationService(
        repository=repository,
        triage=TriageRouter(llm),
        onboarding=onboarding,
        replies=ReplyGenerator(llm, agent_name=settings.agent_name, sms_max_length=settings.sms_max_length),
        dispatcher=Dispatcher(
            provider,
            split_paragraphs=settings.split_paragraphs,
            split_delay_seconds=settings.split_delay_seconds,
            sms_max_length=settings.sms_max_length,
        ),
        background=background,
        memory=MemoryExtractor(repository, llm) if settings.memory_extraction_enabled else None,
        dedup=dedup,
        agent_number=settings.agent_number,
        agent_name=settings.agent_name,
        group_respond_only_when_mentioned=settings.group_respond_only_when_mentioned,
        group_onboarding=group_onboarding,
    )
    return Components(
        settings=settings,
        repository=repository,
        onboarding=onboarding,
        conversation=conversation,
        background=background,
        engine=engine,
        dedup=dedup,
        group_onboarding=group_onboarding,
    )


async def create_components(settings: Settings) -> Components:
    repository, engine = await build_repository(settings)
    dedup = None
    if settings.redis_url:
        dedup = RedisDedupGuard(create_redis_client(settings.redis_url))
    return build_components(settings, repository, dedup=dedup, engine=engine)


async def close_components(components: Components, drain_timeout: float = 5.0) -> None:
    await components.background.drain(timeout=drain_timeout)
    if components.dedup is not None:
        await components.dedup.close()
    if components.engine is not None:
        await components.engine.dispose()


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_conversation_service(request: Request) -> ConversationService:
    return get_components(request).conversation


def get_repository(request: Request) -> ConversationRepository:
    return get_components(request).repository


def get_onboarding_manager(request: Request) -> OnboardingManager:
    return get_components(request).onboarding


def get_app_settings(request: Request) -> Settings:
    return get_components(request).settings


def get_group_onboarding_manager(request: Request) -> Optional[GroupOnboardingManager]:
    return get_components(request).group_onboarding
