"""
Configuration

Settings come from environment variables (a ``.env`` file is loaded first).
Implementations for each collaborator are chosen once, here, at startup.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client

from history_tutor_chat.chat_service import ChatService
from history_tutor_chat.client_state import ClientState, InMemoryClientState, JsonFileClientState
from history_tutor_chat.conversation_sync import ConversationSynchronizer
from history_tutor_chat.generation import ImageGenerator, OpenAIImageGenerator, OpenAITextGenerator, TextGenerator
from history_tutor_chat.knowledge import InMemoryKnowledgeLookup, KnowledgeLookup, SupabaseKnowledgeLookup
from history_tutor_chat.lesson_resolver import LessonContextResolver
from history_tutor_chat.prompts import STUDENT, TEACHER
from history_tutor_chat.store import InMemoryStore, RemoteStore, SupabaseStore
from history_tutor_chat.turn_orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)

SUPABASE = "supabase"
MEMORY = "memory"


@dataclass
class Settings:
    store_backend: str = SUPABASE
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    openai_image_model: str = "dall-e-3"
    user_role: str = STUDENT
    client_state_path: Optional[str] = None
    refetch_delay_seconds: float = 3.0
    refetch_max_delay_seconds: float = 30.0
    tf_batch_size: int = 3
    max_suggestions: int = 5

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()

        backend = os.getenv("STORE_BACKEND", SUPABASE).lower()
        if backend not in (SUPABASE, MEMORY):
            raise ValueError(f"STORE_BACKEND must be '{SUPABASE}' or '{MEMORY}', got {backend!r}")

        role = os.getenv("USER_ROLE", STUDENT).lower()
        if role not in (STUDENT, TEACHER):
            logger.warning(f"⚠️ [Config] Unknown USER_ROLE {role!r}, using {STUDENT}")
            role = STUDENT

        return cls(
            store_backend=backend,
            supabase_url=os.getenv("SUPABASE_URL"),
            supabase_service_key=os.getenv("SUPABASE_SERVICE_KEY"),
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            openai_image_model=os.getenv("OPENAI_IMAGE_MODEL", "dall-e-3"),
            user_role=role,
            client_state_path=os.getenv("CLIENT_STATE_PATH") or None,
            refetch_delay_seconds=float(os.getenv("REFETCH_DELAY_SECONDS", "3")),
            refetch_max_delay_seconds=float(os.getenv("REFETCH_MAX_DELAY_SECONDS", "30")),
            tf_batch_size=int(os.getenv("TF_BATCH_SIZE", "3")),
            max_suggestions=int(os.getenv("MAX_SUGGESTIONS", "5")),
        )


def _supabase_client(settings: Settings):
    if not settings.supabase_url or not settings.supabase_service_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")
    return create_client(settings.supabase_url, settings.supabase_service_key)


def build_chat_service(
    settings: Settings,
    supabase_client=None,
    store: Optional[RemoteStore] = None,
    lookup: Optional[KnowledgeLookup] = None,
    generator: Optional[TextGenerator] = None,
    image_generator: Optional[ImageGenerator] = None,
    client_state: Optional[ClientState] = None,
) -> ChatService:
    """
    Wire a ChatService from settings. Explicit collaborators take precedence.
    """
    if store is None or lookup is None:
        if settings.store_backend == MEMORY:
            store = store or InMemoryStore()
            lookup = lookup or InMemoryKnowledgeLookup()
        else:
            supabase_client = supabase_client or _supabase_client(settings)
            store = store or SupabaseStore(supabase_client)
            lookup = lookup or SupabaseKnowledgeLookup(supabase_client)

    if client_state is None:
        if settings.client_state_path:
            client_state = JsonFileClientState(settings.client_state_path)
        else:
            client_state = InMemoryClientState()

    if generator is None:
        generator = OpenAITextGenerator(api_key=settings.openai_api_key, model=settings.openai_model)
    if image_generator is None and settings.openai_api_key:
        image_generator = OpenAIImageGenerator(api_key=settings.openai_api_key, model=settings.openai_image_model)

    synchronizer = ConversationSynchronizer(
        store,
        client_state,
        refetch_delay=settings.refetch_delay_seconds,
        max_refetch_delay=settings.refetch_max_delay_seconds,
    )
    orchestrator = TurnOrchestrator(
        store=store,
        synchronizer=synchronizer,
        resolver=LessonContextResolver(lookup),
        lookup=lookup,
        generator=generator,
        client_state=client_state,
        image_generator=image_generator,
        role=settings.user_role,
        tf_batch_size=settings.tf_batch_size,
        max_suggestions=settings.max_suggestions,
    )
    logger.info(f"✅ [Config] Chat service ready ({settings.store_backend} store, role {settings.user_role})")
    return ChatService(store, synchronizer, orchestrator, client_state)
