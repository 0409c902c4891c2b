from __future__ import annotations

from typing import Optional

from config_manager import ConfigManager, SessionConfig
from core.chat_session import AssistantChat
from core.completion import DEFAULT_TEMPERATURE
from core.provider_factory import ProviderFactory
from rag.fs_utils import LocalFileLoader, load_rag_settings
from rag.search import ProjectIndex
from utils.logging_utils import LoggingHandler
from utils.render_utils import MarkdownRenderer


class SessionBuilder:
    """
    Builds fully wired chat sessions.

    The provider, index and logger are constructed here and handed to the
    session explicitly; nothing is looked up from module-level state.
    """

    def __init__(self, config_manager: ConfigManager):
        self.config_manager = config_manager

    @staticmethod
    def build_embedder(config: SessionConfig, provider=None):
        """
        Return the async embed function used for indexing and search.

        [RAG] embedding_provider picks a provider explicitly; otherwise the
        chat provider embeds if it can.
        """
        name = config.get_option('RAG', 'embedding_provider', fallback=None)
        if name:
            provider = ProviderFactory.instantiate_by_name(str(name), config)
        elif provider is None:
            provider = ProviderFactory.for_model(config)
        return getattr(provider, 'embed', None)

    def build(self, *, provider=None, **options) -> AssistantChat:
        config = self.config_manager.create_session_config(options)
        logger = LoggingHandler(config)
        if provider is None:
            provider = ProviderFactory.for_model(config)

        retrieval = None
        loader = None
        rag = load_rag_settings(config)
        embed = self.build_embedder(config, provider)
        if rag.vector_db and embed is not None:
            retrieval = ProjectIndex(rag.vector_db, rag.index, embed)
            loader = LocalFileLoader()

        temperature = config.get_option('DEFAULT', 'temperature', fallback=DEFAULT_TEMPERATURE)
        try:
            temperature = float(temperature)
        except (TypeError, ValueError):
            temperature = DEFAULT_TEMPERATURE

        model: Optional[str] = config.overrides.get('model')
        chat = AssistantChat(
            provider,
            retrieval=retrieval,
            loader=loader,
            renderer=MarkdownRenderer.from_config(config),
            logger=logger,
            model=model,
            temperature=temperature,
            top_k=rag.top_k,
            config=config,
        )
        logger.settings({
            'model': chat.model,
            'provider': type(provider).__name__,
            'temperature': temperature,
            'rag_index': rag.index if retrieval else None,
            'top_k': rag.top_k,
        })
        return chat
