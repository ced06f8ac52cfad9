"""Application wiring - builds every component and manages lifecycle."""

from __future__ import annotations

from typing import Optional

from shop_agent.agent.client import AnthropicCompletionClient, CompletionClient
from shop_agent.agent.orchestrator import ChatOrchestrator
from shop_agent.agent.tools.commerce import CommerceBackend, HttpCommerceBackend, commerce_tools
from shop_agent.agent.tools.registry import ToolRegistry
from shop_agent.approvals.channel import LogChannel, NotificationChannel, TelegramApprovalChannel
from shop_agent.approvals.gateway import ApprovalGateway
from shop_agent.approvals.queue import ActionQueue
from shop_agent.approvals.sweeper import ExpirySweeper
from shop_agent.config import AppConfig
from shop_agent.log import get_logger
from shop_agent.routing.classifier import DomainClassifier
from shop_agent.routing.embeddings import EmbeddingClient, OpenAIEmbeddingClient
from shop_agent.routing.router import ToolRouter
from shop_agent.services.service_manager import ServiceManager
from shop_agent.storage.chat_repo import ChatRepository
from shop_agent.storage.database import Database
from shop_agent.storage.embedding_store import EmbeddingStore

logger = get_logger(__name__)


class ShopAgentApp:
    """Top-level application object.

    External collaborators (completion, embeddings, approval channel, commerce
    backend and domain classifier) are built from config unless passed in.
    The classifier is built only when ``router.classify_domains`` is on.
    """

    def __init__(
        self,
        config: AppConfig,
        completion: Optional[CompletionClient] = None,
        embedder: Optional[EmbeddingClient] = None,
        channel: Optional[NotificationChannel] = None,
        commerce: Optional[CommerceBackend] = None,
        classifier: Optional[DomainClassifier] = None,
    ):
        self.config = config
        self.db = Database(config.storage.db_path)
        self.chat_repo = ChatRepository(self.db)
        self.embedding_store = EmbeddingStore(self.db, config.embeddings.dimensions)
        self.embedder = embedder or OpenAIEmbeddingClient(config.embeddings)
        self.router = ToolRouter(self.embedding_store, self.embedder, config.router)
        self.action_queue = ActionQueue(self.db, config.action_queue.ttl_seconds)
        self.channel = channel or self._create_channel()
        self.gateway = ApprovalGateway(self.action_queue, self.channel)

        self.commerce = commerce or HttpCommerceBackend(config.commerce)
        self.tool_registry = ToolRegistry(config.tools.mutating)
        for tool in commerce_tools(self.commerce):
            self.tool_registry.register(tool)

        self.completion = completion or AnthropicCompletionClient(config.anthropic)
        self.classifier_completion: Optional[CompletionClient] = None
        if classifier is None and config.router.classify_domains:
            self.classifier_completion = AnthropicCompletionClient(
                config.anthropic.model_copy(update={"model": config.router.classifier_model, "max_tokens": 100})
            )
            classifier = DomainClassifier(self.classifier_completion)
        self.orchestrator = ChatOrchestrator(
            chat_repo=self.chat_repo,
            router=self.router,
            queue=self.action_queue,
            gateway=self.gateway,
            tools=self.tool_registry,
            completion=self.completion,
            config=config.orchestrator,
            system_prompt=config.anthropic.system_prompt,
            classifier=classifier,
        )
        self.gateway.on_resolution(self.orchestrator.resume_after_decision)

        self.sweeper = ExpirySweeper(
            self.action_queue,
            self.gateway,
            config.action_queue.sweep_interval_seconds,
            on_expired=self.orchestrator.resume_after_decision,
        )
        self.service_manager = ServiceManager()
        self.service_manager.register(self.channel)
        self.service_manager.register(self.sweeper)

    async def open(self) -> None:
        """Open storage only; enough for one-shot CLI commands."""
        await self.db.initialize()

    async def start(self) -> None:
        await self.open()
        await self.service_manager.start_all()
        logger.info(
            "shop_agent_started",
            tools=len(self.tool_registry.names()),
            channel=self.channel.service_name,
        )

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        await self.service_manager.stop_all()
        for closeable in (self.completion, self.classifier_completion, self.embedder, self.commerce):
            if closeable is None:
                continue
            try:
                await closeable.close()
            except Exception as e:
                logger.warning("client_close_failed", client=type(closeable).__name__, error=str(e))
        await self.db.close()
        logger.info("shop_agent_stopped")

    def _create_channel(self) -> NotificationChannel:
        match self.config.notification.backend:
            case "telegram":
                return TelegramApprovalChannel(self.config.notification)
            case "log":
                return LogChannel()
            case _:
                raise ValueError(f"Unknown notification backend: {self.config.notification.backend}")
