"""
Runtime — builds the whole engine from a ``ConciergeConfig``.

Every entry point (the CLI commands, tests that want the real wiring) gets its
components from ``build_runtime()`` rather than constructing them piecemeal, so
there is exactly one place that decides which store, which clients and which
tool handlers are in play.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx
import structlog

from concierge.agent import Assistant
from concierge.api.gateway import GatewayInitError, LanguageModelGateway
from concierge.capabilities import CalendarClient, CredentialStore, CrmClient, MailClient
from concierge.config import ConciergeConfig
from concierge.conversation import ConversationLog
from concierge.events import EventBus, create_event_bus
from concierge.harness.loop import AgenticLoop
from concierge.instructions import InstructionStore
from concierge.orchestration import InstructionEvaluator, OrchestrationDriver
from concierge.retrieval import ChromaEmbedder, ContentIngestor, Embedder, RetrievalIndex
from concierge.store import DataStore
from concierge.tasks import TaskStore
from concierge.tools import ToolExecutor, ToolRegistry
from concierge.tools.builtin import register_builtin_tools
from concierge.tools.builtin.handlers import ToolServices, wire_builtin_handlers

logger = structlog.get_logger(__name__)


@dataclass
class Runtime:
    config: ConciergeConfig
    store: DataStore
    event_bus: EventBus
    tasks: TaskStore
    instructions: InstructionStore
    conversation: ConversationLog
    credentials: CredentialStore
    index: RetrievalIndex
    ingestor: ContentIngestor
    mail: MailClient
    calendar: CalendarClient
    crm: CrmClient
    registry: ToolRegistry
    executor: ToolExecutor
    loop: AgenticLoop
    assistant: Assistant
    evaluator: InstructionEvaluator
    driver: OrchestrationDriver

    async def start(self) -> None:
        await self.event_bus.start()

    async def close(self) -> None:
        await self.driver.stop()
        await self.event_bus.stop()
        for client in (self.mail, self.calendar, self.crm):
            await client.close()
        self.store.close()
        logger.info("runtime.closed")


class _UnconfiguredGateway:
    """Stands in for the gateway when no API key is configured."""

    def __init__(self, reason: str):
        self._reason = reason

    async def complete(self, *args: Any, **kwargs: Any) -> Any:
        raise GatewayInitError(self._reason)


def _build_gateway(config: ConciergeConfig, require_model: bool) -> Any:
    try:
        return LanguageModelGateway(config.model)
    except GatewayInitError as exc:
        if require_model:
            raise
        logger.debug("runtime.model_unavailable", reason=str(exc))
        return _UnconfiguredGateway(str(exc))


def build_runtime(
    config: Optional[ConciergeConfig] = None,
    gateway: Optional[Any] = None,
    embedder: Optional[Embedder] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    require_model: bool = True,
) -> Runtime:
    """
    Wire every component. ``gateway``, ``embedder`` and ``transport`` replace
    the provider SDK, the embedding model and the network respectively.

    With ``require_model=False`` a missing API key is tolerated: the runtime
    can still manage tasks, instructions, links and the index, but any model
    call raises ``GatewayInitError``.
    """
    config = config or ConciergeConfig()
    if gateway is None:
        gateway = _build_gateway(config, require_model)

    store = DataStore(config.storage.db_path)
    store.initialize()
    event_bus = create_event_bus()

    tasks = TaskStore(
        store,
        strict_transitions=config.orchestration.strict_transitions,
        event_bus=event_bus,
    )
    instructions = InstructionStore(store)
    conversation = ConversationLog(store)
    credentials = CredentialStore(store)

    caps = config.capabilities
    mail = MailClient(credentials, caps.mail_base_url, caps.request_timeout_seconds, transport)
    calendar = CalendarClient(
        credentials, caps.calendar_base_url, caps.request_timeout_seconds, transport
    )
    crm = CrmClient(credentials, caps.crm_base_url, caps.request_timeout_seconds, transport)

    index = RetrievalIndex(
        store,
        embedder or ChromaEmbedder(config.retrieval.embedding_model),
        config.retrieval,
    )
    ingestor = ContentIngestor(index, mail=mail, calendar=calendar, crm=crm)

    registry = ToolRegistry()
    register_builtin_tools(registry)
    wire_builtin_handlers(
        registry,
        ToolServices(
            tasks=tasks,
            instructions=instructions,
            index=index,
            mail=mail,
            calendar=calendar,
            crm=crm,
            default_search_limit=config.retrieval.default_search_limit,
            max_results=caps.max_results,
        ),
    )
    executor = ToolExecutor(
        registry,
        default_timeout=config.loop.tool_default_timeout,
        max_output_length=config.loop.tool_max_output_length,
    )
    loop = AgenticLoop(
        gateway,
        executor,
        max_iterations=config.loop.max_iterations,
        concurrent_tool_calls=config.loop.concurrent_tool_calls,
    )
    assistant = Assistant(
        loop,
        registry,
        conversation,
        index=index,
        event_bus=event_bus,
        model_config=config.model,
        loop_config=config.loop,
        retrieval_config=config.retrieval,
    )
    evaluator = InstructionEvaluator(
        assistant, instructions, temperature=config.model.orchestration_temperature
    )
    driver = OrchestrationDriver(
        assistant,
        tasks,
        credentials,
        mail=mail,
        evaluator=evaluator,
        event_bus=event_bus,
        config=config.orchestration,
        temperature=config.model.orchestration_temperature,
    )

    logger.info("runtime.built", db=str(store.path), tools=registry.count)
    return Runtime(
        config=config,
        store=store,
        event_bus=event_bus,
        tasks=tasks,
        instructions=instructions,
        conversation=conversation,
        credentials=credentials,
        index=index,
        ingestor=ingestor,
        mail=mail,
        calendar=calendar,
        crm=crm,
        registry=registry,
        executor=executor,
        loop=loop,
        assistant=assistant,
        evaluator=evaluator,
        driver=driver,
    )
