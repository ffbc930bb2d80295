"""Relay runtime assembly."""

from __future__ import annotations

from collections.abc import Callable

from loguru import logger

from ccrelay.actors import AssistantActor, AutoResponderActor, InputRouterActor
from ccrelay.bus import MessageBus
from ccrelay.channels.dispatcher import ShutdownCallback, TurnDispatcher, TurnOutcome
from ccrelay.config import Settings
from ccrelay.engine.client import ClaudeCliClient, QueryEngineClient
from ccrelay.engine.recovery import SessionRecoveryController
from ccrelay.history import SessionHistoryRepository, default_project_dir
from ccrelay.streaming import Renderer, StreamBufferEngine


class RelayRuntime:
    """Wires the bus, the actors, the stream engine and one chat adapter.

    ``adapter_name`` is the bus name of the chat side: stream events are
    addressed to it and routed requests are sent from it.
    """

    def __init__(
        self,
        settings: Settings,
        renderer: Renderer,
        *,
        adapter_name: str = "chat",
        client: QueryEngineClient | None = None,
        history: SessionHistoryRepository | None = None,
        accepts_channel: Callable[[str], bool] | None = None,
        on_shutdown: ShutdownCallback | None = None,
    ) -> None:
        self.settings = settings
        workspace = settings.resolve_workspace()
        self.history = history or SessionHistoryRepository(default_project_dir(workspace))
        self.client = client or ClaudeCliClient(settings.claude_executable, cwd=workspace)
        self.controller = SessionRecoveryController(self.client, settings, history=self.history)

        self.bus = MessageBus()
        self.assistant = AssistantActor(
            self.controller,
            bus=self.bus,
            streaming_enabled=settings.streaming.enabled,
            notify_target=adapter_name,
        )
        self.bus.register(InputRouterActor(command_prefix=settings.command_prefix))
        self.bus.register(AutoResponderActor(template=settings.auto_reply_template))
        self.bus.register(self.assistant)

        self.stream_engine = StreamBufferEngine(
            renderer,
            settings.streaming,
            target=adapter_name,
            accepts_channel=accepts_channel,
        )
        self.bus.add_listener(self.stream_engine.handle_event)
        self.dispatcher = TurnDispatcher(
            self.bus,
            renderer,
            name=adapter_name,
            stream_engine=self.stream_engine,
            on_shutdown=on_shutdown,
            max_chunk_length=settings.streaming.max_chunk_length,
        )

    async def start(self) -> None:
        logger.info(
            "runtime.start model={} workspace={} streaming={}",
            self.settings.model,
            self.settings.resolve_workspace(),
            self.settings.streaming.enabled,
        )
        await self.bus.start_all()

    async def stop(self) -> None:
        self.stream_engine.close()
        self.bus.remove_listener(self.stream_engine.handle_event)
        await self.bus.stop_all()
        logger.info("runtime.stopped")

    async def __aenter__(self) -> RelayRuntime:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def handle_text(self, text: str, *, channel_id: str, author_id: str | None = None) -> TurnOutcome:
        return await self.dispatcher.dispatch(text, channel_id=channel_id, author_id=author_id)
