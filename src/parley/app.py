"""Application orchestrator - wires storage, provider and channels and manages lifecycle."""

from __future__ import annotations

from typing import Iterable, Optional

from parley.ai.providers.base import ProviderSession
from parley.ai.providers.cli import CliProviderSession
from parley.ai.providers.factory import create_provider_session
from parley.ai.tools.base import Tool
from parley.ai.tools.mcp import McpToolSource, mcp_tools
from parley.channels.base import ChannelAdapter
from parley.channels.bot import BotChannelHandler
from parley.channels.interactive import InteractiveChannel
from parley.config import AppConfig
from parley.core.reconciler import ConversationReconciler
from parley.core.session import SessionManager
from parley.core.types import ChannelSource
from parley.log import get_logger
from parley.storage.database import Database
from parley.storage.session_repo import SessionRepository

logger = get_logger(__name__)


class ParleyApp:
    """Top-level application orchestrator.

    The interactive channel and the bot channel share one session store. With
    the CLI provider they also share one provider session, kept on the right
    conversation by a single reconciler. Stateless providers give the bot its
    own session so the two channels never interleave histories.
    """

    def __init__(
        self,
        config: AppConfig,
        tools: Iterable[Tool] = (),
        adapter: Optional[ChannelAdapter] = None,
        mcp_source: Optional[McpToolSource] = None,
    ):
        self.config = config
        self.tools = list(tools)
        if mcp_source is not None:
            self.tools.extend(mcp_tools(mcp_source))

        self.db = Database(config.storage.db_path)
        self.session_repo = SessionRepository(self.db)
        self.session_manager = SessionManager(self.session_repo, config.session)
        self.provider = create_provider_session(config.provider, self.tools)
        self.reconciler: Optional[ConversationReconciler] = None
        if isinstance(self.provider, CliProviderSession):
            self.reconciler = ConversationReconciler(self.provider, self.session_repo)

        self.adapter = adapter
        self.bot_handler: Optional[BotChannelHandler] = None
        self._bot_provider: Optional[ProviderSession] = None
        self._interactive: Optional[InteractiveChannel] = None

    async def start(self) -> None:
        """Initialize and start all components."""
        # 1. Database
        await self.db.initialize()

        # 2. Provider
        await self.provider.initialize()
        logger.info(
            "provider_ready",
            provider=self.provider.provider_type.value,
            model=self.provider.model,
            tools=len(self.provider.tools),
        )

        # 3. Bot channel
        if self.config.bot.enabled and self.adapter is not None:
            try:
                await self._start_bot(self.adapter)
            except Exception as e:
                logger.error("bot_start_failed", channel_id=self.adapter.channel_id, error=str(e))

        logger.info("parley_started", bot=self.bot_handler is not None)

    async def _start_bot(self, adapter: ChannelAdapter) -> None:
        if self.reconciler is not None:
            provider = self.provider
        else:
            provider = create_provider_session(self.config.provider, self.tools)
            provider.source = ChannelSource.BOT
            await provider.initialize()
            self._bot_provider = provider

        self.bot_handler = BotChannelHandler(
            adapter=adapter,
            provider=provider,
            session_manager=self.session_manager,
            config=self.config.bot,
            reconciler=self.reconciler,
        )
        adapter.on_message(self.bot_handler.handle)
        await adapter.start()
        logger.info("bot_started", channel_id=adapter.channel_id, platform=adapter.platform_name)

    def interactive(self) -> InteractiveChannel:
        """The terminal channel, created on first use."""
        if self._interactive is None:
            self._interactive = InteractiveChannel(self.provider, self.session_manager, self.reconciler)
        return self._interactive

    async def stop(self) -> None:
        """Gracefully shut down all components."""
        if self.bot_handler is not None and self.adapter is not None:
            try:
                await self.adapter.stop()
            except Exception as e:
                logger.error("bot_stop_error", error=str(e))

        if self._interactive is not None:
            self._interactive.close()

        for provider in (self._bot_provider, self.provider):
            if provider is None:
                continue
            try:
                await provider.destroy()
            except Exception as e:
                logger.error("provider_destroy_error", error=str(e))

        await self.db.close()
        logger.info("parley_stopped")
