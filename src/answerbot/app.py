from __future__ import annotations

import asyncio
import contextlib

from answerbot.adapters.discord_gateway import DiscordGateway
from answerbot.adapters.openai_backend import OpenAIResponsesBackend, load_instructions
from answerbot.config import AppEnv, build_orchestrator_options, read_env
from answerbot.services.active_threads import ActiveConversationTracker
from answerbot.services.classifier import EventClassifier
from answerbot.services.commands import CommandService
from answerbot.services.cooldown import CooldownEngine
from answerbot.services.generator import ResponseGenerator
from answerbot.services.logger import create_logger
from answerbot.services.orchestrator import Orchestrator
from answerbot.services.preferences import FilePreferencePersistence, PreferenceStore
from answerbot.services.state_store import InMemoryStateStore, RedisStateStore, StateStore


class AnswerBotApp:
    def __init__(self, env: AppEnv | None = None) -> None:
        self.env = env or read_env()
        self.logger = create_logger(self.env.LOG_LEVEL)
        options = build_orchestrator_options(self.env)

        self.state_store: StateStore
        if self.env.REDIS_URL:
            self.state_store = RedisStateStore.from_url(
                self.env.REDIS_URL, key_prefix=self.env.REDIS_KEY_PREFIX
            )
        else:
            self.state_store = InMemoryStateStore()

        self.preferences = PreferenceStore(
            FilePreferencePersistence(self.env.PREFERENCES_DIR),
            logger=self.logger,
            ambient_enabled=self.env.AMBIENT_MODE,
            check_interval_ms=self.env.PREFERENCES_CHECK_INTERVAL_MS,
        )
        self.cooldown = CooldownEngine(
            self.preferences,
            default_cooldown_seconds=self.env.RESPONSE_COOLDOWN_SECONDS,
            logger=self.logger,
        )
        self.active_threads = ActiveConversationTracker(
            self.state_store,
            logger=self.logger,
            ttl_seconds=self.env.ACTIVE_THREAD_TTL_SECONDS,
        )
        self.classifier = EventClassifier(
            self.preferences,
            self.cooldown,
            self.active_threads,
            feedback_emoji=options.feedback_emoji,
        )
        self.backend = OpenAIResponsesBackend(
            api_key=self.env.OPENAI_API_KEY,
            model=self.env.OPENAI_MODEL,
            timeout_s=options.generation_timeout_s,
        )
        self.generator = ResponseGenerator(
            self.backend,
            logger=self.logger,
            instructions=load_instructions(self.env.INSTRUCTIONS_PATH, self.logger),
            max_output_tokens=self.env.MAX_OUTPUT_TOKENS,
            history_limit=options.thread_context_messages,
            timeout_s=options.generation_timeout_s,
        )
        self.discord = DiscordGateway(self.env, self.logger)
        self.orchestrator = Orchestrator(
            self.discord.platform,
            classifier=self.classifier,
            generator=self.generator,
            preferences=self.preferences,
            cooldown=self.cooldown,
            active_threads=self.active_threads,
            logger=self.logger,
            options=options,
        )
        self.commands = CommandService(
            self.preferences,
            default_cooldown_seconds=self.env.RESPONSE_COOLDOWN_SECONDS,
            logger=self.logger,
            command_prefix=options.command_prefix,
        )
        self.discord.attach(self.orchestrator, self.commands)
        self._sweeper: asyncio.Task[None] | None = None

    async def start(self) -> None:
        self.logger.info(
            "Starting answerbot.",
            ambient_mode=self.env.AMBIENT_MODE,
            shared_state=bool(self.env.REDIS_URL),
            model=self.env.OPENAI_MODEL,
        )
        if isinstance(self.state_store, InMemoryStateStore):
            self._sweeper = asyncio.create_task(
                self.active_threads.run_sweeper(self.env.ACTIVE_THREAD_SWEEP_SECONDS)
            )
        await self.discord.start()

    async def stop(self) -> None:
        self.logger.info("Stopping answerbot.", pending_tasks=self.orchestrator.pending_tasks)
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        await self.orchestrator.drain()
        await self.discord.stop()
        if isinstance(self.state_store, RedisStateStore):
            await self.state_store.close()
        await self.backend.close()
