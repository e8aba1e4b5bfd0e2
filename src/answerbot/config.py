from __future__ import annotations

# pyright: reportUnknownVariableType=false, reportUntypedBaseClass=false, reportUnnecessaryTypeIgnoreComment=false

from dataclasses import dataclass
from pathlib import Path

from pydantic import Field  # pyright: ignore[reportMissingImports]
from pydantic_settings import BaseSettings, SettingsConfigDict  # pyright: ignore[reportMissingImports]

ROOT_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"


class AppEnv(BaseSettings):
    model_config: SettingsConfigDict = SettingsConfigDict(  # pyright: ignore[reportIncompatibleVariableOverride]
        env_file=(str(ROOT_ENV_PATH), ".env"),
        extra="ignore",
    )

    LOG_LEVEL: str = "info"

    DISCORD_BOT_TOKEN: str | None = None
    DISCORD_SEGMENT_LIMIT: int = Field(default=1900, ge=200, le=2000)
    COMMAND_PREFIX: str = "!answerbot"
    ADMIN_USER_IDS: str = ""
    FEEDBACK_EMOJI: str = "👎"
    FEEDBACK_CHANNEL_ID: str | None = None
    THINKING_MESSAGE_ENABLED: bool = True

    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-5-mini"
    OPENAI_TIMEOUT_MS: int = Field(default=30000, gt=0)
    MAX_OUTPUT_TOKENS: int = Field(default=4000, gt=0)
    INSTRUCTIONS_PATH: str = "instructions.md"
    THREAD_CONTEXT_MESSAGES: int = Field(default=10, ge=0)

    AMBIENT_MODE: bool = False
    RESPONSE_COOLDOWN_SECONDS: int = Field(default=300, ge=0)

    ACTIVE_THREAD_TTL_SECONDS: int = Field(default=7200, gt=0)
    ACTIVE_THREAD_SWEEP_SECONDS: int = Field(default=600, gt=0)
    REDIS_URL: str | None = None
    REDIS_KEY_PREFIX: str = "answerbot:"

    PREFERENCES_DIR: str = ".answerbot/preferences"
    PREFERENCES_CHECK_INTERVAL_MS: int = Field(default=5000, ge=0)


@dataclass(frozen=True, slots=True)
class OrchestratorOptions:
    segment_limit: int = 1900
    thinking_message_enabled: bool = True
    thread_context_messages: int = 10
    generation_timeout_s: float = 30.0
    feedback_emoji: str = "👎"
    command_prefix: str = "!answerbot"
    feedback_channel_id: str | None = None


def read_env() -> AppEnv:
    return AppEnv()


def build_orchestrator_options(env: AppEnv) -> OrchestratorOptions:
    return OrchestratorOptions(
        segment_limit=env.DISCORD_SEGMENT_LIMIT,
        thinking_message_enabled=env.THINKING_MESSAGE_ENABLED,
        thread_context_messages=env.THREAD_CONTEXT_MESSAGES,
        generation_timeout_s=env.OPENAI_TIMEOUT_MS / 1000,
        feedback_emoji=env.FEEDBACK_EMOJI,
        command_prefix=env.COMMAND_PREFIX,
        feedback_channel_id=env.FEEDBACK_CHANNEL_ID,
    )


def parse_admin_user_ids(raw: str) -> set[str]:
    return {x.strip() for x in str(raw or "").split(",") if x.strip()}
