from __future__ import annotations

from pathlib import Path
from typing import Any

from openai import AsyncOpenAI

from answerbot.services.errors import GenerationBackendError
from answerbot.services.generator import DEFAULT_INSTRUCTIONS, HistoryTurn


class OpenAIResponsesBackend:
    """Responses API call grounded on a channel's vector store through file_search."""

    def __init__(
        self,
        api_key: str | None,
        model: str,
        timeout_s: float,
        client: Any | None = None,
    ):
        self.model = model
        self.timeout_s = timeout_s
        if client is not None:
            self.client = client
        elif api_key:
            # Single attempt per event; the generator owns the overall deadline too.
            self.client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=timeout_s)
        else:
            self.client = None

    async def generate(
        self,
        instructions: str,
        history: list[HistoryTurn],
        user_text: str,
        corpus_id: str,
        max_output_tokens: int,
    ) -> Any:
        if self.client is None:
            raise GenerationBackendError(
                "OPENAI_API_KEY is not configured.", {"type": "not_configured"}
            )
        return await self.client.responses.create(
            model=self.model,
            instructions=instructions,
            input=build_input(history, user_text),
            tools=[{"type": "file_search", "vector_store_ids": [corpus_id]}],
            max_output_tokens=int(max_output_tokens),
        )

    async def close(self) -> None:
        if self.client is not None and hasattr(self.client, "close"):
            await self.client.close()


def build_input(history: list[HistoryTurn], user_text: str) -> list[dict[str, str]]:
    items = [{"role": turn.role, "content": turn.text} for turn in history if turn.text.strip()]
    items.append({"role": "user", "content": user_text})
    return items


def load_instructions(path: str | Path, logger: Any) -> str:
    target = Path(path)
    try:
        text = target.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        logger.warning("Instructions file not found; using built-in instructions.", path=str(target))
        return DEFAULT_INSTRUCTIONS
    except OSError as exc:
        logger.warning("Failed to read instructions file.", path=str(target), error=str(exc))
        return DEFAULT_INSTRUCTIONS
    return text or DEFAULT_INSTRUCTIONS
