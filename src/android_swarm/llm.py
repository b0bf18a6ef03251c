from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, Literal, Protocol, Sequence

import openai
from dotenv import load_dotenv
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .errors import ErrorClassification, PermanentApiError, TransientApiError
from .models import ApiCallRecord
from .settings import RuntimeSettings

logger = logging.getLogger(__name__)

ProducerName = Literal["planner", "coder", "critic", "verifier"]

_RATE_LIMIT_STATUS = 429
_SERVER_ERROR_BACKOFF_SECONDS = 5.0


class SupportsInvoke(Protocol):
    """Protocol for any LangChain-compatible runnable that supports invoke."""

    def invoke(self, input: Any) -> Any:  # noqa: ANN401 - external runnable protocol.
        ...


@dataclass(frozen=True)
class ChatMessage:
    role: Literal["system", "user"]
    content: str


@dataclass(frozen=True)
class CompletionResult:
    """Generated text plus the token accounting every call must yield."""

    content: str
    record: ApiCallRecord

    @property
    def prompt_tokens(self) -> int:
        return self.record.prompt_tokens

    @property
    def completion_tokens(self) -> int:
        return self.record.completion_tokens


def ensure_api_key(repo_root: Path | None = None) -> str:
    """Load KIMI_API_KEY from environment or .env and return it.

    Searches the environment first, then falls back to a ``.env`` file at the
    given ``repo_root`` (or cwd if not specified).

    Raises:
        RuntimeError: If KIMI_API_KEY is unavailable after all sources are checked.
    """
    repo = repo_root if repo_root is not None else Path.cwd()
    env_path = repo / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    key = os.getenv("KIMI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("KIMI_API_KEY environment variable not set")
    return key


def get_chat_model(
    settings: RuntimeSettings,
    *,
    temperature: float | None = None,
    repo_root: Path | None = None,
) -> ChatOpenAI:
    """Construct a ChatOpenAI client for the configured completion service.

    The client's own retry loop is disabled: retry classification belongs to
    ``CompletionClient`` so that every attempt is visible to budget tracking.
    """
    kwargs: dict[str, Any] = {
        "model": settings.model_name,
        "base_url": settings.api_base_url,
        "api_key": ensure_api_key(repo_root=repo_root),
        "timeout": settings.api_timeout_seconds,
        "max_retries": 0,
    }
    if temperature is not None:
        kwargs["temperature"] = temperature
    return ChatOpenAI(**kwargs)


def classify_error(exc: BaseException) -> ErrorClassification:
    """Map a completion-call failure onto its retry classification."""
    if isinstance(exc, (openai.APITimeoutError, TimeoutError)):
        return "timeout"
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        if status_code == _RATE_LIMIT_STATUS:
            return "rate_limit"
        if 500 <= status_code < 600:
            return "server_error"
        if 400 <= status_code < 500:
            return "permanent"
    return "transient"


def _to_langchain_messages(messages: Sequence[ChatMessage]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for message in messages:
        if message.role == "system":
            converted.append(SystemMessage(content=message.content))
        else:
            converted.append(HumanMessage(content=message.content))
    return converted


def _response_text(response: Any) -> str:
    content = getattr(response, "content", response)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [part if isinstance(part, str) else str(part.get("text", "")) for part in content]
        return "".join(parts)
    raise PermanentApiError(
        f"Completion response has unsupported content type {type(content).__name__}",
        classification="permanent",
    )


def _token_usage(response: Any) -> tuple[int, int]:
    usage = getattr(response, "usage_metadata", None)
    if usage:
        prompt_tokens = usage.get("input_tokens")
        completion_tokens = usage.get("output_tokens")
    else:
        metadata = getattr(response, "response_metadata", None) or {}
        token_usage = metadata.get("token_usage") or {}
        prompt_tokens = token_usage.get("prompt_tokens")
        completion_tokens = token_usage.get("completion_tokens")
    if not isinstance(prompt_tokens, int) or not isinstance(completion_tokens, int):
        raise PermanentApiError(
            "Completion response is missing prompt/completion token usage",
            classification="permanent",
        )
    return prompt_tokens, completion_tokens


class CompletionClient:
    """One completion-service round trip per call, with classified retries.

    Attempts are ``1 + max_retries``.  Rate limits back off exponentially,
    server errors back off for a fixed five seconds, timeouts retry at once;
    permanent and unclassified failures propagate immediately.
    """

    def __init__(
        self,
        chat_model: SupportsInvoke,
        *,
        max_retries: int = 3,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.chat_model = chat_model
        self.max_retries = max_retries
        self._sleep = sleep

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "CompletionClient":
        return cls(get_chat_model(settings, repo_root=repo_root), max_retries=settings.max_retries)

    def complete(
        self,
        messages: Sequence[ChatMessage],
        *,
        task_id: str,
        producer: ProducerName,
    ) -> CompletionResult:
        """Send ``messages`` and return content with its token accounting.

        Raises:
            PermanentApiError: On a non-429 4xx response or unusable payload.
            TransientApiError: On an unclassified failure, or once retries
                for rate limits, server errors and timeouts are exhausted.
        """
        payload = _to_langchain_messages(messages)
        attempts = 1 + self.max_retries
        for attempt in range(1, attempts + 1):
            try:
                response = self.chat_model.invoke(payload)
            except Exception as exc:  # noqa: BLE001 - classified below.
                classification = classify_error(exc)
                status_code = getattr(exc, "status_code", None)
                retries_remain = attempt < attempts
                logger.warning(
                    "Completion call failed producer=%s attempt=%d/%d classification=%s: %s",
                    producer,
                    attempt,
                    attempts,
                    classification,
                    exc,
                )
                if classification == "permanent":
                    raise PermanentApiError(
                        f"API error {status_code}: {exc}",
                        classification=classification,
                        status_code=status_code,
                    ) from exc
                if classification == "rate_limit" and retries_remain:
                    self._sleep(float(2 ** (attempt - 1)))
                    continue
                if classification == "server_error" and retries_remain:
                    self._sleep(_SERVER_ERROR_BACKOFF_SECONDS)
                    continue
                if classification == "timeout" and retries_remain:
                    continue
                raise TransientApiError(
                    f"Completion call failed after {attempt} attempt(s): {exc}",
                    classification=classification,
                    status_code=status_code if isinstance(status_code, int) else None,
                ) from exc

            prompt_tokens, completion_tokens = _token_usage(response)
            record = ApiCallRecord(
                task_id=task_id,
                producer=producer,
                prompt_tokens=prompt_tokens,
                completion_tokens=completion_tokens,
                timestamp=datetime.now(UTC),
            )
            logger.debug(
                "Completion call succeeded producer=%s prompt_tokens=%d completion_tokens=%d",
                producer,
                prompt_tokens,
                completion_tokens,
            )
            return CompletionResult(content=_response_text(response), record=record)

        # Unreachable: the final attempt either returns or raises.
        raise TransientApiError("Max retries exceeded", classification="transient")
