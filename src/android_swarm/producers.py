"""Producer contracts built on the completion client.

Each producer pairs a request builder with a decoder and a failure policy.
``FailClosed`` producers (planner, coder) raise on any malfunction;
``FailOpen`` producers (critic, verifier) substitute a permissive default so
an unreliable reviewer never halts the pipeline.  The policy is applied in
exactly one place, ``run_with_policy``.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Generic, Literal, Sequence, TypeVar

from pydantic import BaseModel, ValidationError

from .errors import MalformedProducerOutput, PlanValidationError, SwarmError
from .llm import CompletionClient, CompletionResult, ProducerName
from .models import ApiCallRecord, CriticOutput, Issue, Plan, Step, TaskSpecification, VerifierReport
from .planning import parse_plan
from .profile import ANDROID_PROFILE, ProjectProfile
from .prompts import coder_messages, critic_messages, planner_messages, verifier_messages

logger = logging.getLogger(__name__)

T = TypeVar("T")
ModelT = TypeVar("ModelT", bound=BaseModel)

FailureKind = Literal["parse", "validation", "execution"]

_FENCE_RE = re.compile(r"^```[A-Za-z0-9_-]*\s*\n(?P<body>.*)\n```\s*$", re.DOTALL)


# ---------------------------------------------------------------------------
# Decode results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Decoded(Generic[T]):
    value: T


@dataclass(frozen=True)
class DecodeFailure:
    """Structured decode error; ``error`` is what a fail-closed producer raises."""

    kind: FailureKind
    error: SwarmError


def _strip_fence(text: str) -> str:
    stripped = text.strip()
    match = _FENCE_RE.match(stripped)
    return match.group("body") if match else stripped


def decode_json(producer: str, text: str) -> Decoded[Any] | DecodeFailure:
    try:
        return Decoded(json.loads(_strip_fence(text)))
    except json.JSONDecodeError as exc:
        return DecodeFailure("parse", MalformedProducerOutput(producer, f"not valid JSON ({exc})"))


def decode_model(producer: str, text: str, schema: type[ModelT]) -> Decoded[ModelT] | DecodeFailure:
    decoded = decode_json(producer, text)
    if isinstance(decoded, DecodeFailure):
        return decoded
    try:
        return Decoded(schema.model_validate(decoded.value))
    except ValidationError as exc:
        return DecodeFailure(
            "validation",
            MalformedProducerOutput(producer, f"failed {schema.__name__} validation ({exc.error_count()} errors)"),
        )


# ---------------------------------------------------------------------------
# Failure policies
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FailClosed:
    """Any malfunction raises and halts the task."""


@dataclass(frozen=True)
class FailOpen(Generic[T]):
    """Any malfunction yields ``default(kind)`` and the pipeline continues."""

    default: Callable[[FailureKind], T]


FailurePolicy = FailClosed | FailOpen[T]


@dataclass(frozen=True)
class ProducerResult(Generic[T]):
    """Producer value plus the accounting record of the call that made it.

    ``record`` is ``None`` when a fail-open producer's call itself raised; the
    call still counts against the budget with zero tokens.
    """

    value: T
    record: ApiCallRecord | None
    fallback: FailureKind | None = None

    @property
    def prompt_tokens(self) -> int:
        return self.record.prompt_tokens if self.record is not None else 0

    @property
    def completion_tokens(self) -> int:
        return self.record.completion_tokens if self.record is not None else 0


def run_with_policy(
    producer: ProducerName,
    policy: FailurePolicy[T],
    call: Callable[[], CompletionResult],
    decode: Callable[[str], Decoded[T] | DecodeFailure],
) -> ProducerResult[T]:
    """Invoke a producer call and resolve every failure through ``policy``."""
    try:
        completion = call()
    except Exception as exc:
        if isinstance(policy, FailClosed):
            raise
        logger.warning("%s call failed, failing open: %s", producer.capitalize(), exc)
        return ProducerResult(value=policy.default("execution"), record=None, fallback="execution")

    decoded = decode(completion.content)
    if isinstance(decoded, Decoded):
        return ProducerResult(value=decoded.value, record=completion.record)
    if isinstance(policy, FailClosed):
        raise decoded.error
    logger.warning("%s, failing open", decoded.error)
    return ProducerResult(value=policy.default(decoded.kind), record=completion.record, fallback=decoded.kind)


def truncate_utf8(content: str, max_bytes: int) -> tuple[str, bool]:
    """Cut ``content`` to at most ``max_bytes`` UTF-8 bytes without splitting a character."""
    encoded = content.encode("utf-8")
    if len(encoded) <= max_bytes:
        return content, False
    return encoded[:max_bytes].decode("utf-8", errors="ignore"), True


def _critic_default(_kind: FailureKind) -> CriticOutput:
    return CriticOutput.accept()


_VERIFIER_FALLBACK_WARNINGS: dict[FailureKind, str] = {
    "parse": "Verifier output parse error",
    "validation": "Verifier output validation error",
    "execution": "Verifier execution error",
}


def default_verifier_report(kind: FailureKind) -> VerifierReport:
    return VerifierReport(warnings=[_VERIFIER_FALLBACK_WARNINGS[kind]], missing_items=[], quality_score=0.5)


# ---------------------------------------------------------------------------
# Producers
# ---------------------------------------------------------------------------

class Planner:
    policy: FailurePolicy[Plan] = FailClosed()

    def __init__(self, client: CompletionClient, profile: ProjectProfile = ANDROID_PROFILE) -> None:
        self.client = client
        self.profile = profile

    def _decode(self, spec: TaskSpecification, text: str) -> Decoded[Plan] | DecodeFailure:
        decoded = decode_json("planner", text)
        if isinstance(decoded, DecodeFailure):
            return decoded
        try:
            return Decoded(parse_plan(decoded.value, spec, self.profile))
        except PlanValidationError as exc:
            return DecodeFailure("validation", exc)

    def generate_plan(self, task_id: str, spec: TaskSpecification) -> ProducerResult[Plan]:
        messages = planner_messages(spec, self.profile)
        return run_with_policy(
            "planner",
            self.policy,
            lambda: self.client.complete(messages, task_id=task_id, producer="planner"),
            lambda text: self._decode(spec, text),
        )


class Coder:
    policy: FailurePolicy[str] = FailClosed()

    def __init__(
        self,
        client: CompletionClient,
        profile: ProjectProfile = ANDROID_PROFILE,
        *,
        max_file_bytes: int = 50 * 1024,
        max_output_tokens: int = 8_000,
    ) -> None:
        self.client = client
        self.profile = profile
        self.max_file_bytes = max_file_bytes
        self.max_output_tokens = max_output_tokens

    def _decode(self, step: Step, text: str) -> Decoded[str]:
        content, truncated = truncate_utf8(text, self.max_file_bytes)
        if truncated:
            logger.warning(
                "Coder output for %s exceeds %d bytes, truncating",
                step.file_path,
                self.max_file_bytes,
            )
        return Decoded(content)

    def generate_file(
        self,
        task_id: str,
        step: Step,
        spec: TaskSpecification,
        completed_files: Sequence[str],
        prior_issues: Sequence[Issue] | None = None,
    ) -> ProducerResult[str]:
        messages = coder_messages(
            step,
            spec,
            completed_files,
            prior_issues,
            self.profile,
            max_output_tokens=self.max_output_tokens,
        )
        return run_with_policy(
            "coder",
            self.policy,
            lambda: self.client.complete(messages, task_id=task_id, producer="coder"),
            lambda text: self._decode(step, text),
        )


class Critic:
    policy: FailurePolicy[CriticOutput] = FailOpen(_critic_default)

    def __init__(self, client: CompletionClient, profile: ProjectProfile = ANDROID_PROFILE) -> None:
        self.client = client
        self.profile = profile

    def review_file(
        self,
        task_id: str,
        step: Step,
        content: str,
        spec: TaskSpecification,
    ) -> ProducerResult[CriticOutput]:
        messages = critic_messages(step, content, spec, self.profile)
        return run_with_policy(
            "critic",
            self.policy,
            lambda: self.client.complete(messages, task_id=task_id, producer="critic"),
            lambda text: decode_model("critic", text, CriticOutput),
        )


class Verifier:
    policy: FailurePolicy[VerifierReport] = FailOpen(default_verifier_report)

    def __init__(self, client: CompletionClient, profile: ProjectProfile = ANDROID_PROFILE) -> None:
        self.client = client
        self.profile = profile

    def verify_project(
        self,
        task_id: str,
        files: Sequence[str],
        spec: TaskSpecification,
    ) -> ProducerResult[VerifierReport]:
        messages = verifier_messages(files, spec, self.profile)
        return run_with_policy(
            "verifier",
            self.policy,
            lambda: self.client.complete(messages, task_id=task_id, producer="verifier"),
            lambda text: decode_model("verifier", text, VerifierReport),
        )
