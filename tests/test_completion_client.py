from pathlib import Path
from typing import Any

import pytest
from langchain_core.messages import AIMessage

from android_swarm.errors import PermanentApiError, TransientApiError
from android_swarm.llm import ChatMessage, CompletionClient, classify_error, ensure_api_key

from helpers import ScriptedChatModel, StatusError, reply


MESSAGES = [ChatMessage(role="system", content="You are a test."), ChatMessage(role="user", content="Hello")]


def _client(script: list[Any], sleeps: list[float], max_retries: int = 3) -> tuple[CompletionClient, ScriptedChatModel]:
    model = ScriptedChatModel(script)
    return CompletionClient(model, max_retries=max_retries, sleep=sleeps.append), model


def test_not_found_is_not_retried() -> None:
    sleeps: list[float] = []
    client, model = _client([StatusError(404), reply("unused")], sleeps)
    with pytest.raises(PermanentApiError) as excinfo:
        client.complete(MESSAGES, task_id="task-1", producer="coder")
    assert excinfo.value.status_code == 404
    assert excinfo.value.classification == "permanent"
    assert len(model.calls) == 1
    assert sleeps == []


def test_rate_limits_back_off_exponentially_then_succeed() -> None:
    sleeps: list[float] = []
    client, model = _client(
        [StatusError(429), StatusError(429), StatusError(429), reply("done", prompt_tokens=12, completion_tokens=3)],
        sleeps,
    )
    result = client.complete(MESSAGES, task_id="task-1", producer="planner")
    assert result.content == "done"
    assert (result.prompt_tokens, result.completion_tokens) == (12, 3)
    assert result.record.producer == "planner"
    assert result.record.task_id == "task-1"
    assert len(model.calls) == 4
    assert sleeps == [1.0, 2.0, 4.0]


def test_server_errors_wait_fixed_backoff_and_exhaust() -> None:
    sleeps: list[float] = []
    client, model = _client([StatusError(503)] * 4, sleeps)
    with pytest.raises(TransientApiError) as excinfo:
        client.complete(MESSAGES, task_id="task-1", producer="critic")
    assert excinfo.value.classification == "server_error"
    assert isinstance(excinfo.value.__cause__, StatusError)
    assert len(model.calls) == 4
    assert sleeps == [5.0, 5.0, 5.0]


def test_timeouts_retry_without_sleeping() -> None:
    sleeps: list[float] = []
    client, model = _client([TimeoutError("deadline"), reply("ok")], sleeps)
    assert client.complete(MESSAGES, task_id="task-1", producer="coder").content == "ok"
    assert len(model.calls) == 2
    assert sleeps == []


def test_unclassified_failures_are_transient_and_not_retried() -> None:
    sleeps: list[float] = []
    client, model = _client([ConnectionResetError("reset"), reply("unused")], sleeps)
    with pytest.raises(TransientApiError):
        client.complete(MESSAGES, task_id="task-1", producer="coder")
    assert len(model.calls) == 1


def test_missing_token_usage_is_permanent() -> None:
    client, _ = _client([AIMessage(content="no usage")], [])
    with pytest.raises(PermanentApiError, match="token usage"):
        client.complete(MESSAGES, task_id="task-1", producer="verifier")


def test_response_metadata_token_usage_is_accepted() -> None:
    message = AIMessage(
        content="legacy",
        response_metadata={"token_usage": {"prompt_tokens": 7, "completion_tokens": 2}},
    )
    client, _ = _client([message], [])
    result = client.complete(MESSAGES, task_id="task-1", producer="coder")
    assert (result.prompt_tokens, result.completion_tokens) == (7, 2)


def test_messages_are_sent_in_order() -> None:
    client, model = _client([reply("ok")], [])
    client.complete(MESSAGES, task_id="task-1", producer="coder")
    sent = model.calls[0]
    assert [message.type for message in sent] == ["system", "human"]
    assert sent[1].content == "Hello"


@pytest.mark.parametrize(
    ("exc", "classification"),
    [
        (StatusError(400), "permanent"),
        (StatusError(429), "rate_limit"),
        (StatusError(502), "server_error"),
        (TimeoutError(), "timeout"),
        (RuntimeError("boom"), "transient"),
    ],
)
def test_classify_error(exc: BaseException, classification: str) -> None:
    assert classify_error(exc) == classification


def test_ensure_api_key_reads_dotenv(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    # setenv first so teardown also removes the value load_dotenv writes.
    monkeypatch.setenv("KIMI_API_KEY", "placeholder")
    monkeypatch.delenv("KIMI_API_KEY")
    (tmp_path / ".env").write_text("KIMI_API_KEY=sk-test\n", encoding="utf-8")
    assert ensure_api_key(repo_root=tmp_path) == "sk-test"


def test_ensure_api_key_requires_key(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("KIMI_API_KEY", raising=False)
    with pytest.raises(RuntimeError, match="KIMI_API_KEY environment variable not set"):
        ensure_api_key(repo_root=tmp_path)
