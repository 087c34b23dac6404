from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import pytest

from flotilla.executor import (
    CodexExecutor,
    CodexNotFoundError,
    ExecutionRequest,
    Permissions,
    TaskResult,
)
from flotilla.executor.runner import parse_event, serialize_result
from flotilla.executor.utils import sanitize_environment, tail
from flotilla.ratelimit import RateLimitDetector

from fakes import FakeTaskExecutor, ScriptedRun

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh scripts")


def _script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "codex"
    script.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    script.chmod(0o755)
    return script


def _run(executor, request: ExecutionRequest) -> TaskResult:
    async def scenario() -> TaskResult:
        return await executor.invoke(request).result()

    return asyncio.run(scenario())


@posix_only
def test_version_reads_cli_output(tmp_path: Path) -> None:
    executor = CodexExecutor(_script(tmp_path, "echo 'codex-cli 0.0.1'\n"))

    assert asyncio.run(executor.version()) == "codex-cli 0.0.1"


def test_codex_not_found(tmp_path: Path) -> None:
    with pytest.raises(CodexNotFoundError):
        CodexExecutor(tmp_path / "missing")


@posix_only
def test_build_args_orders_flags_before_resume(tmp_path: Path) -> None:
    executor = CodexExecutor(_script(tmp_path, "exit 0\n"), default_model="gpt-test")
    request = ExecutionRequest(
        prompt="do it",
        handle="thread-1",
        permissions=Permissions.READ_ONLY,
        cwd=Path("/work"),
    )

    assert executor.build_args(request) == [
        "exec",
        "--json",
        "--sandbox",
        "read-only",
        "--model",
        "gpt-test",
        "--cd",
        "/work",
        "resume",
        "thread-1",
        "do it",
    ]


@posix_only
def test_streamed_messages_become_output_and_handle(tmp_path: Path) -> None:
    lines = [
        {"type": "thread.started", "thread_id": "thread-42"},
        {"type": "item.completed", "item": {"type": "command_execution", "command": "pytest"}},
        {"type": "item.completed", "item": {"type": "agent_message", "text": "All tests pass."}},
    ]
    body = "".join(f"echo '{json.dumps(line)}'\n" for line in lines)
    executor = CodexExecutor(_script(tmp_path, body))

    async def scenario():
        execution = executor.invoke(ExecutionRequest(prompt="work", cwd=tmp_path))
        kinds = [event.kind async for event in execution.progress()]
        return kinds, await execution.result()

    kinds, result = asyncio.run(scenario())

    assert result.success
    assert result.output == "All tests pass."
    assert result.handle == "thread-42"
    assert kinds == ["thread.started", "tool", "message"]


@posix_only
def test_failed_run_with_throttling_text_is_rate_limited(tmp_path: Path) -> None:
    executor = CodexExecutor(
        _script(tmp_path, "echo 'stream error: 429 Too Many Requests' >&2\nexit 1\n"),
        rate_limit_detector=RateLimitDetector().matches,
    )

    result = _run(executor, ExecutionRequest(prompt="work"))

    assert not result.success
    assert result.rate_limited
    assert "429" in (result.error or "")


@posix_only
def test_rejected_handle_is_reported_invalid(tmp_path: Path) -> None:
    executor = CodexExecutor(_script(tmp_path, "echo 'Error: thread not found' >&2\nexit 1\n"))

    result = _run(executor, ExecutionRequest(prompt="work", handle="thread-stale"))

    assert result.handle_invalid
    assert result.handle is None
    assert not result.rate_limited


def test_parse_event_variants() -> None:
    assert parse_event("plain text").kind == "text"
    assert parse_event("[1, 2]").kind == "text"

    error = parse_event(json.dumps({"type": "error", "message": "boom"}))
    assert (error.kind, error.text) == ("error", "boom")

    started = parse_event(json.dumps({"type": "thread.started", "thread_id": "t-1"}))
    assert started.data["handle"] == "t-1"


def test_fake_executor_replays_script_and_tracks_concurrency() -> None:
    gate = asyncio.Event()
    fake = FakeTaskExecutor(
        [
            ScriptedRun(result=TaskResult(success=True, output="first"), gate=gate, progress=["working"]),
            TaskResult(success=False, error="second failed"),
        ]
    )

    async def scenario():
        first = fake.invoke(ExecutionRequest(prompt="one"))
        second = fake.invoke(ExecutionRequest(prompt="two"))
        failed = await second.result()
        await asyncio.sleep(0)
        gate.set()
        return await first.result(), failed, first.recent_output()

    first, failed, recent = asyncio.run(scenario())

    assert first.output == "first"
    assert failed.error == "second failed"
    assert "working" in recent
    assert fake.max_active == 2
    assert [request.prompt for request in fake.requests] == ["one", "two"]


def test_fake_executor_surfaces_side_effect_errors() -> None:
    def explode(_request: ExecutionRequest) -> None:
        raise OSError("disk full")

    fake = FakeTaskExecutor([ScriptedRun(result=TaskResult(success=True), side_effect=explode)])

    with pytest.raises(OSError):
        _run(fake, ExecutionRequest(prompt="x"))
    assert fake.active == 0


def test_serialize_result() -> None:
    payload = json.loads(serialize_result(TaskResult(success=True, output="ok", handle="t-1")))

    assert payload["handle"] == "t-1"
    assert payload["rate_limited"] is False


def test_sanitize_environment_strips_virtualenv(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "value")

    env = sanitize_environment({"OPENAI_API_KEY": "sk-test"})

    assert "PYTHONPATH" not in env
    assert env["OPENAI_API_KEY"] == "sk-test"
    assert tail("abcdef", 3) == "def"
    assert tail("abc", 0) == ""
