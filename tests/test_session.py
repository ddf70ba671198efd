"""Tests for the RelaySession state machine.

Covers the end-to-end relay properties:
- Progress monotonicity and the single terminal event
- Chunk-boundary invariance of the emitted events
- Malformed frames being non-fatal
- Frames after [DONE] being ignored with the upstream released
- Rejection, transport failure and in-stream error paths
- Disconnect / early close releasing the upstream
"""

from __future__ import annotations

import asyncio
import json
from contextlib import aclosing
from typing import Any

import aiohttp
import pytest

from sora_relay.core.errors import NO_RESULT_MESSAGE, UpstreamRejected
from sora_relay.core.logging_system import SessionLogger
from sora_relay.streaming.event_emitter import NormalizedEvent
from sora_relay.streaming.session import RelaySession, SessionState


def _sse(obj: dict[str, Any]) -> str:
    """Format object as SSE data line."""
    return f"data: {json.dumps(obj, ensure_ascii=False)}\n\n"


def _progress(text: str) -> str:
    return _sse({"choices": [{"index": 0, "delta": {"reasoning_content": text}}]})


def _content(text: str) -> str:
    return _sse({"choices": [{"index": 0, "delta": {"content": text}}]})


DONE = "data: [DONE]\n\n"


async def _run(session: RelaySession) -> list[NormalizedEvent]:
    return [event async for event in session.events()]


def _session_for(upstream) -> RelaySession:
    return RelaySession(upstream.open, session_id="relay-test")


# -----------------------------------------------------------------------------
# Scenarios
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_progress_then_sentinel_without_content_reports_no_result(fake_upstream_factory) -> None:
    body = (
        _progress("**Video Generation Progress**: 9% (running)")
        + _progress("**Video Generation Progress**: 42% (running)")
        + DONE
    )
    upstream = fake_upstream_factory([body.encode()])
    session = _session_for(upstream)

    events = await _run(session)

    assert events == [
        NormalizedEvent.progress(9),
        NormalizedEvent.progress(42),
        NormalizedEvent.error(NO_RESULT_MESSAGE),
    ]
    assert session.state is SessionState.ERROR
    assert upstream.released


@pytest.mark.asyncio
async def test_fenced_video_tag_resolves_to_result(fake_upstream_factory) -> None:
    body = _content("```html\n<video src=") + _content("'https://cdn.example/a.mp4'>") + _content("\n```") + DONE
    session = _session_for(fake_upstream_factory([body.encode()]))

    events = await _run(session)

    assert events == [NormalizedEvent.result("https://cdn.example/a.mp4")]
    assert session.state is SessionState.DONE
    assert session.terminal_event == events[-1]


@pytest.mark.asyncio
async def test_plain_text_url_resolves_to_result(fake_upstream_factory) -> None:
    body = _content("see https://cdn.") + _content("example/b.mp4 for output") + DONE
    events = await _run(_session_for(fake_upstream_factory([body.encode()])))
    assert events == [NormalizedEvent.result("https://cdn.example/b.mp4")]


@pytest.mark.asyncio
async def test_rejected_upstream_emits_only_error(fake_upstream_factory) -> None:
    rejection = UpstreamRejected(status=500, body='{"error": {"message": "backend overloaded"}}')
    upstream = fake_upstream_factory([], reject=rejection)
    session = _session_for(upstream)

    events = await _run(session)

    assert events == [NormalizedEvent.error("Upstream error (500): backend overloaded")]
    assert session.state is SessionState.ERROR
    assert session.failure is rejection
    assert upstream.released


@pytest.mark.asyncio
async def test_rejected_upstream_with_plain_body_uses_status_summary(fake_upstream_factory) -> None:
    upstream = fake_upstream_factory([], reject=UpstreamRejected(status=503, body="Service Unavailable"))
    events = await _run(_session_for(upstream))
    assert events == [NormalizedEvent.error("Upstream error (503): Service Unavailable")]


@pytest.mark.asyncio
async def test_stream_cut_mid_frame_reports_transport_failure(fake_upstream_factory) -> None:
    body = _progress("Progress: 10%") + 'data: {"choices": [{"delta": {"content": "https://cdn.ex'
    upstream = fake_upstream_factory(
        [body.encode()],
        raise_after=1,
        exception=aiohttp.ClientPayloadError("Response payload is not completed"),
    )
    session = _session_for(upstream)

    events = await _run(session)

    assert events == [
        NormalizedEvent.progress(10),
        NormalizedEvent.error("Upstream connection closed before the stream completed"),
    ]
    assert session.state is SessionState.ERROR
    assert upstream.released


@pytest.mark.asyncio
async def test_malformed_frame_is_skipped(fake_upstream_factory) -> None:
    body = 'data: {"choices": [{"delta": \n\n' + _content("done: https://cdn.example/c.mp4") + DONE
    session = _session_for(fake_upstream_factory([body.encode()]))

    events = await _run(session)

    assert events == [NormalizedEvent.result("https://cdn.example/c.mp4")]
    assert session.interpreter.malformed_count == 1


# -----------------------------------------------------------------------------
# Properties
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_progress_is_monotonic_and_deduplicated(fake_upstream_factory) -> None:
    body = "".join(
        _progress(f"**Video Generation Progress**: {value}% (running)") for value in (5, 5, 30, 12, 30, 31, 100)
    ) + _content("https://cdn.example/m.mp4") + DONE
    events = await _run(_session_for(fake_upstream_factory([body.encode()])))

    percents = [event.percent for event in events if event.type == "progress"]
    assert percents == [5, 30, 31, 100]
    assert [event.type for event in events][-1] == "result"


@pytest.mark.asyncio
async def test_events_are_independent_of_chunk_boundaries(fake_upstream_factory) -> None:
    raw = (
        _progress("**Video Generation Progress**: 7% (running)")
        + _progress("**Video Generation Progress**: 64% (running)")
        + _content("```html\n<video src='https://cdn.example/视频.mp4'>")
        + _content("\n```")
        + DONE
    ).encode("utf-8")
    reference = await _run(_session_for(fake_upstream_factory([raw])))
    assert reference[-1] == NormalizedEvent.result("https://cdn.example/视频.mp4")

    for size in (1, 2, 3, 7, 64):
        chunks = [raw[i : i + size] for i in range(0, len(raw), size)]
        assert await _run(_session_for(fake_upstream_factory(chunks))) == reference, f"chunk size {size}"


@pytest.mark.asyncio
async def test_malformed_frames_do_not_change_outcome(fake_upstream_factory) -> None:
    clean = _progress("Progress: 50%") + _content("https://cdn.example/n.mp4") + DONE
    noisy = "data: {oops\n\n" + _progress("Progress: 50%") + "data: ][\n\n" + _content("https://cdn.example/n.mp4") + DONE

    clean_events = await _run(_session_for(fake_upstream_factory([clean.encode()])))
    noisy_events = await _run(_session_for(fake_upstream_factory([noisy.encode()])))

    assert noisy_events == clean_events


@pytest.mark.asyncio
async def test_frames_after_done_are_ignored_and_upstream_released(fake_upstream_factory) -> None:
    chunks = [
        (_content("https://cdn.example/first.mp4") + DONE).encode(),
        _progress("Progress: 99%").encode(),
        (_content("https://cdn.example/second.mp4") + DONE).encode(),
    ]
    upstream = fake_upstream_factory(chunks)
    session = _session_for(upstream)

    events = await _run(session)

    assert events == [NormalizedEvent.result("https://cdn.example/first.mp4")]
    assert upstream.chunks_read == 1
    assert upstream.released
    assert session.summary()["saw_done_sentinel"] is True


@pytest.mark.asyncio
async def test_physical_end_without_sentinel_finalizes(fake_upstream_factory) -> None:
    body = _content("<video src='https://cdn.example/o.mp4'></video>")
    events = await _run(_session_for(fake_upstream_factory([body.encode()])))
    assert events == [NormalizedEvent.result("https://cdn.example/o.mp4")]


@pytest.mark.asyncio
async def test_in_stream_error_object_ends_session(fake_upstream_factory) -> None:
    body = _progress("Progress: 20%") + _sse({"error": {"message": "content policy violation"}}) + _content("x") + DONE
    upstream = fake_upstream_factory([body.encode()])
    session = _session_for(upstream)

    events = await _run(session)

    assert events == [NormalizedEvent.progress(20), NormalizedEvent.error("content policy violation")]
    assert session.state is SessionState.ERROR
    assert upstream.released


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("exception", "message"),
    [
        (asyncio.TimeoutError(), "Upstream timed out while streaming"),
        (ConnectionResetError("reset by peer"), "Upstream connection reset"),
        (aiohttp.ServerDisconnectedError(), "Upstream server disconnected"),
    ],
)
async def test_transport_failures_become_single_error(fake_upstream_factory, exception, message) -> None:
    upstream = fake_upstream_factory([_progress("Progress: 3%").encode()], raise_after=1, exception=exception)
    events = await _run(_session_for(upstream))
    assert events == [NormalizedEvent.progress(3), NormalizedEvent.error(message)]


@pytest.mark.asyncio
async def test_undecodable_bytes_become_transport_failure(fake_upstream_factory) -> None:
    events = await _run(_session_for(fake_upstream_factory([b"data: \xff\n\n"])))
    assert len(events) == 1
    assert events[0].type == "error"
    assert events[0].message.startswith("Upstream sent undecodable bytes")


# -----------------------------------------------------------------------------
# Lifecycle
# -----------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_events_can_only_be_consumed_once(fake_upstream_factory) -> None:
    session = _session_for(fake_upstream_factory([(_content("https://cdn.example/p.mp4") + DONE).encode()]))
    await _run(session)
    with pytest.raises(RuntimeError):
        await _run(session)


@pytest.mark.asyncio
async def test_illegal_transition_raises(fake_upstream_factory) -> None:
    session = _session_for(fake_upstream_factory([]))
    with pytest.raises(RuntimeError):
        session._transition(SessionState.DONE)
    assert session.state is SessionState.INIT


@pytest.mark.asyncio
async def test_early_close_releases_upstream_and_emits_nothing_more(fake_upstream_factory) -> None:
    chunks = [_progress(f"Progress: {value}%").encode() for value in (10, 20, 30, 40)]
    upstream = fake_upstream_factory(chunks)
    session = _session_for(upstream)

    received: list[NormalizedEvent] = []
    async with aclosing(session.events()) as events:
        async for event in events:
            received.append(event)
            if len(received) == 2:
                break

    assert received == [NormalizedEvent.progress(10), NormalizedEvent.progress(20)]
    assert upstream.released
    assert upstream.chunks_read == 2
    assert session.terminal_event is None


@pytest.mark.asyncio
async def test_cancellation_releases_upstream() -> None:
    class _StallingUpstream:
        released = False

        def open(self):
            upstream = self

            class _Ctx:
                async def __aenter__(self):
                    async def _body():
                        yield _progress("Progress: 1%").encode()
                        await asyncio.Event().wait()

                    return _body()

                async def __aexit__(self, *exc_info):
                    upstream.released = True
                    return False

            return _Ctx()

    upstream = _StallingUpstream()
    session = RelaySession(upstream.open)
    first_event = asyncio.Event()

    async def _consume() -> None:
        async for _event in session.events():
            first_event.set()

    task = asyncio.create_task(_consume())
    await asyncio.wait_for(first_event.wait(), timeout=1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert upstream.released
    assert session.terminal_event is None


@pytest.mark.asyncio
async def test_summary_reports_counters(fake_upstream_factory) -> None:
    body = _progress("Progress: 50%") + "data: nope\n\n" + _content("https://cdn.example/q.mp4") + DONE
    session = _session_for(fake_upstream_factory([body.encode()]))
    await _run(session)

    summary = session.summary()
    assert summary["session_id"] == "relay-test"
    assert summary["state"] == "done"
    assert summary["last_progress"] == 50
    assert summary["frames"] == 4
    assert summary["malformed_frames"] == 1
    assert summary["content_chars"] == len("https://cdn.example/q.mp4")
    assert summary["duration_ms"] is not None


@pytest.mark.asyncio
async def test_failed_session_replays_its_debug_trail(fake_upstream_factory, capsys) -> None:
    SessionLogger.get_logger("sora_relay")
    upstream = fake_upstream_factory([], reject=UpstreamRejected(status=502, body="bad gateway"))
    session = RelaySession(upstream.open, session_id="relay-replay", log_level="WARNING")

    events = await _run(session)

    assert events == [NormalizedEvent.error("Upstream error (502): bad gateway")]
    out = capsys.readouterr().out
    assert "Session relay-replay failed;" in out
    assert "Session relay-replay: init -> error" in out
    assert "Relay session closed:" in out


@pytest.mark.asyncio
async def test_successful_session_does_not_replay(fake_upstream_factory, capsys) -> None:
    SessionLogger.get_logger("sora_relay")
    body = _content("<video src='https://cdn.example/ok.mp4'>") + DONE
    session = RelaySession(fake_upstream_factory([body.encode()]).open, session_id="relay-ok", log_level="WARNING")

    events = await _run(session)

    assert events == [NormalizedEvent.result("https://cdn.example/ok.mp4")]
    assert "below the console level" not in capsys.readouterr().out
