from __future__ import annotations

import json
from typing import Any

import pytest

from sora_relay.streaming.delta_interpreter import DeltaInterpreter, FrameKind, parse_progress


def _chunk(**delta: Any) -> str:
    return json.dumps({"choices": [{"index": 0, "delta": delta}]})


# -----------------------------------------------------------------------------
# parse_progress
# -----------------------------------------------------------------------------


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("**Video Generation Progress**: 42% (running)", 42),
        ("**Video Generation Progress**: 9% (running)", 9),
        ("step 3 of 10, progress 55.7%", 55),
        ("Preparing 12% of assets... Progress: 30%", 30),
        ("rendering 77 %", 77),
        ("Progress: 100% (completed)", 100),
        ("Progress: 0%", 0),
    ],
)
def test_parse_progress_reads_percentages(text: str, expected: int) -> None:
    assert parse_progress(text) == expected


@pytest.mark.parametrize("text", [None, "", "queued", "Progress: 150%", "1500%"])
def test_parse_progress_rejects_non_percentages(text) -> None:
    assert parse_progress(text) is None


# -----------------------------------------------------------------------------
# interpret_payload
# -----------------------------------------------------------------------------


def test_done_sentinel() -> None:
    interpreter = DeltaInterpreter()
    assert interpreter.interpret_payload("[DONE]").kind is FrameKind.DONE


def test_malformed_payload_is_counted_and_not_fatal() -> None:
    interpreter = DeltaInterpreter()
    result = interpreter.interpret_payload('{"choices": [')
    assert result.kind is FrameKind.MALFORMED
    assert result.payload == '{"choices": ['
    assert interpreter.malformed_count == 1

    follow_up = interpreter.interpret_payload(_chunk(content="still fine"))
    assert follow_up.kind is FrameKind.DELTA
    assert follow_up.delta is not None and follow_up.delta.content == "still fine"


def test_delta_with_progress_and_content() -> None:
    interpreter = DeltaInterpreter()
    result = interpreter.interpret_payload(
        _chunk(reasoning_content="**Video Generation Progress**: 42% (running)", content="<video")
    )
    assert result.kind is FrameKind.DELTA
    assert result.delta is not None
    assert result.delta.progress == 42
    assert result.delta.content == "<video"


def test_final_chunk_in_message_field_is_read() -> None:
    interpreter = DeltaInterpreter()
    payload = json.dumps({"choices": [{"message": {"role": "assistant", "content": "https://cdn.example/x.mp4"}}]})
    result = interpreter.interpret_payload(payload)
    assert result.kind is FrameKind.DELTA
    assert result.delta is not None and result.delta.content == "https://cdn.example/x.mp4"


@pytest.mark.parametrize(
    "payload",
    [
        "[1, 2, 3]",
        '"just a string"',
        json.dumps({"choices": []}),
        json.dumps({"choices": [{"delta": {}}]}),
        json.dumps({"choices": [{"delta": {"role": "assistant", "content": ""}}]}),
        json.dumps({"id": "chatcmpl-1", "object": "chat.completion.chunk"}),
    ],
)
def test_payloads_without_usable_fields_are_ignored(payload: str) -> None:
    interpreter = DeltaInterpreter()
    assert interpreter.interpret_payload(payload).kind is FrameKind.IGNORED
    assert interpreter.ignored_count == 1


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        (json.dumps({"error": {"message": "content policy violation", "code": 400}}), "content policy violation"),
        (json.dumps({"error": "quota exceeded"}), "quota exceeded"),
        (json.dumps({"error": {"code": 500}}), "Upstream reported an error"),
    ],
)
def test_in_stream_error_object(payload: str, message: str) -> None:
    result = DeltaInterpreter().interpret_payload(payload)
    assert result.kind is FrameKind.UPSTREAM_ERROR
    assert result.error_message == message


# -----------------------------------------------------------------------------
# interpret_frame
# -----------------------------------------------------------------------------


def test_frame_with_several_data_lines_yields_one_interpretation_each() -> None:
    frame = "\n".join(
        [
            "event: delta",
            "id: 7",
            f"data: {_chunk(content='a')}",
            "data: not-json",
            "data: [DONE]",
        ]
    )
    kinds = [item.kind for item in DeltaInterpreter().interpret_frame(frame)]
    assert kinds == [FrameKind.DELTA, FrameKind.MALFORMED, FrameKind.DONE]


def test_comment_and_metadata_lines_produce_nothing() -> None:
    interpreter = DeltaInterpreter()
    assert interpreter.interpret_frame(": keep-alive") == []
    assert interpreter.interpret("retry: 3000\nevent: ping") == []


def test_data_prefix_without_space() -> None:
    [result] = DeltaInterpreter().interpret_frame("data:[DONE]")
    assert result.kind is FrameKind.DONE
