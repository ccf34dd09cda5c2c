from __future__ import annotations

from chat_client.interpreter import (
    FrameInterpreter,
    FrameMatcher,
    QuotedTextMatcher,
    StreamSession,
    decode_text,
    default_matchers,
)
from chat_client.models import End, ErrorEvent, StreamFrame, TextDelta


def test_quoted_text_is_json_unescaped():
    interp = FrameInterpreter()
    assert interp.interpret(StreamFrame("0", '"say \\"hi\\"\\nbye"')) == [TextDelta('say "hi"\nbye')]


def test_quoted_text_falls_back_to_quote_replacement():
    # not valid JSON (bad escape), still recovered
    interp = FrameInterpreter()
    assert interp.interpret(StreamFrame("0", '"a \\q \\"b\\""')) == [TextDelta('a \\q "b"')]


def test_sse_frames():
    interp = FrameInterpreter()
    assert interp.interpret(StreamFrame("data", ' {"text": "t"}')) == [TextDelta("t")]
    assert interp.interpret(StreamFrame("data", ' {"content": "c"}')) == [TextDelta("c")]
    assert interp.interpret(StreamFrame("data", ' {"delta": "d"}')) == [TextDelta("d")]
    assert interp.interpret(StreamFrame("data", " [DONE]")) == []
    assert interp.interpret(StreamFrame("data", " {not json")) == []
    assert interp.interpret(StreamFrame("data", ' {"other": 1}')) == []


def test_structured_content_emits_each_text_part_in_order():
    interp = FrameInterpreter()
    frame = StreamFrame(
        "2", '{"content":[{"type":"text","text":"a"},{"type":"image"},{"type":"text","text":"b"}]}'
    )
    assert interp.interpret(frame) == [TextDelta("a"), TextDelta("b")]
    assert interp.interpret(StreamFrame("9", '{"finishReason":"stop"}')) == []


def test_unknown_and_malformed_frames_are_dropped_without_stopping():
    body = '0:"a"\ne:{broken\nf:{"messageId":"x"}\nzzz\n0:"b"\n'
    assert decode_text(body) == ["a", "b"]


def test_text_tags_restrict_quoted_matcher():
    interp = FrameInterpreter(default_matchers(["0"]))
    assert interp.interpret(StreamFrame("3", '"error text"')) == []
    assert interp.interpret(StreamFrame("0", '"ok"')) == [TextDelta("ok")]


def test_failing_matcher_only_loses_its_frame():
    class Exploding(FrameMatcher):
        name = "boom"

        def match(self, frame):
            if frame.raw_payload == "x":
                raise RuntimeError("boom")
            return None

    interp = FrameInterpreter([Exploding(), QuotedTextMatcher()])
    events = interp.interpret_all([StreamFrame("0", "x"), StreamFrame("0", '"fine"')])
    assert events == [TextDelta("fine")]


def test_session_close_and_fail_are_terminal():
    s = StreamSession()
    assert s.feed('0:"x"') == []
    assert s.close() == [TextDelta("x"), End()]
    assert s.finished
    assert s.feed('0:"late"\n') == []
    assert s.fail("too late") == []

    s2 = StreamSession()
    s2.feed('0:"part')
    assert s2.fail("connection reset") == [ErrorEvent("connection reset")]


def test_cancel_discards_partial_frame_and_later_input():
    s = StreamSession()
    assert s.feed('0:"one"\n0:"tw') == [TextDelta("one")]
    s.cancel()
    assert s.cancelled
    assert s.feed('o"\n') == []
    assert s.close() == []
