import asyncio
import json

import pytest

from chat_core.domain.exceptions import ServerStreamError
from chat_core.domain.models import EventKind
from chat_core.streaming.decoder import StreamDecoder, decode_stream


def _line(content=None, done=False):
    obj = {"model": "phi3:3.8b", "created_at": "2024-01-01T00:00:00Z", "done": done}
    if content is not None:
        obj["message"] = {"role": "assistant", "content": content}
    return json.dumps(obj, ensure_ascii=False) + "\n"


WIRE = (_line("Hi") + _line(" there, ") + _line("café ☕") + _line("", done=True)).encode("utf-8")


async def _aiter(chunks):
    for chunk in chunks:
        yield chunk


def _collect(chunks):
    async def main():
        return [e async for e in decode_stream(_aiter(chunks))]

    return asyncio.run(main())


def test_cumulative_text_scenario():
    lines = [
        '{"message":{"content":"Hi"},"done":false}\n',
        '{"message":{"content":" there"},"done":false}\n',
        '{"done":true}\n',
    ]
    events = _collect(lines)
    assert [e.kind for e in events] == [EventKind.CONTENT, EventKind.CONTENT, EventKind.DONE]
    assert events[0].text == "Hi"
    assert events[1].text == "Hi there"


def test_chunk_boundary_invariance():
    expected = "Hi there, café ☕"
    whole = _collect([WIRE])
    assert whole[-2].text == expected
    for size in (1, 2, 3, 5, 7, 13):
        parts = [WIRE[i:i + size] for i in range(0, len(WIRE), size)]
        events = _collect(parts)
        contents = [e for e in events if e.kind is EventKind.CONTENT]
        assert contents[-1].text == expected
        assert events[-1].kind is EventKind.DONE


def test_several_lines_in_one_read_and_partial_tail():
    decoder = StreamDecoder()
    events = decoder.feed(_line("a") + _line("b") + '{"message": {"content": "c"')
    assert [e.text for e in events] == ["a", "ab"]
    events = decoder.feed('}, "done": false}\n')
    assert [e.text for e in events] == ["abc"]


def test_stream_without_done_ends_quietly():
    events = _collect([_line("partial"), _line(" answer")])
    assert [e.kind for e in events] == [EventKind.CONTENT, EventKind.CONTENT]
    assert events[-1].text == "partial answer"


def test_final_unterminated_line_is_flushed():
    events = _collect([_line("x"), '{"message": {"content": "y"}, "done": true}'])
    assert events[-2].text == "xy"
    assert events[-1].kind is EventKind.DONE


def test_malformed_line_is_skipped():
    decoder = StreamDecoder()
    events = decoder.feed(_line("one") + "not json at all\n" + "[1, 2]\n" + _line(" two"))
    assert [e.text for e in events] == ["one", "one two"]
    assert decoder.skipped_lines == 2


def test_input_after_done_is_ignored():
    reads = []

    async def source():
        for chunk in (_line("a"), _line(None, done=True), _line("never")):
            reads.append(chunk)
            yield chunk

    async def main():
        return [e async for e in decode_stream(source())]

    events = asyncio.run(main())
    assert events[-1].kind is EventKind.DONE
    assert events[-2].text == "a"
    assert len(reads) == 2


def test_error_line_raises():
    decoder = StreamDecoder()
    with pytest.raises(ServerStreamError) as exc:
        decoder.feed('{"error": "model not found"}\n')
    assert exc.value.message == "model not found"


def test_error_after_content_in_same_read_keeps_content():
    decoder = StreamDecoder()
    events = decoder.feed(_line("Hi") + '{"error": "out of memory"}\n' + _line("lost"))
    assert [e.text for e in events] == ["Hi"]
    assert decoder.failed
    with pytest.raises(ServerStreamError) as exc:
        decoder.finish()
    assert exc.value.message == "out of memory"
    assert decoder.text == "Hi"


def test_decode_stream_yields_content_before_error():
    seen = []

    async def main():
        async for event in decode_stream(_aiter([_line("Hi") + '{"error": "boom"}\n'])):
            seen.append(event.text)

    with pytest.raises(ServerStreamError):
        asyncio.run(main())
    assert seen == ["Hi"]


def test_error_in_unterminated_tail_still_raises():
    seen = []

    async def main():
        async for event in decode_stream(_aiter([_line("Hi") + '{"error": "boom"}'])):
            seen.append(event.text)

    with pytest.raises(ServerStreamError):
        asyncio.run(main())
    assert seen == ["Hi"]
