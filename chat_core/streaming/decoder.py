"""NDJSON 流解码器。

服务端以换行分隔的 JSON 对象流式返回结果，每行形如::

    {"model": "...", "created_at": "...", "message": {"role": "assistant", "content": "Hi"}, "done": false}

但一次读取可能包含零行、半行或多行拼接在一起。StreamDecoder 在多次读取之间
缓存不完整的尾部片段，每个完整行独立解析：

- message.content 追加到累计文本，产出携带累计文本的 CONTENT 事件；
- done 为 true 时产出 DONE，之后忽略所有输入；
- {"error": ...} 行视为服务端在流中途报错，抛出 ServerStreamError；同一次
  读取中位于它之前的内容事件先返回，错误在下一次 feed/finish 时抛出；
- 无法解析的行记录告警后跳过，不影响后续内容。

字节输入使用增量 UTF-8 解码，多字节字符被拆分到两次读取中也能正确还原，
因此同一字节流无论如何切分，最终累计文本都相同。
"""

import codecs
import json
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

from chat_core.domain.exceptions import ServerStreamError, StreamParseError
from chat_core.domain.models import EventKind, InferenceEvent
from chat_core.infrastructure.logging.logger import logger


Chunk = Union[str, bytes]

DONE_EVENT = InferenceEvent(kind=EventKind.DONE)


class StreamDecoder:
    def __init__(self):
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""
        self._text = ""
        self._done = False
        self._error: Optional[ServerStreamError] = None
        self.skipped_lines = 0

    @property
    def text(self) -> str:
        """截至目前的累计文本。"""

        return self._text

    @property
    def done(self) -> bool:
        return self._done

    @property
    def failed(self) -> bool:
        """服务端已报错，错误尚待抛出或已抛出。"""

        return self._error is not None

    def feed(self, chunk: Chunk) -> List[InferenceEvent]:
        """喂入一次读取的数据，返回由此产生的事件。"""

        self._raise_pending()
        if self._done:
            return []
        if isinstance(chunk, bytes):
            chunk = self._utf8.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._consume(lines)

    def finish(self) -> List[InferenceEvent]:
        """传输结束：冲刷解码器并解析最后一个没有换行结尾的片段。"""

        self._raise_pending()
        if self._done:
            return []
        tail = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        return self._consume(tail.split("\n"))

    def _consume(self, lines: List[str]) -> List[InferenceEvent]:
        events: List[InferenceEvent] = []
        for line in lines:
            try:
                events.extend(self._parse_line(line))
            except ServerStreamError as e:
                self._error = e
                self._buffer = ""
                break
            if self._done:
                self._buffer = ""
                break
        if not events:
            self._raise_pending()
        return events

    def _raise_pending(self) -> None:
        if self._error is not None:
            raise self._error

    def _parse_line(self, raw: str) -> List[InferenceEvent]:
        line = raw.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError as e:
            self._skip(line, f"invalid JSON: {e.msg}")
            return []
        if not isinstance(data, dict):
            self._skip(line, "line is not a JSON object")
            return []
        if data.get("error"):
            raise ServerStreamError(code="SERVER_STREAM_ERROR", message=str(data["error"]), http_status=502)

        events: List[InferenceEvent] = []
        message = data.get("message")
        if message is not None:
            content = message.get("content") if isinstance(message, dict) else None
            if not isinstance(message, dict) or (content is not None and not isinstance(content, str)):
                self._skip(line, "unexpected message structure")
                return []
            if content:
                self._text += content
                events.append(InferenceEvent(kind=EventKind.CONTENT, text=self._text))

        if data.get("done") is True:
            self._done = True
            events.append(DONE_EVENT)
        elif message is None:
            self._skip(line, "line carries neither message nor done")
        return events

    def _skip(self, line: str, reason: str) -> None:
        self.skipped_lines += 1
        err = StreamParseError(code="STREAM_PARSE_ERROR", message=reason, line=line[:200])
        logger.warning(
            "Skipped malformed stream line",
            extra={"extra": {"code": err.code, "reason": err.message, **err.extra}},
        )


async def decode_stream(
    chunks: AsyncIterable[Chunk],
    decoder: Optional[StreamDecoder] = None,
) -> AsyncIterator[InferenceEvent]:
    """把原始数据块序列转换为惰性的 InferenceEvent 序列。

    遇到 DONE 后立即结束，不再读取后续数据；数据源耗尽而未见 DONE 时
    序列直接结束，不视为错误。服务端报错时先产出报错之前的事件再抛出。
    """

    decoder = decoder or StreamDecoder()
    async for chunk in chunks:
        for event in decoder.feed(chunk):
            yield event
        if decoder.failed:
            decoder.finish()
        if decoder.done:
            return
    for event in decoder.finish():
        yield event
    if decoder.failed:
        decoder.finish()
