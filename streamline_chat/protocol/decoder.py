"""把传输层的字节流还原为 chunk 文本序列。

传输层每次读取到的字节块大小任意，可能在帧中间、甚至在一个多字节字符中间断开，
因此这里维护一个不断增长的文本缓冲区：

1. 新字节经增量 UTF-8 解码后追加到缓冲区（先统一换行符）。
2. 在缓冲区中查找帧分隔符，每找到一个完整帧就交给 frames.decode_frame 解码。
3. 不完整的尾部保留到下一次读取。
"""

import codecs
from typing import Iterable, Iterator, Optional, Union

from streamline_chat.chat.cancellation import CancellationToken
from streamline_chat.domain.exceptions import TransportError
from streamline_chat.domain.models import ChunkEvent, CompleteEvent
from streamline_chat.infrastructure.logging.logger import logger
from streamline_chat.protocol.frames import DONE, FRAME_DELIMITER, decode_frame


class _LineEndingNormalizer:
    """把 \\r\\n 与 \\r 统一为 \\n。

    读取边界上的 \\r 先暂存，等下一块到达后再决定它是否属于 \\r\\n。
    """

    def __init__(self) -> None:
        self._pending_cr = False

    def feed(self, text: str, final: bool = False) -> str:
        if self._pending_cr:
            text = "\r" + text
            self._pending_cr = False
        if text.endswith("\r") and not final:
            text = text[:-1]
            self._pending_cr = True
        return text.replace("\r\n", "\n").replace("\r", "\n")


class StreamDecoder:
    """流式响应解码器。

    decode() 返回的是一个惰性、有限、只能消费一次的生成器：

    - 遇到 ``[DONE]`` 哨兵立即结束，缓冲区中剩余的数据直接丢弃；
    - 遇到 error 帧抛出 UpstreamError（由 frames.decode_frame 抛出）；
    - 底层传输在没有哨兵 / 错误帧的情况下结束，抛出 TransportError。
    """

    def __init__(self, encoding: str = "utf-8"):
        self._encoding = encoding

    def decode(
        self,
        byte_stream: Iterable[Union[bytes, str]],
        token: Optional[CancellationToken] = None,
    ) -> Iterator[str]:
        text_decoder = codecs.getincrementaldecoder(self._encoding)(errors="replace")
        newlines = _LineEndingNormalizer()
        buffer = ""
        saw_complete = False
        reads = iter(byte_stream)

        while True:
            # 每次读取前检查取消标记；正在进行中的读取不会被抢占
            if token is not None:
                token.raise_if_cancelled()
            try:
                raw = next(reads)
            except StopIteration:
                break
            text = raw if isinstance(raw, str) else text_decoder.decode(raw)
            buffer += newlines.feed(text)

            while True:
                idx = buffer.find(FRAME_DELIMITER)
                if idx < 0:
                    break
                frame = buffer[:idx]
                buffer = buffer[idx + len(FRAME_DELIMITER):]
                event = decode_frame(frame)
                if event is DONE:
                    return
                if isinstance(event, ChunkEvent):
                    if saw_complete:
                        logger.debug("Ignoring chunk after complete frame")
                    elif event.text:
                        yield event.text
                elif isinstance(event, CompleteEvent):
                    saw_complete = True

        # 传输结束：最后一帧可能缺少结尾空行
        buffer += newlines.feed(text_decoder.decode(b"", final=True), final=True)
        if buffer.strip():
            event = decode_frame(buffer.strip("\n"))
            if event is DONE:
                return
            if isinstance(event, CompleteEvent):
                saw_complete = True
            elif isinstance(event, ChunkEvent) and event.text and not saw_complete:
                yield event.text
        if saw_complete:
            logger.info("Stream completed without end sentinel")
            return
        raise TransportError(code="STREAM_TRUNCATED", message="stream ended unexpectedly", http_status=502)


def decode_stream(
    byte_stream: Iterable[Union[bytes, str]],
    token: Optional[CancellationToken] = None,
) -> Iterator[str]:
    """StreamDecoder().decode 的快捷方式。"""

    return StreamDecoder().decode(byte_stream, token)
