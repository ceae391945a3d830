"""流式协议的帧编解码。

一帧 = 若干 ``data:`` 行 + 一个空行分隔符::

    data: {"type":"chunk","text":"Hel"}\\n\\n
    data: {"type":"complete"}\\n\\n
    data: [DONE]\\n\\n

多行 payload 会按 ``data:`` 前缀重新拼接后再做 JSON 解析；
``[DONE]`` 是保留的结束哨兵，不走 JSON 解析。
"""

import json
import logging
from typing import Optional, Union

from streamline_chat.domain.exceptions import UpstreamError
from streamline_chat.domain.models import ChunkEvent, CompleteEvent, ErrorEvent, StreamEvent
from streamline_chat.infrastructure.logging.logger import logger


FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"
DONE_TOKEN = "[DONE]"


class _Done:
    """结束哨兵（单例）。"""

    _instance: Optional["_Done"] = None

    def __new__(cls) -> "_Done":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "DONE"


DONE = _Done()

DecodedFrame = Union[StreamEvent, _Done, None]


def encode_event(event: StreamEvent) -> str:
    """把 StreamEvent 编码为一个完整的帧（含结尾空行）。"""

    if isinstance(event, ChunkEvent):
        payload = {"type": "chunk", "text": event.text}
    elif isinstance(event, CompleteEvent):
        payload = {"type": "complete"}
    elif isinstance(event, ErrorEvent):
        payload = {"type": "error", "message": event.message}
    else:
        raise TypeError(f"not a stream event: {event!r}")
    return f"{DATA_PREFIX} {json.dumps(payload, ensure_ascii=False)}{FRAME_DELIMITER}"


def encode_done() -> str:
    return f"{DATA_PREFIX} {DONE_TOKEN}{FRAME_DELIMITER}"


def _join_data_lines(frame: str) -> Optional[str]:
    lines = []
    for line in frame.split("\n"):
        if not line.startswith(DATA_PREFIX):
            # 注释行（":" 开头）与 event:/id: 等字段忽略
            continue
        value = line[len(DATA_PREFIX):]
        if value.startswith(" "):
            value = value[1:]
        lines.append(value)
    if not lines:
        return None
    return "\n".join(lines)


def decode_frame(frame: str) -> DecodedFrame:
    """解码一个帧（不含分隔空行）。

    Returns:
        StreamEvent、DONE 哨兵，或 None（空帧 / 损坏帧 / 未知类型，调用方跳过即可）。

    Raises:
        UpstreamError: 帧内容为 error 事件。
    """

    data = _join_data_lines(frame)
    if data is None:
        return None
    if data.strip() == DONE_TOKEN:
        return DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        logger.debug("Skipping malformed frame", extra={"extra": {"frame": data[:200]}})
        return None
    if not isinstance(payload, dict):
        return None

    kind = payload.get("type")
    if kind == "chunk":
        text = payload.get("text")
        return ChunkEvent(text=text) if isinstance(text, str) else None
    if kind == "complete":
        return CompleteEvent()
    if kind == "error":
        message = payload.get("message")
        if not isinstance(message, str) or not message:
            message = "Upstream reported an error"
        raise UpstreamError(code="UPSTREAM_ERROR", message=message, http_status=502)
    logger.debug("Skipping frame with unknown type", extra={"extra": {"type": kind}})
    return None
