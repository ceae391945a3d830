"""统一的消息、流事件与请求结果数据模型。

本模块定义了客户端各组件之间共享的标准数据结构：

- Message: 会话中的一条消息（user / model）。
- HistoryEntry: 随新请求一起发送给上游的历史条目。
- ChunkEvent / CompleteEvent / ErrorEvent: 流式协议中的事件。
- Finalized / Cancelled / Failed: 一次请求结束（settle）后的结果。

传输层、解码器、编排器与 Reconciler 都只依赖这些模型。
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from streamline_chat.chat.cancellation import CancellationToken


# 消息角色（与上游协议中的 role 字段对应）
Role = Literal["user", "model"]
MessageStatus = Literal["sending", "delivered", "error"]
ROLES = ("user", "model")


@dataclass
class Message:
    """一条会话消息。

    - id: 会话内唯一且稳定的标识。
    - content: 文本内容；流式生成期间只追加，不改写。
    - timestamp: 毫秒级时间戳，可选。
    - status: sending（占位中）/ delivered / error，可选。
    """

    id: str
    role: Role
    content: str
    timestamp: Optional[int] = None
    status: Optional[MessageStatus] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "role": self.role, "content": self.content}
        if self.timestamp is not None:
            data["timestamp"] = self.timestamp
        if self.status is not None:
            data["status"] = self.status
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        role = data["role"]
        if role not in ROLES:
            raise ValueError(f"unknown role: {role!r}")
        content = data.get("content")
        if not isinstance(content, str):
            raise ValueError("message content must be a string")
        timestamp = data.get("timestamp")
        return cls(
            id=str(data["id"]),
            role=role,
            content=content,
            timestamp=int(timestamp) if timestamp is not None else None,
            status=data.get("status"),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """发给上游模型的一条历史记录（已规范化）。"""

    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ChunkEvent:
    """一段增量文本。"""

    text: str


@dataclass(frozen=True)
class CompleteEvent:
    """流正常结束。"""


@dataclass(frozen=True)
class ErrorEvent:
    """上游报告的错误，终止整个流。"""

    message: str


StreamEvent = Union[ChunkEvent, CompleteEvent, ErrorEvent]


# 失败分类（Failed.error_kind）
ErrorKind = Literal["transport", "upstream"]


@dataclass(frozen=True)
class Finalized:
    final_text: str


@dataclass(frozen=True)
class Cancelled:
    partial_text: str = ""


@dataclass(frozen=True)
class Failed:
    error_kind: ErrorKind
    message: str
    # 失败前已经累计到的文本；会话中只保留 upstream 失败的部分文本
    partial_text: str = ""


Outcome = Union[Finalized, Cancelled, Failed]


def outcome_text(outcome: Outcome) -> str:
    """返回结果携带的（部分）文本。"""

    if isinstance(outcome, Finalized):
        return outcome.final_text
    return outcome.partial_text


@dataclass
class RequestContext:
    """单次在途请求的临时上下文，不持久化。"""

    conversation_id: str
    token: "CancellationToken"
    accumulated: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "".join(self.accumulated)
