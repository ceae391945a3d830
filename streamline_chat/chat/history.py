"""历史记录规范化。

客户端传来的历史可能混有问候语、空的占位消息或格式错误的条目，
这里把它整理为一个合法的、以 user 开头的对话记录，再交给上游模型。
"""

from typing import Any, List, Mapping

from streamline_chat.domain.models import ROLES, HistoryEntry


def _role_and_content(entry: Any):
    if isinstance(entry, Mapping):
        return entry.get("role"), entry.get("content")
    return getattr(entry, "role", None), getattr(entry, "content", None)


def normalize_history(raw_history: Any) -> List[HistoryEntry]:
    """按顺序执行以下规则：

    1. 丢弃不是 ``{role: user|model, content: str}`` 的条目；
    2. 去掉内容首尾空白，丢弃空内容；
    3. 丢弃第一条 user 消息之前的所有条目（对话不能以 model 开头）；
    4. 其余条目保持原有顺序，不去重也不合并。
    """

    if not isinstance(raw_history, (list, tuple)):
        return []

    normalized: List[HistoryEntry] = []
    started = False
    for entry in raw_history:
        if entry is None:
            continue
        role, content = _role_and_content(entry)
        if role not in ROLES or not isinstance(content, str):
            continue
        text = content.strip()
        if not text:
            continue
        if not started:
            if role != "user":
                continue
            started = True
        normalized.append(HistoryEntry(role=role, content=text))
    return normalized
