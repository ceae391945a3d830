import json
import os
from pathlib import Path
from typing import Any, Iterable, List
from uuid import uuid4

from streamline_chat.config.settings import settings
from streamline_chat.domain.conversation import Conversation, ConversationStore
from streamline_chat.domain.exceptions import BusinessError
from streamline_chat.infrastructure.logging.logger import logger


class JsonConversationStore(ConversationStore):
    """单键存储：``<root>/<key>.json`` 保存整个会话数组，每次保存整体覆盖。"""

    def __init__(self, root: str | Path | None = None, key: str | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)
        self._key = key or settings.storage_key
        self._path = self._root / f"{self._key}.json"

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> List[Conversation]:
        if not self._path.exists():
            return []
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Failed to parse stored conversations", extra={"extra": {"error": str(e)}})
            return []
        if not isinstance(data, list):
            logger.warning("Stored conversations are not an array, ignored")
            return []
        items: List[Conversation] = []
        for raw in data:
            conv = self._to_conversation(raw)
            if conv is not None:
                items.append(conv)
        return items

    def save(self, conversations: Iterable[Conversation]) -> None:
        payload = [c.to_dict() for c in conversations]
        tmp_path = self._root / f"{self._key}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, self._path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise BusinessError(code="STORE_WRITE_ERROR", message=str(e), http_status=500)

    def delete_conversation(self, conversation_id: str) -> None:
        items = self.load()
        remaining = [c for c in items if c.id != conversation_id]
        if len(remaining) == len(items):
            raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        self.save(remaining)

    def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        """更新会话标题。"""
        items = self.load()
        for conv in items:
            if conv.id == conversation_id:
                conv.title = title
                self.save(items)
                return conv
        raise BusinessError(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)

    @staticmethod
    def _to_conversation(raw: Any) -> Conversation | None:
        if not isinstance(raw, dict):
            return None
        try:
            return Conversation.from_dict(raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping unreadable conversation", extra={"extra": {"error": str(e)}})
            return None
