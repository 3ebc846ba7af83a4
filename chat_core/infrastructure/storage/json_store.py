import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.conversation import ConversationRepository
from chat_core.domain.exceptions import StoreError
from chat_core.domain.models import Conversation, Persona


CONVERSATIONS_FILE = "conversations.json"
PERSONAS_FILE = "personas.json"
PREFERENCES_FILE = "preferences.json"


class JsonHistoryRepository(ConversationRepository):
    """把会话、人设和连接偏好分别保存为存储根目录下的 JSON 文件。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def load_conversations(self) -> List[Conversation]:
        data = self._read(CONVERSATIONS_FILE)
        if data is None:
            return []
        if not isinstance(data, list):
            raise StoreError(code="STORE_READ_ERROR", message=f"{CONVERSATIONS_FILE} is not a list")
        try:
            return [Conversation.from_dict(item) for item in data]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def save_conversations(self, conversations: List[Conversation]) -> None:
        ordered = sorted(conversations, key=lambda c: c.created_at, reverse=True)
        self._write(CONVERSATIONS_FILE, [c.to_dict() for c in ordered])

    def load_personas(self) -> Optional[List[Persona]]:
        """没有保存过人设时返回 None，由调用方回退到默认人设。"""

        data = self._read(PERSONAS_FILE)
        if data is None:
            return None
        if not isinstance(data, list):
            raise StoreError(code="STORE_READ_ERROR", message=f"{PERSONAS_FILE} is not a list")
        try:
            return [Persona.from_dict(item) for item in data]
        except (KeyError, TypeError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e))

    def save_personas(self, personas: List[Persona]) -> None:
        self._write(PERSONAS_FILE, [p.to_dict() for p in personas])

    def load_preferences(self) -> Dict[str, Any]:
        data = self._read(PREFERENCES_FILE)
        return data if isinstance(data, dict) else {}

    def save_preferences(self, preferences: Dict[str, Any]) -> None:
        self._write(PREFERENCES_FILE, dict(preferences))

    def _read(self, name: str) -> Any:
        path = self._root / name
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise StoreError(code="STORE_READ_ERROR", message=str(e), path=str(path))

    def _write(self, name: str, obj: Any) -> None:
        path = self._root / name
        tmp_path = self._root / f"{name}.{uuid4().hex}.tmp"
        try:
            tmp_path.write_text(json.dumps(obj, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise StoreError(code="STORE_WRITE_ERROR", message=str(e), path=str(path))
