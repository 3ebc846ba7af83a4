"""会话存储：所有会话的唯一所有者与修改入口。

ConversationStore 以会话 ID 为键，每次修改都是对整条 Conversation 记录的
读-改-写替换，外部既不持有也拿不到可变引用。这样在 asyncio 的单线程
协作式调度下，流式写入与用户触发的新建/删除/切换交错执行也不会丢失更新，
无需加锁。

持久化由外部协作方负责，这里只定义其加载/保存协议 ConversationRepository。
"""

from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Set

from chat_core.domain.exceptions import ConversationNotFound
from chat_core.domain.models import (
    DEFAULT_TITLE,
    Conversation,
    Persona,
    Role,
    Turn,
    derive_title,
    new_conversation_id,
)
from chat_core.infrastructure.logging.logger import logger


@dataclass(frozen=True)
class StoreEvent:
    """存储变更通知。

    kind 取值：created / selected / deleted / cleared / turns_appended /
    turn_updated / title_assigned / generating_changed / loaded。
    """

    kind: str
    conversation_id: Optional[str] = None


StoreListener = Callable[[StoreEvent], None]


class ConversationRepository(Protocol):
    """持久化协作方协议：负责序列化全部会话、人设与连接偏好。"""

    def load_conversations(self) -> List[Conversation]:
        ...

    def save_conversations(self, conversations: List[Conversation]) -> None:
        ...

    def load_personas(self) -> Optional[List[Persona]]:
        ...

    def save_personas(self, personas: List[Persona]) -> None:
        ...

    def load_preferences(self) -> Dict[str, Any]:
        ...

    def save_preferences(self, preferences: Dict[str, Any]) -> None:
        ...


class ConversationStore:
    def __init__(self, conversations: Iterable[Conversation] = ()):
        self._items: Dict[str, Conversation] = {}
        # 会话展示顺序，新建的排在最前
        self._order: List[str] = []
        self._generating: Set[str] = set()
        self._active_id: Optional[str] = None
        self._listeners: List[StoreListener] = []
        for conv in conversations:
            self._items[conv.id] = conv
            self._order.append(conv.id)

    # ---- 查询 ----

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    def get(self, conversation_id: str) -> Conversation:
        try:
            return self._items[conversation_id]
        except KeyError:
            raise ConversationNotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)

    def exists(self, conversation_id: str) -> bool:
        return conversation_id in self._items

    def list_conversations(self) -> List[Conversation]:
        return [self._items[cid] for cid in self._order]

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._generating

    def __len__(self) -> int:
        return len(self._items)

    # ---- 结构性修改 ----

    def create_conversation(self, select: bool = True) -> Conversation:
        conv = Conversation(id=new_conversation_id(), title=DEFAULT_TITLE)
        self._items[conv.id] = conv
        self._order.insert(0, conv.id)
        self._emit("created", conv.id)
        if select:
            self.select(conv.id)
        return conv

    def select(self, conversation_id: Optional[str]) -> None:
        if conversation_id is not None and conversation_id not in self._items:
            raise ConversationNotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        self._active_id = conversation_id
        self._emit("selected", conversation_id)

    def delete(self, conversation_id: str) -> None:
        """删除会话；若删除的是当前会话，则切换到剩余的第一个会话。

        进行中的生成必须先由 SessionController 取消，见 SessionController.discard。
        """

        if conversation_id not in self._items:
            raise ConversationNotFound(code="CONVERSATION_NOT_FOUND", message=conversation_id, http_status=404)
        del self._items[conversation_id]
        self._order.remove(conversation_id)
        self._generating.discard(conversation_id)
        self._emit("deleted", conversation_id)
        if self._active_id == conversation_id:
            self.select(self._order[0] if self._order else None)

    def clear(self) -> None:
        self._items.clear()
        self._order.clear()
        self._generating.clear()
        self._active_id = None
        self._emit("cleared")

    def load(self, conversations: Iterable[Conversation]) -> None:
        """用外部加载的会话整体替换当前内容，第一个会话成为当前会话。"""

        self._items = {}
        self._order = []
        for conv in conversations:
            if conv.id in self._items:
                continue
            self._items[conv.id] = conv
            self._order.append(conv.id)
        self._generating.clear()
        self._active_id = self._order[0] if self._order else None
        self._emit("loaded")

    # ---- 消息修改 ----

    def begin_exchange(self, conversation_id: str, user_text: str) -> Conversation:
        """原子地追加用户消息与空的助手占位消息。

        会话还没有任何消息时，同时根据用户输入确定标题。
        """

        conv = self.get(conversation_id)
        first_message = not conv.turns
        updated = replace(
            conv,
            title=derive_title(user_text) if first_message else conv.title,
            turns=conv.turns + (Turn(Role.USER, user_text), Turn(Role.ASSISTANT, "")),
        )
        self._items[conversation_id] = updated
        self._emit("turns_appended", conversation_id)
        if first_message:
            self._emit("title_assigned", conversation_id)
        return updated

    def update_last_turn(self, conversation_id: str, text: str) -> bool:
        """整体替换最后一条助手消息的文本。

        会话已被删除或最后一条不是助手消息时不做任何修改，返回 False。
        """

        conv = self._items.get(conversation_id)
        if conv is None or conv.last_turn is None or conv.last_turn.role is not Role.ASSISTANT:
            return False
        if conv.last_turn.text == text:
            return True
        turns = conv.turns[:-1] + (Turn(Role.ASSISTANT, text),)
        self._items[conversation_id] = replace(conv, turns=turns)
        self._emit("turn_updated", conversation_id)
        return True

    def set_generating(self, conversation_id: str, generating: bool) -> None:
        if conversation_id not in self._items:
            return
        if generating == (conversation_id in self._generating):
            return
        if generating:
            self._generating.add(conversation_id)
        else:
            self._generating.discard(conversation_id)
        self._emit("generating_changed", conversation_id)

    # ---- 通知 ----

    def subscribe(self, listener: StoreListener) -> Callable[[], None]:
        """注册变更监听器，返回取消订阅的函数。"""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, kind: str, conversation_id: Optional[str] = None) -> None:
        event = StoreEvent(kind=kind, conversation_id=conversation_id)
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    "Store listener failed",
                    extra={"extra": {"event": kind, "conversation_id": conversation_id, "error": str(e)}},
                )
