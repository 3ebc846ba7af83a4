"""对外 API 服务模块。

ChatService 是界面协作方调用核心的唯一入口：会话的新建/切换/删除、
发起与取消生成、端点与人设配置、连通性测试；同时订阅 ConversationStore
的变更，在每次变化后把全部会话交给持久化协作方保存。
"""

from typing import List, Optional

from chat_core.config.settings import Settings, settings as default_settings
from chat_core.domain.conversation import ConversationRepository, ConversationStore, StoreEvent
from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import Conversation, Persona
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.json_store import JsonHistoryRepository
from chat_core.prompts import load_default_personas
from chat_core.providers import create_transport
from chat_core.providers.base import ChatTransport
from chat_core.sessions.context_builder import out_of_context_indexes
from chat_core.sessions.controller import ConnectionStatus, GenerationToken, SessionController


# 这些事件不改变需要持久化的内容
_NON_PERSISTED_EVENTS = {"selected", "generating_changed", "loaded"}


class ChatService:
    def __init__(
        self,
        controller: SessionController,
        store: ConversationStore,
        repository: Optional[ConversationRepository] = None,
        personas: Optional[List[Persona]] = None,
    ):
        self._controller = controller
        self._store = store
        self._repository = repository
        self._personas: List[Persona] = []
        self._active_persona: Optional[Persona] = None
        self._set_personas(personas or load_default_personas())
        self._unsubscribe = store.subscribe(self._on_store_event) if repository is not None else None

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def controller(self) -> SessionController:
        return self._controller

    @property
    def personas(self) -> List[Persona]:
        return list(self._personas)

    @property
    def active_persona(self) -> Optional[Persona]:
        return self._active_persona

    # ---- 启动加载 ----

    def load(self) -> None:
        """从持久化协作方加载会话、人设与端点偏好。"""

        if self._repository is None:
            return
        self._controller.cancel_all()
        self._store.load(self._repository.load_conversations())
        self._set_personas(self._repository.load_personas() or load_default_personas())
        prefs = self._repository.load_preferences()
        if prefs.get("base_url"):
            self._controller.set_endpoint(prefs["base_url"])
        if prefs.get("model"):
            self._controller.set_model(prefs["model"])
        logger.info(
            "Loaded chat history",
            extra={"extra": {"conversations": len(self._store), "personas": len(self._personas)}},
        )

    # ---- 会话 ----

    def new_chat(self) -> Conversation:
        return self._store.create_conversation()

    def select_chat(self, conversation_id: Optional[str]) -> None:
        self._store.select(conversation_id)

    def delete_chat(self, conversation_id: str) -> None:
        self._controller.discard(conversation_id)

    def clear_history(self) -> None:
        self._controller.cancel_all()
        self._store.clear()

    def out_of_context(self, conversation_id: str) -> List[int]:
        """当前会话中已经超出上下文窗口、不会再发送的消息下标。"""

        conv = self._store.get(conversation_id)
        return out_of_context_indexes(len(conv.turns), self._controller.window_limit)

    # ---- 生成 ----

    def start_generation(self, conversation_id: Optional[str], text: str) -> GenerationToken:
        """发起生成；未指定会话且没有当前会话时先新建一个。"""

        if not (text or "").strip():
            raise ValidationError(code="VALIDATION_ERROR", message="Message must not be empty")
        cid = conversation_id or self._store.active_id
        if cid is None:
            cid = self._store.create_conversation().id
        return self._controller.start(cid, text)

    def cancel_generation(self, conversation_id: Optional[str] = None) -> bool:
        cid = conversation_id or self._store.active_id
        if cid is None:
            return False
        return self._controller.cancel(cid)

    async def test_connection(self) -> ConnectionStatus:
        return await self._controller.test_connection()

    # ---- 端点与人设 ----

    def set_endpoint(self, address: str) -> None:
        self._controller.set_endpoint(address)

    def set_model(self, model_id: str) -> None:
        self._controller.set_model(model_id)

    def save_settings(self, address: str, model_id: str) -> None:
        """更新端点与模型，并交给持久化协作方保存。"""

        self._controller.set_endpoint(address)
        self._controller.set_model(model_id)
        if self._repository is not None:
            endpoint = self._controller.endpoint
            self._repository.save_preferences({"base_url": endpoint.base_url, "model": endpoint.model})

    def set_persona_instruction(self, text: str) -> None:
        self._controller.set_persona_instruction(text)

    def select_persona(self, persona_id: str) -> Persona:
        for persona in self._personas:
            if persona.id == persona_id:
                self._activate(persona)
                return persona
        raise ValidationError(code="VALIDATION_ERROR", message=f"Unknown persona: {persona_id!r}")

    def save_personas(self, personas: List[Persona]) -> None:
        """替换人设列表。

        当前人设仍存在时按 id 同步为新版本，否则回退到列表中的第一个，
        列表为空时回退到默认人设。
        """

        self._set_personas(personas)
        if self._repository is not None:
            self._repository.save_personas(self._personas)

    async def aclose(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        await self._controller.shutdown()

    def _set_personas(self, personas: List[Persona]) -> None:
        self._personas = list(personas)
        current_id = self._active_persona.id if self._active_persona else None
        updated = next((p for p in self._personas if p.id == current_id), None)
        if updated is None:
            updated = self._personas[0] if self._personas else load_default_personas()[0]
        self._activate(updated)

    def _activate(self, persona: Persona) -> None:
        self._active_persona = persona
        self._controller.set_persona_instruction(persona.instruction_text)

    def _on_store_event(self, event: StoreEvent) -> None:
        if event.kind in _NON_PERSISTED_EVENTS:
            return
        self._repository.save_conversations(self._store.list_conversations())


def create_service(
    settings: Optional[Settings] = None,
    transport: Optional[ChatTransport] = None,
    repository: Optional[ConversationRepository] = None,
) -> ChatService:
    """按配置组装默认的 ChatService（不缓存，不存在全局单例）。"""

    settings = settings or default_settings
    store = ConversationStore()
    controller = SessionController(
        store=store,
        transport=transport or create_transport(settings),
        window_limit=settings.context_limit,
    )
    return ChatService(
        controller=controller,
        store=store,
        repository=repository or JsonHistoryRepository(root=settings.storage_root),
    )
