"""统一的对话与推理事件数据模型。

本模块定义了会话核心在各组件之间共享的标准数据结构：

- Turn: 会话中的一条消息（user / assistant）。
- Conversation: 带标题、有序 Turn 列表和稳定 ID 的会话。
- Persona: 可选的系统指令 + 输入提示。
- OutboundMessage: 实际发送给推理服务的一条消息。
- InferenceEvent: 流解码器产出的离散事件。

Turn 与 Conversation 都是不可变对象，ConversationStore 通过整体替换
记录来完成修改，调用方不会持有可变引用。
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple
from uuid import uuid4


DEFAULT_TITLE = "New Conversation"
TITLE_MAX_CHARS = 40


class Role(str, Enum):
    """消息角色，取值与 Ollama 的 role 字段一致。"""

    USER = "user"
    ASSISTANT = "assistant"
    # 只出现在发送给服务端的消息中，不会存入会话
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: str) -> "Role":
        # 旧版持久化数据中助手角色记为 "model"
        if value == "model":
            return cls.ASSISTANT
        return cls(value)


@dataclass(frozen=True)
class Turn:
    role: Role
    text: str = ""

    @property
    def is_empty_assistant(self) -> bool:
        return self.role is Role.ASSISTANT and not self.text

    def to_dict(self) -> Dict[str, Any]:
        return {"role": self.role.value, "text": self.text}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Turn":
        return cls(role=Role.parse(data["role"]), text=data.get("text") or "")


def derive_title(user_text: str) -> str:
    """根据第一条用户消息生成标题，超过 40 个字符时截断并追加 "..."。"""

    if len(user_text) > TITLE_MAX_CHARS:
        return user_text[:TITLE_MAX_CHARS] + "..."
    return user_text


def new_conversation_id() -> str:
    return f"chat-{uuid4().hex}"


def now_ms() -> float:
    return time.time() * 1000


@dataclass(frozen=True)
class Conversation:
    """一个会话。

    - id: 创建时分配，永不复用。
    - title: 初始为 "New Conversation"，第一条用户消息到达时确定一次，之后不变。
    - turns: 有序消息列表（tuple，保证不可变）。
    - created_at: 创建时间，毫秒级时间戳。
    """

    id: str
    title: str = DEFAULT_TITLE
    turns: Tuple[Turn, ...] = ()
    created_at: float = field(default_factory=now_ms)

    @property
    def last_turn(self) -> Optional[Turn]:
        return self.turns[-1] if self.turns else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "messages": [t.to_dict() for t in self.turns],
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Conversation":
        return cls(
            id=data["id"],
            title=data.get("title") or DEFAULT_TITLE,
            turns=tuple(Turn.from_dict(m) for m in data.get("messages") or []),
            created_at=float(data.get("createdAt") or now_ms()),
        )


@dataclass(frozen=True)
class Persona:
    """一个可选的人设：名称、系统指令与输入框提示。"""

    id: str
    name: str
    instruction_text: str = ""
    input_hint: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "prompt": self.instruction_text,
            "placeholder": self.input_hint,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Persona":
        return cls(
            id=data["id"],
            name=data.get("name") or data["id"],
            instruction_text=data.get("prompt") or "",
            input_hint=data.get("placeholder") or "",
        )


@dataclass(frozen=True)
class OutboundMessage:
    """发送给推理服务的一条消息（GenerationRequest 的元素，不持久化）。"""

    role: Role
    content: str

    def to_payload(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class EventKind(str, Enum):
    CONTENT = "content"
    DONE = "done"


@dataclass(frozen=True)
class InferenceEvent:
    """流解码器产出的事件。

    kind 为 CONTENT 时 text 是截至目前的累计文本（而非本次增量）；
    kind 为 DONE 时表示服务端正常结束。
    """

    kind: EventKind
    text: str = ""
