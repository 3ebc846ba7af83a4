"""上下文构建：把会话历史裁剪成一次请求实际发送的消息列表。"""

from typing import List, Optional, Sequence

from chat_core.domain.exceptions import ValidationError
from chat_core.domain.models import OutboundMessage, Role, Turn


def build_context(
    history: Sequence[Turn],
    window_limit: int,
    pending_user_text: Optional[str],
    instruction_text: str = "",
) -> List[OutboundMessage]:
    """构造发送给推理服务的有序消息列表。

    规则：
    1. 先把 pending_user_text 作为用户消息追加到历史副本末尾，再做窗口裁剪，
       因此窗口为 1 时只发送这条新消息。pending_user_text 为 None 表示
       history 已经以新的用户消息结尾。
    2. 长度超过 window_limit 时只保留最近的 window_limit 条，顺序不变。
    3. 去掉末尾文本为空的助手消息（尚未填充的占位消息）。
    4. instruction_text 去掉空白后非空时，在最前面加一条 system 消息。
    """

    if window_limit < 1:
        raise ValidationError(code="VALIDATION_ERROR", message=f"window_limit must be >= 1, got {window_limit}")

    working = list(history)
    if pending_user_text is not None:
        working.append(Turn(Role.USER, pending_user_text))
    if len(working) > window_limit:
        working = working[-window_limit:]
    while working and working[-1].is_empty_assistant:
        working.pop()

    messages: List[OutboundMessage] = []
    if instruction_text and instruction_text.strip():
        messages.append(OutboundMessage(role=Role.SYSTEM, content=instruction_text))
    messages.extend(OutboundMessage(role=t.role, content=t.text) for t in working)
    return messages


def out_of_context_indexes(turn_count: int, window_limit: int) -> List[int]:
    """返回下一次请求中不会再被发送的历史消息下标（最旧的那些）。"""

    if window_limit < 1:
        raise ValidationError(code="VALIDATION_ERROR", message=f"window_limit must be >= 1, got {window_limit}")
    return [i for i in range(turn_count) if turn_count - i > window_limit]
