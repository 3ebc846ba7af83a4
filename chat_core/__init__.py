"""Chat Core 顶层包。

该包提供本地推理服务聊天客户端的核心实现，
包括配置加载、领域模型、传输层、NDJSON 流解码、
上下文构建、会话控制器与持久化存储等能力。
"""

from chat_core.api.service import ChatService, create_service
from chat_core.sessions.controller import SessionController

__all__ = ["ChatService", "SessionController", "create_service"]
