"""推理服务传输层。

该包下的模块负责：
- 定义传输层抽象接口 (base)。
- 提供 Ollama 兼容服务的具体实现 (ollama_client)。
"""

from typing import Optional

import httpx

from chat_core.config.endpoint import EndpointConfig
from chat_core.providers.base import ChatTransport
from chat_core.providers.ollama_client import OllamaClient


def create_transport(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> ChatTransport:
    """根据配置创建传输层客户端。"""

    config = EndpointConfig(base_url=settings.ollama_base_url, model=settings.ollama_model)
    return OllamaClient(config, transport=transport)
