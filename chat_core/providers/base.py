"""传输层抽象接口。

SessionController 不直接依赖 httpx，而是依赖此协议：

- ChatTransport: 探测连通性并发起一次流式聊天请求。
- ResponseStream: 一次成功请求返回的响应句柄，可逐块读取原始文本，也可提前中止。

测试中可以用任意实现了这两个协议的假对象替换 OllamaClient。
"""

from typing import AsyncIterator, Protocol, Sequence, Union

from chat_core.domain.models import OutboundMessage
from chat_core.config.endpoint import EndpointConfig


class ResponseStream(Protocol):
    """流式响应句柄。"""

    def chunks(self) -> AsyncIterator[Union[str, bytes]]:
        """逐块产出原始响应数据，直到耗尽或被 abort()。

        数据块边界任意，可能包含半行或多行，由 StreamDecoder 负责重组。
        """

        ...

    def abort(self) -> None:
        """停止产出后续数据块，可在任意时刻重复调用。"""

        ...

    async def aclose(self) -> None:
        ...


class ChatTransport(Protocol):
    """推理服务客户端协议。"""

    @property
    def endpoint(self) -> EndpointConfig:
        ...

    def configure(self, base_url: str, model: str) -> None:
        ...

    async def probe(self) -> None:
        """服务可用时正常返回，否则抛出 ConnectError。"""

        ...

    async def send_chat(self, messages: Sequence[OutboundMessage]) -> ResponseStream:
        ...
