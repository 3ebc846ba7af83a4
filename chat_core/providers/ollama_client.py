"""Ollama 推理服务适配器。

本模块负责：

1. 维护当前端点配置（基础地址 + 模型）。
2. 通过 GET /api/tags 探测服务是否可用。
3. 发起 POST /api/chat 流式请求，并把网络/HTTP 错误统一转换为 ConnectError。
4. 返回一个可逐块读取、可提前中止的响应句柄。

响应内容的解析交给 chat_core.streaming.decoder，这里只搬运原始字节。
核心层不设置任何超时，挂起的请求只能通过显式取消结束。
"""

import asyncio
from typing import AsyncIterator, Dict, Optional, Sequence

import httpx

from chat_core.domain.exceptions import ConnectError, StreamInterruptedError
from chat_core.domain.models import OutboundMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.config.endpoint import EndpointConfig


JSON_HEADERS = {"Content-Type": "application/json"}


def unreachable_message(base_url: str) -> str:
    return (
        f"Could not reach the server at {base_url}. "
        "Check the URL and ensure the server is running."
    )


class OllamaResponseStream:
    """一次成功的流式响应。

    - chunks(): 逐块产出原始字节。
    - abort(): 标记中止，之后不再产出任何数据块。
    - aclose(): 释放底层连接与客户端。
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response):
        self._client = client
        self._response = response
        self._aborted = False
        self._closed = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    async def chunks(self) -> AsyncIterator[bytes]:
        if self._aborted:
            return
        try:
            async for chunk in self._response.aiter_bytes():
                if self._aborted:
                    break
                if chunk:
                    yield chunk
        except (httpx.HTTPError, httpx.StreamError) as e:
            if self._aborted:
                return
            raise StreamInterruptedError(
                code="STREAM_INTERRUPTED",
                message=str(e) or e.__class__.__name__,
                http_status=502,
            )

    def abort(self) -> None:
        self._aborted = True

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()

    async def __aenter__(self) -> "OllamaResponseStream":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


class OllamaClient:
    """Ollama 客户端实现。

    transport 参数仅用于注入 httpx 传输层（例如测试中的 httpx.MockTransport）。
    """

    name = "ollama"

    def __init__(self, config: Optional[EndpointConfig] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._config = config or EndpointConfig()
        self._transport = transport

    @property
    def endpoint(self) -> EndpointConfig:
        return self._config

    def configure(self, base_url: str, model: str) -> None:
        """更新端点配置，纯配置操作，不发起任何请求。"""

        self._config = EndpointConfig(base_url=base_url, model=model.strip())

    async def probe(self) -> None:
        """探测服务是否可用，失败时抛出 ConnectError。"""

        url = self._config.tags_url
        try:
            async with self._new_client() as client:
                resp = await client.get(url, headers=JSON_HEADERS)
        except httpx.RequestError as e:
            raise self._unreachable(e)
        if not resp.is_success:
            raise self._http_error(resp)
        logger.info("Probe succeeded", extra={"extra": {"base_url": self._config.base_url}})

    async def send_chat(self, messages: Sequence[OutboundMessage]) -> OllamaResponseStream:
        """发起流式聊天请求。

        成功时返回 OllamaResponseStream，调用方负责 aclose()；
        失败时已释放所有连接并抛出 ConnectError。
        """

        payload = self._build_payload(messages)
        client = self._new_client()
        request = client.build_request("POST", self._config.chat_url, json=payload, headers=JSON_HEADERS)
        try:
            resp = await client.send(request, stream=True)
        except httpx.RequestError as e:
            await client.aclose()
            raise self._unreachable(e)
        except asyncio.CancelledError:
            await client.aclose()
            raise

        if resp.is_success:
            logger.info(
                "Chat stream opened",
                extra={"extra": {"model": self._config.model, "messages": len(payload["messages"])}},
            )
            return OllamaResponseStream(client, resp)

        try:
            await resp.aread()
            error = self._http_error(resp)
        except httpx.HTTPError:
            error = ConnectError(
                code=ConnectError.HTTP_ERROR,
                message=f"HTTP error! status: {resp.status_code}",
                http_status=resp.status_code,
            )
        finally:
            await resp.aclose()
            await client.aclose()
        raise error

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=None, trust_env=False, transport=self._transport)

    def _build_payload(self, messages: Sequence[OutboundMessage]) -> Dict[str, object]:
        return {
            "model": self._config.model,
            "messages": [m.to_payload() for m in messages],
            "stream": True,
        }

    def _unreachable(self, e: Exception) -> ConnectError:
        logger.warning(
            "Server unreachable",
            extra={"extra": {"base_url": self._config.base_url, "error": str(e)}},
        )
        return ConnectError(
            code=ConnectError.UNREACHABLE,
            message=unreachable_message(self._config.base_url),
            http_status=503,
            base_url=self._config.base_url,
            detail=str(e),
        )

    def _http_error(self, resp: httpx.Response) -> ConnectError:
        """优先使用服务端返回的 {"error": ...}，否则回退到状态码。"""

        message = f"HTTP error! status: {resp.status_code}"
        try:
            body = resp.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("error"):
            message = str(body["error"])
        logger.warning(
            "Server returned error status",
            extra={"extra": {"base_url": self._config.base_url, "status": resp.status_code}},
        )
        return ConnectError(
            code=ConnectError.HTTP_ERROR,
            message=message,
            http_status=resp.status_code,
            base_url=self._config.base_url,
        )
