"""会话控制器：按会话编排一次流式生成。

每个会话同一时刻至多一个进行中的生成，由 GenerationToken 标识。流程：

1. start() 在第一个挂起点之前完成所有同步工作：校验、构建上下文、
   原子追加用户消息与助手占位消息、登记令牌、调度后台任务；
2. 后台任务调用传输层、解码事件流，并把每个 CONTENT 事件的累计文本
   整体替换进占位消息；
3. 正常结束（DONE 或流自然结束）、出错、取消时释放令牌。

每次写入前都会检查令牌身份，而不是一个布尔标志：被取消或被新一轮生成
取代的旧任务即使还有迟到的数据，也无法再改动会话。
"""

import asyncio
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from uuid import uuid4

from chat_core.domain.conversation import ConversationStore
from chat_core.domain.exceptions import (
    AlreadyGenerating,
    BusinessError,
    Cancelled,
    ConnectError,
    ValidationError,
)
from chat_core.domain.models import EventKind, OutboundMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import ChatTransport, ResponseStream
from chat_core.config.endpoint import EndpointConfig, normalize_base_url
from chat_core.sessions.context_builder import build_context
from chat_core.streaming.decoder import decode_stream


@dataclass
class ConnectionStatus:
    """test_connection() 的结果。"""

    success: bool
    error: Optional[str] = None


class GenerationToken:
    """一次生成尝试的身份标识。

    - cancelled: 是否已被取消。
    - wait(): 等待后台任务结束（无论成功、失败还是取消都不会抛出）。
    """

    def __init__(self, conversation_id: str):
        self.id = f"gen-{uuid4().hex}"
        self.conversation_id = conversation_id
        self._cancelled = False
        self._handle: Optional[ResponseStream] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def done(self) -> bool:
        return self._task is None or self._task.done()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task

    def attach(self, handle: ResponseStream) -> None:
        self._handle = handle
        if self._cancelled:
            handle.abort()
            raise Cancelled(code="CANCELLED", message=self.conversation_id)

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._handle is not None:
            self._handle.abort()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is not None:
            await asyncio.wait({self._task})


class SessionController:
    def __init__(
        self,
        store: ConversationStore,
        transport: ChatTransport,
        window_limit: int = 10,
        instruction_text: str = "",
    ):
        self._store = store
        self._transport = transport
        self._instruction_text = instruction_text
        self._tokens: Dict[str, GenerationToken] = {}
        self.set_window_limit(window_limit)

    # ---- 配置 ----

    @property
    def endpoint(self) -> EndpointConfig:
        return self._transport.endpoint

    def set_endpoint(self, address: str) -> None:
        base_url = normalize_base_url(address)
        if not base_url:
            raise ValidationError(code="VALIDATION_ERROR", message="Server address must not be empty")
        self._transport.configure(base_url, self.endpoint.model)
        logger.info("Endpoint updated", extra={"extra": {"base_url": base_url}})

    def set_model(self, model_id: str) -> None:
        model = model_id.strip()
        if not model:
            raise ValidationError(code="VALIDATION_ERROR", message="Model id must not be empty")
        self._transport.configure(self.endpoint.base_url, model)
        logger.info("Model updated", extra={"extra": {"model": model}})

    @property
    def instruction_text(self) -> str:
        return self._instruction_text

    def set_persona_instruction(self, text: str) -> None:
        # 只影响之后发起的生成
        self._instruction_text = text or ""

    @property
    def window_limit(self) -> int:
        return self._window_limit

    def set_window_limit(self, window_limit: int) -> None:
        if window_limit < 1:
            raise ValidationError(code="VALIDATION_ERROR", message=f"window_limit must be >= 1, got {window_limit}")
        self._window_limit = window_limit

    # ---- 生成 ----

    def is_generating(self, conversation_id: str) -> bool:
        return conversation_id in self._tokens

    def current_token(self, conversation_id: str) -> Optional[GenerationToken]:
        return self._tokens.get(conversation_id)

    def start(self, conversation_id: str, user_text: str) -> GenerationToken:
        """开始一次生成，必须在运行中的事件循环内调用。

        Raises:
            AlreadyGenerating: 该会话已有进行中的生成。
            ValidationError: 输入为空。
            ConversationNotFound: 会话不存在。
        """

        if conversation_id in self._tokens:
            raise AlreadyGenerating(
                code="ALREADY_GENERATING",
                message=f"Conversation {conversation_id} is already generating",
                http_status=409,
                conversation_id=conversation_id,
            )
        text = (user_text or "").strip()
        if not text:
            raise ValidationError(code="VALIDATION_ERROR", message="Message must not be empty")

        conv = self._store.get(conversation_id)
        # 使用本次调用之前的历史构建上下文
        messages = build_context(conv.turns, self._window_limit, text, self._instruction_text)
        loop = asyncio.get_running_loop()

        token = GenerationToken(conversation_id)
        self._tokens[conversation_id] = token
        self._store.begin_exchange(conversation_id, text)
        self._store.set_generating(conversation_id, True)
        token.bind(loop.create_task(self._run(token, messages)))
        self._log(
            "Generation started",
            token,
            model=self.endpoint.model,
            messages=len(messages),
            window_limit=self._window_limit,
        )
        return token

    async def generate(self, conversation_id: str, user_text: str) -> GenerationToken:
        """start() 并等待本次生成结束。"""

        token = self.start(conversation_id, user_text)
        await token.wait()
        return token

    def cancel(self, conversation_id: str) -> bool:
        """取消进行中的生成，没有进行中的生成时什么也不做。

        占位消息保留取消前最后一次写入的累计文本，不追加任何错误信息。
        """

        token = self._tokens.pop(conversation_id, None)
        if token is None:
            return False
        token.cancel()
        self._store.set_generating(conversation_id, False)
        self._log("Generation cancelled", token)
        return True

    def discard(self, conversation_id: str) -> None:
        """删除会话，并在同一步中取消其进行中的生成。"""

        self.cancel(conversation_id)
        self._store.delete(conversation_id)

    def cancel_all(self) -> List[GenerationToken]:
        tokens = list(self._tokens.values())
        for token in tokens:
            self.cancel(token.conversation_id)
        return tokens

    async def shutdown(self) -> None:
        for token in self.cancel_all():
            await token.wait()

    async def test_connection(self) -> ConnectionStatus:
        try:
            await self._transport.probe()
        except ConnectError as e:
            return ConnectionStatus(success=False, error=e.message)
        return ConnectionStatus(success=True)

    # ---- 后台任务 ----

    async def _run(self, token: GenerationToken, messages: List[OutboundMessage]) -> None:
        cid = token.conversation_id
        handle: Optional[ResponseStream] = None
        try:
            if not self._is_current(token):
                return
            handle = await self._transport.send_chat(messages)
            token.attach(handle)
            async with aclosing(decode_stream(handle.chunks())) as events:
                async for event in events:
                    if not self._is_current(token):
                        break
                    if event.kind is EventKind.CONTENT:
                        # 解码器已经累计，这里整体替换而不是追加
                        self._store.update_last_turn(cid, event.text)
            if self._is_current(token):
                self._log("Generation completed", token)
        except Cancelled:
            self._log("Generation cancelled before streaming", token)
        except asyncio.CancelledError:
            if not token.cancelled:
                raise
        except BusinessError as e:
            self._record_failure(token, e)
        except Exception as e:
            logger.exception(
                "Unexpected generation failure",
                extra={"extra": {"conversation_id": cid, "generation_id": token.id}},
            )
            self._record_failure(token, e)
        finally:
            if handle is not None:
                await handle.aclose()
            self._release(token)

    def _record_failure(self, token: GenerationToken, error: Exception) -> None:
        """把失败信息写进占位消息，已有的部分文本保留在前面。"""

        code = getattr(error, "code", error.__class__.__name__)
        if not self._is_current(token):
            self._log("Dropped failure of stale generation", token, code=code)
            return
        cid = token.conversation_id
        if not self._store.exists(cid):
            return
        last = self._store.get(cid).last_turn
        partial = last.text if last is not None else ""
        message = self.format_failure(error)
        self._store.update_last_turn(cid, f"{partial}\n\n{message}" if partial else message)
        logger.error(
            "Generation failed",
            extra={"extra": {
                "conversation_id": cid,
                "generation_id": token.id,
                "code": code,
                "error": str(error),
            }},
        )

    def format_failure(self, error: Exception) -> str:
        if isinstance(error, ConnectError) and error.unreachable:
            return (
                f"Could not connect to the inference server at {self.endpoint.base_url}. "
                "Please make sure it is running and that the address in settings is correct."
            )
        detail = error.message if isinstance(error, BusinessError) else str(error)
        return f"Sorry, something went wrong: {detail}"

    def _is_current(self, token: GenerationToken) -> bool:
        return self._tokens.get(token.conversation_id) is token and not token.cancelled

    def _release(self, token: GenerationToken) -> None:
        cid = token.conversation_id
        if self._tokens.get(cid) is token:
            del self._tokens[cid]
            self._store.set_generating(cid, False)

    @staticmethod
    def _log(message: str, token: GenerationToken, **fields: Any) -> None:
        payload = {"conversation_id": token.conversation_id, "generation_id": token.id}
        payload.update(fields)
        logger.info(message, extra={"extra": payload})
