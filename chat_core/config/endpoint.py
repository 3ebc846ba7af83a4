"""推理服务端点配置。

EndpointConfig 是一个显式的配置值：启动时构造一次，之后只通过
SessionController.set_endpoint / set_model 更新，不存在进程级的全局实例。"""

from dataclasses import dataclass, replace


DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "phi3:3.8b"

TAGS_PATH = "/api/tags"
CHAT_PATH = "/api/chat"


def normalize_base_url(url: str) -> str:
    """去掉首尾空白以及末尾的所有 "/"。"""

    return url.strip().rstrip("/")


@dataclass(frozen=True)
class EndpointConfig:
    """单个推理服务端点：基础地址 + 模型标识。"""

    base_url: str = DEFAULT_BASE_URL
    model: str = DEFAULT_MODEL

    def __post_init__(self):
        object.__setattr__(self, "base_url", normalize_base_url(self.base_url))

    @property
    def tags_url(self) -> str:
        return f"{self.base_url}{TAGS_PATH}"

    @property
    def chat_url(self) -> str:
        return f"{self.base_url}{CHAT_PATH}"

    def with_base_url(self, base_url: str) -> "EndpointConfig":
        return replace(self, base_url=base_url)

    def with_model(self, model: str) -> "EndpointConfig":
        return replace(self, model=model.strip())
