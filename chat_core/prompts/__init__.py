"""默认人设加载工具。

默认人设保存在同目录下的 personas.yaml 中，每项包含 id、name、
prompt（系统指令）与 placeholder（输入框提示），键名与持久化格式一致。
"""

from pathlib import Path
from typing import List

import yaml

from chat_core.domain.models import Persona


PROMPTS_DIR = Path(__file__).resolve().parent


def load_default_personas() -> List[Persona]:
    """读取内置的默认人设列表。"""

    data = yaml.safe_load((PROMPTS_DIR / "personas.yaml").read_text(encoding="utf-8")) or []
    return [Persona.from_dict(item) for item in data]
