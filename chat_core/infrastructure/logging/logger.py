import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from chat_core.config.settings import settings


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("chat_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "chat_core.log", encoding="utf-8")
    fh.setLevel(logging.INFO)

    class JsonFormatter(logging.Formatter):
        def format(self, record: logging.LogRecord) -> str:
            msg = record.getMessage()
            if settings.log_redact_content:
                msg = (msg or "")[:64]
            payload = {
                "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "name": record.name,
                "msg": msg,
            }
            extra = getattr(record, "extra", None)
            if isinstance(extra, dict):
                payload.update(extra)
            if record.exc_info:
                payload["exc"] = self.formatException(record.exc_info)
            return json.dumps(payload, ensure_ascii=False)

    fh.setFormatter(JsonFormatter())
    logger.addHandler(fh)
    return logger


logger = setup_logger()
