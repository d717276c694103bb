import json
import logging
from pathlib import Path
from datetime import datetime, timezone

from autofix_core.config.settings import settings
from autofix_core.domain.redaction import scrub_secrets


class JsonFormatter(logging.Formatter):
    """一行一个 JSON 对象；消息与 extra 字段都经过凭证脱敏。"""

    def __init__(self, redact_content: bool = False):
        super().__init__()
        self._redact_content = redact_content

    def format(self, record: logging.LogRecord) -> str:
        msg = scrub_secrets(record.getMessage())
        if self._redact_content:
            msg = msg[:64]
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "name": record.name,
            "msg": msg,
        }
        extra = getattr(record, "extra", None)
        if isinstance(extra, dict):
            payload.update(extra)
        return scrub_secrets(json.dumps(payload, ensure_ascii=False, default=str))


def setup_logger() -> logging.Logger:
    logger = logging.getLogger("autofix_core")
    logger.setLevel(logging.INFO)
    if logger.handlers:
        return logger
    log_dir = Path(settings.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(log_dir / "autofix.log", encoding="utf-8")
    fh.setLevel(logging.INFO)
    fh.setFormatter(JsonFormatter(settings.log_redact_content))
    logger.addHandler(fh)
    return logger


logger = setup_logger()
