"""凭证脱敏。

上游错误文本、日志消息在输出之前都要经过 scrub_secrets，
保证 API Key 不会原样出现在异常或日志里。
"""

import re
from typing import Iterable, Optional

REDACTED = "[REDACTED]"

_SECRET_PATTERNS = (
    re.compile(r"sk-ant-[A-Za-z0-9_\-]+"),
    re.compile(r"sk-[A-Za-z0-9_\-]{16,}"),
    re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._~+/=\-]+"),
    re.compile(r"(?i)((?:x-api-key|api[_-]?key|authorization)[\"']?\s*[:=]\s*[\"']?)[^\s\"',}]+"),
)


def scrub_secrets(text: Optional[str], secrets: Iterable[str] = ()) -> str:
    """把已知凭证值与形似凭证的片段替换为 [REDACTED]。"""

    if not text:
        return ""
    scrubbed = text
    for secret in secrets:
        if secret and len(secret) >= 4:
            scrubbed = scrubbed.replace(secret, REDACTED)
    for pattern in _SECRET_PATTERNS:
        if pattern.groups:
            scrubbed = pattern.sub(lambda m: m.group(1) + REDACTED, scrubbed)
        else:
            scrubbed = pattern.sub(REDACTED, scrubbed)
    return scrubbed
