import re
from typing import Tuple

SK_RE = re.compile(r"sk-[A-Za-z0-9]{10,}")
BEARER_RE = re.compile(r"\bBearer\s+[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)
JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\.[A-Za-z0-9_-]{10,}\b")
AWS_KEY_RE = re.compile(r"\b(AKIA|ASIA)[0-9A-Z]{16}\b")
GH_TOKEN_RE = re.compile(r"\bgh[opsu]_[A-Za-z0-9]{20,}\b")
KV_SECRET_RE = re.compile(r"\b(api[_-]?key|token|secret|password|passwd)\s*[:=]\s*([^\s'\";]+)", re.IGNORECASE)
# Inline credentials in URLs, e.g. mysql://user:pw@host or curl -u user:pw
URL_CRED_RE = re.compile(r"(://[^/\s:@]+):([^@\s/]+)@")
CURL_USER_RE = re.compile(r"(\s-u\s+[^\s:]+):(\S+)")


def redact_with_flag(text: str) -> Tuple[str, bool]:
    """Redact obvious secrets from a terminal turn. Returns (redacted, changed?)."""
    changed = False

    def sub(pattern, replacement, value):
        nonlocal changed
        out, n = pattern.subn(replacement, value)
        if n:
            changed = True
        return out

    out = sub(SK_RE, "[REDACTED_KEY]", text)
    out = sub(JWT_RE, "[REDACTED_JWT]", out)
    out = sub(BEARER_RE, "Bearer [REDACTED_TOKEN]", out)
    out = sub(AWS_KEY_RE, "[REDACTED_KEY]", out)
    out = sub(GH_TOKEN_RE, "[REDACTED_TOKEN]", out)
    out = sub(URL_CRED_RE, r"\1:[REDACTED]@", out)
    out = sub(CURL_USER_RE, r"\1:[REDACTED]", out)
    out = sub(KV_SECRET_RE, lambda m: f"{m.group(1)}=[REDACTED]", out)
    return out, changed


def redact(text: str) -> str:
    return redact_with_flag(text)[0]
