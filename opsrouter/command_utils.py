import re
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from opsrouter.config_loader import DEFAULT_BYPASS_COMMANDS, DEFAULT_DENY_FRAGMENTS, normalize_bypass_mode

# --- Turn-shape heuristics ---
COMMAND_SHAPE_PATTERNS = [
    re.compile(r"^(ls|cd|mkdir|rm|cp|mv|cat|grep|find|touch|chmod|chown|ps|kill|sudo)", re.IGNORECASE),
    re.compile(r"^git\s", re.IGNORECASE),
    re.compile(r"^npm\s", re.IGNORECASE),
    re.compile(r"^docker\s", re.IGNORECASE),
    re.compile(r"^python\s", re.IGNORECASE),
    re.compile(r"^node\s", re.IGNORECASE),
    re.compile(r"^ssh\s", re.IGNORECASE),
    re.compile(r"^curl\s", re.IGNORECASE),
    re.compile(r"^wget\s", re.IGNORECASE),
]

WEATHER_KEYWORDS = (
    "天气", "气温", "温度", "下雨", "阴天", "晴天", "多云",
    "weather", "temperature", "rain", "sunny", "cloudy", "forecast",
)

# --- Local risk fragments, most severe first ---
RISK_FRAGMENTS = [
    ("critical", ["rm -rf / ", "rm -rf /*", "mkfs", "dd if=", ":(){", "> /dev/sd", "wipefs"]),
    ("high", ["rm -rf", "rm -r", "chmod 777", "chown -r", "shutdown", "reboot", "| sh", "| bash"]),
    ("medium", ["sudo ", "rm ", "kill ", "mv ", "chmod ", "chown ", "> /etc/", "apt ", "apt-get ", "pip install"]),
    ("low", [">", ">>", "|", ";", "&&"]),
]


def is_weather_query(text: str) -> bool:
    lowered = (text or "").lower()
    return any(k in lowered for k in WEATHER_KEYWORDS)


def looks_like_command(text: str) -> bool:
    stripped = (text or "").strip()
    return any(p.search(stripped) for p in COMMAND_SHAPE_PATTERNS)


def split_tokens(cmd: str) -> List[str]:
    try:
        return shlex.split(cmd)
    except ValueError:
        return cmd.split()  # unbalanced quotes


def base_command(cmd: str) -> str:
    parts = (cmd or "").strip().split()
    return parts[0] if parts else ""


@dataclass
class BypassPolicy:
    """
    Decides whether a command may skip AI analysis.

    mode "none" never bypasses, "all" always does. "common" bypasses when the
    first token is allow-listed and no deny fragment appears in the command.
    deny_match "substring" tests fragments against the raw line; "token" only
    matches word fragments against whole tokens (operators still match anywhere).
    """
    mode: str = "common"
    allow: List[str] = field(default_factory=lambda: list(DEFAULT_BYPASS_COMMANDS))
    deny: List[str] = field(default_factory=lambda: list(DEFAULT_DENY_FRAGMENTS))
    deny_match: str = "substring"

    def __post_init__(self) -> None:
        self.mode = normalize_bypass_mode(self.mode)
        if self.deny_match not in ("substring", "token"):
            self.deny_match = "substring"

    @classmethod
    def from_config(cls, cfg: Dict[str, Any]) -> "BypassPolicy":
        ca = cfg.get("command_analysis", {}) or {}
        return cls(
            mode=ca.get("bypass_mode", "common"),
            allow=list(ca.get("bypass_commands") or DEFAULT_BYPASS_COMMANDS),
            deny=list(ca.get("deny_fragments") or DEFAULT_DENY_FRAGMENTS),
            deny_match=ca.get("deny_match", "substring"),
        )

    def denied_fragment(self, cmd: str) -> Optional[str]:
        stripped = cmd.strip()
        if self.deny_match == "substring":
            return next((frag for frag in self.deny if frag in stripped), None)
        tokens = set(split_tokens(stripped))
        for frag in self.deny:
            if frag.isalnum():
                if frag in tokens:
                    return frag
            elif frag in stripped:
                return frag
        return None

    def should_bypass(self, cmd: str) -> bool:
        if self.mode == "none":
            return False
        if self.mode == "all":
            return True
        if self.denied_fragment(cmd) is not None:
            return False
        return base_command(cmd) in self.allow


def classify_command_risk(cmd: str, allowlist: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Fragment-based risk estimate for a command line.
    Returns {"level": none|low|medium|high|critical, "reasons": [...]}.
    """
    lowered = f" {(cmd or '').strip().lower()} "
    for allowed in allowlist or ():
        if allowed and allowed.lower() in lowered:
            return {"level": "low", "reasons": [f"allowlist:{allowed}"]}
    for level, fragments in RISK_FRAGMENTS:
        hits = [f for f in fragments if f in lowered]
        if hits:
            return {"level": level, "reasons": [f"fragment:{h.strip()}" for h in hits]}
    return {"level": "none", "reasons": []}
