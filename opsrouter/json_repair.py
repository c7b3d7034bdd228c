"""
Best-effort recovery of a JSON object from completion-model output.

Stages: strip markup and keep the outermost {...} span, parse, then repair a
truncated object (odd quote count is the usual symptom) and parse again.
Callers decide what to synthesize when every stage fails.
"""
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TAG_RE = re.compile(r"<[^>]*>")
FENCE_RE = re.compile(r"```json|```", re.IGNORECASE)
OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
TYPE_FIELD_RE = re.compile(r'"type"\s*:\s*"([^"]+)"')
PARTIAL_CONTENT_RE = re.compile(r'"content"\s*:\s*"([^"]+)')

TRUNCATION_MARKER = "...(content truncated)"
SAFE_FALLBACK_PREFIXES = ("ls", "cd", "pwd", "echo", "cat")

STAGE_DIRECT = "direct"
STAGE_REPAIRED = "repaired"
STAGE_FAILED = "failed"


@dataclass
class RepairResult:
    data: Optional[Dict[str, Any]]
    stage: str
    cleaned: str


def clean_response(text: str) -> str:
    """Drop HTML/XML tags and markdown fences, keep the outermost {...} span if there is one."""
    cleaned = TAG_RE.sub("", (text or "").strip())
    cleaned = FENCE_RE.sub("", cleaned).strip()
    m = OBJECT_RE.search(cleaned)
    return m.group(0) if m else cleaned


def _unescaped_quotes(text: str) -> int:
    count = 0
    escaped = False
    for ch in text:
        if escaped:
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == '"':
            count += 1
    return count


def _close_brackets(text: str) -> str:
    """Append the closers for any [ or { left open outside of strings."""
    stack: List[str] = []
    in_str = False
    escaped = False
    for ch in text:
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack and stack[-1] == ch:
            stack.pop()
    closed = text.rstrip().rstrip(",")
    closed += "".join(reversed(stack))
    if not closed.endswith("}"):
        closed += "}"
    return closed


def fix_truncated_json(text: str) -> str:
    """
    Repair an object cut off mid-stream.

    With an odd quote count the tail is an unterminated string: cut back to the
    last complete `",` field boundary, or close the string in place when there
    is none. Then close any open brackets so the text ends in `}`.
    """
    fixed = text.strip()
    if _unescaped_quotes(fixed) % 2 != 0:
        logger.warning("Detected unclosed quote in model output, attempting to fix")
        last_field = fixed.rfind('",')
        if last_field > 0:
            fixed = fixed[: last_field + 1]
        else:
            fixed = fixed + '"'
    return _close_brackets(fixed)


def _loads_object(text: str) -> Optional[Dict[str, Any]]:
    try:
        value = json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return None
    return value if isinstance(value, dict) else None


def parse_model_json(raw: str) -> RepairResult:
    cleaned = clean_response(raw)
    data = _loads_object(cleaned)
    if data is not None:
        return RepairResult(data, STAGE_DIRECT, cleaned)

    logger.warning("Initial JSON parse failed, trying to fix truncated JSON")
    data = _loads_object(fix_truncated_json(cleaned))
    if data is None and _unescaped_quotes(cleaned) % 2 != 0:
        # cutting back lost the only parseable shape; keep the partial string instead
        data = _loads_object(_close_brackets(cleaned.strip() + '"'))
    if data is not None:
        logger.info("JSON fix successful")
        return RepairResult(data, STAGE_REPAIRED, cleaned)

    logger.error("JSON fix failed")
    return RepairResult(None, STAGE_FAILED, cleaned)


def fallback_analysis(command: str, cleaned: str) -> Dict[str, Any]:
    """
    Synthesize an analysis when no stage produced an object.

    Known-safe commands are executed anyway so the session stays usable;
    everything else surfaces whatever type/content survived, marked failed.
    """
    lowered = (command or "").strip().lower()
    if lowered.startswith(SAFE_FALLBACK_PREFIXES):
        return {
            "type": "bash_execution",
            "content": "",
            "success": True,
            "command": command,
            "shouldExecute": True,
            "requireConfirmation": False,
        }
    type_match = TYPE_FIELD_RE.search(cleaned or "")
    content_match = PARTIAL_CONTENT_RE.search(cleaned or "")
    partial = content_match.group(1) if content_match else "Content parsing failed"
    return {
        "type": type_match.group(1) if type_match else "ai_response",
        "content": f"{partial}{TRUNCATION_MARKER}",
        "success": False,
        "command": command,
        "shouldExecute": False,
        "requireConfirmation": False,
    }
