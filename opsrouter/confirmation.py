"""
Yes/no classification for confirmation turns.

The checks run in a fixed order: exact answers first, then an echoed
"(y/n) <answer>" prompt, then a first-character heuristic. Anything else is
not a confirmation and the turn is dispatched normally.
"""
import re
from typing import Optional

from opsrouter.schemas import Confirmation

AFFIRMATIVE_WORDS = frozenset({"y", "yes", "是", "确认", "同意"})
NEGATIVE_WORDS = frozenset({"n", "no", "否", "不", "取消", "拒绝"})

AFFIRMATIVE_PREFIXES = ("y", "是", "确认")
NEGATIVE_PREFIXES = ("n", "不", "否")

ECHOED_PROMPT_RE = re.compile(r"\(y/n\)\s*(yes|no|y|n)", re.IGNORECASE)

_SHORT_ANSWERS = {"y": "y", "yes": "yes", "n": "n", "no": "no"}


def classify(text: Optional[str]) -> Confirmation:
    normalized = (text or "").strip().lower()
    if not normalized:
        return Confirmation.NONE

    if normalized in AFFIRMATIVE_WORDS:
        return Confirmation.AFFIRMATIVE
    if normalized in NEGATIVE_WORDS:
        return Confirmation.NEGATIVE

    m = ECHOED_PROMPT_RE.search(normalized)
    if m:
        return Confirmation.AFFIRMATIVE if m.group(1).lower() in ("y", "yes") else Confirmation.NEGATIVE

    if normalized.startswith(AFFIRMATIVE_PREFIXES):
        return Confirmation.AFFIRMATIVE
    if normalized.startswith(NEGATIVE_PREFIXES):
        return Confirmation.NEGATIVE

    return Confirmation.NONE


def is_confirmation(text: Optional[str]) -> bool:
    return classify(text) is not Confirmation.NONE


def extract_answer(text: Optional[str]) -> Optional[str]:
    """
    Pull a y/yes/n/no answer out of a free-form reply.
    Used by providers that keep their own pending action; returns None when
    the reply carries no answer.
    """
    normalized = (text or "").strip().lower()
    if not normalized:
        return None
    if normalized in _SHORT_ANSWERS:
        return normalized
    m = ECHOED_PROMPT_RE.search(normalized)
    if m:
        return m.group(1).lower()
    if normalized[0] in ("y", "n"):
        return normalized[0]
    last_word = normalized.split()[-1]
    return _SHORT_ANSWERS.get(last_word)


def answer_to_bool(answer: Optional[str]) -> Optional[bool]:
    if answer in ("y", "yes"):
        return True
    if answer in ("n", "no"):
        return False
    return None
