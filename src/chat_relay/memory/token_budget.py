"""
Token estimator and compression budget.

The estimate is a calibrated heuristic for mixed CJK/Latin text, not a
tokenizer-exact count. Callers should treat it as an approximation that
errs slightly high for CJK and slightly low for dense punctuation.
"""

import math
import re
from dataclasses import dataclass

from .config import MemoryConfig

# Per-message framing cost (role markers etc.)
MESSAGE_OVERHEAD = 4

CJK_WEIGHT = 1.7
WORD_WEIGHT = 1.1
OTHER_WEIGHT = 0.3

# Kana, CJK ideographs (incl. extension A and compatibility), Hangul
_CJK_RE = re.compile(r"[\u3040-\u30ff\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff\uac00-\ud7af]")
_WORD_RE = re.compile(r"[A-Za-z0-9_]+")
_WORD_CHAR_RE = re.compile(r"[A-Za-z0-9_]")
_SPACE_RE = re.compile(r"\s")

# Ratios outside this range are clamped rather than rejected
MIN_TRIGGER_RATIO = 0.1
MAX_TRIGGER_RATIO = 0.95


def estimate_tokens(text: str) -> int:
    """
    Estimate the token cost of one message body.

    ceil(1.7 * CJK chars + 1.1 * ASCII words + 0.3 * other non-space chars
    + MESSAGE_OVERHEAD). Empty or whitespace-only text still costs the
    overhead.
    """
    text = text or ""
    cjk = len(_CJK_RE.findall(text))
    words = len(_WORD_RE.findall(text))
    word_chars = len(_WORD_CHAR_RE.findall(text))
    spaces = len(_SPACE_RE.findall(text))
    other = len(text) - cjk - word_chars - spaces
    return math.ceil(
        CJK_WEIGHT * cjk + WORD_WEIGHT * words + OTHER_WEIGHT * other + MESSAGE_OVERHEAD
    )


def message_text(msg) -> str:
    """Flatten a LangChain message (or {role, content} dict) to plain text."""
    content = msg.get("content", "") if isinstance(msg, dict) else getattr(msg, "content", "")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict):
                btype = block.get("type", "")
                if btype in ("thinking", "reasoning"):
                    parts.append(block.get("thinking", "") or block.get("reasoning", ""))
                elif btype == "text":
                    parts.append(block.get("text", ""))
        return "\n".join(p for p in parts if p)
    return str(content) if content else ""


def estimate_message_tokens(msg) -> int:
    """Estimate tokens for a LangChain message."""
    return estimate_tokens(message_text(msg))


def estimate_total(messages: list) -> int:
    """Sum of per-message estimates."""
    return sum(estimate_message_tokens(m) for m in messages)


@dataclass(frozen=True)
class TokenBudget:
    """Compression budget for one request."""

    ratio: float
    context_limit: int
    keep_recent_count: int

    @property
    def trigger_tokens(self) -> int:
        """Estimated size at or above which history gets compressed."""
        return int(self.ratio * self.context_limit)

    def exceeded_by(self, tokens: int) -> bool:
        return tokens >= self.trigger_tokens


def calculate_budget(
    config: MemoryConfig,
    model_name: str,
    keep_recent_count: int,
) -> TokenBudget:
    """Build the request budget; the trigger ratio is clamped into [0.1, 0.95]."""
    ratio = min(MAX_TRIGGER_RATIO, max(MIN_TRIGGER_RATIO, float(config.trigger_ratio)))
    return TokenBudget(
        ratio=ratio,
        context_limit=config.get_context_window(model_name),
        keep_recent_count=keep_recent_count,
    )
