"""
Rolling conversation summarizer.

Folds newly aged-out turns into an existing summary with one LLM call. The
summarizer is only ever shown turns it has not seen before; continuity with
earlier content comes from passing the previous summary along.
"""

import logging
from typing import Optional

from ..stream import strip_reasoning
from .stores import ConversationTurn

logger = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """You maintain a running summary of a conversation between a user and an assistant.
You receive the previous summary (possibly empty) and the messages that happened after it.
Return an updated summary that:
- Keeps every still-relevant fact, preference, decision and open task from the previous summary
- Folds in the new messages in chronological order
- Records decisions and conclusions, not small talk

Do NOT invent facts. Do NOT restate, alter or drop persona or system instructions; they are provided separately.
Only compress factual and decision content.
Write in the same language as the conversation. Do NOT use markdown headers."""

MAX_TURN_CHARS = 2000


def format_turns(turns: list[ConversationTurn], max_chars: int = MAX_TURN_CHARS) -> str:
    lines = []
    for turn in turns:
        content = turn.content
        if turn.role == "assistant":
            content = strip_reasoning(content).strip()
        # Truncate very long messages for summarization
        if len(content) > max_chars:
            content = content[:max_chars] + "..."
        label = turn.speaker or turn.role.upper()
        lines.append(f"{label}: {content}")
    return "\n".join(lines)


class ConversationSummarizer:
    """Summarizer capability backed by a LangChain chat model."""

    def __init__(self, llm=None, max_turn_chars: int = MAX_TURN_CHARS):
        self._llm = llm
        self.max_turn_chars = max_turn_chars

    def summarize(
        self,
        existing_summary: Optional[str],
        new_turns: list[ConversationTurn],
    ) -> Optional[str]:
        """
        Return an updated summary covering `existing_summary` plus `new_turns`.

        Returns None when there is no model or the call fails; callers treat
        that as "nothing changed".
        """
        if not self._llm or not new_turns:
            return None

        previous = (existing_summary or "").strip() or "(none)"
        user_prompt = (
            f"[Previous summary]\n{previous}\n\n"
            f"[New messages]\n{format_turns(new_turns, self.max_turn_chars)}"
        )

        try:
            response = self._llm.invoke([
                {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
                {"role": "user", "content": user_prompt},
            ])
        except Exception as e:
            logger.warning("Failed to generate summary: %s", e)
            return None

        text = response.content if hasattr(response, "content") else str(response)
        if not isinstance(text, str):
            text = str(text)
        text = text.strip()
        return text or None
