"""
Turn condenser.

Converts stored turns and inbound {role, content} dicts into the LangChain
messages sent upstream:

- assistant turns: reasoning regions stripped, only the answer is replayed
- speaker-tagged modules: content prefixed with "[speaker]: "
- system / user turns: kept as-is
"""

from typing import Optional

from langchain_core.messages import (
    AIMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
)

from ..stream import strip_reasoning
from .stores import ConversationTurn

SUMMARY_HEADER = "[Conversation Summary]"
MEMORY_HEADER = "[Long-term Memories]"

_MESSAGE_TYPES = {
    "user": HumanMessage,
    "assistant": AIMessage,
    "system": SystemMessage,
}


def to_message(role: str, content: str, message_id: Optional[str] = None) -> BaseMessage:
    cls = _MESSAGE_TYPES.get(role, HumanMessage)
    if message_id:
        return cls(content=content, id=message_id)
    return cls(content=content)


def to_messages(payload: list) -> list[BaseMessage]:
    """Convert inbound {role, content} dicts; LangChain messages pass through."""
    result = []
    for item in payload:
        if isinstance(item, BaseMessage):
            result.append(item)
        elif isinstance(item, dict):
            content = item.get("content")
            result.append(to_message(item.get("role", "user"), content if isinstance(content, str) else ""))
    return result


def condense_turn(turn: ConversationTurn, speaker_tags: bool = False) -> BaseMessage:
    """Create the outbound message for one stored turn."""
    content = turn.content
    if turn.role == "assistant":
        content = strip_reasoning(content).strip()
    if speaker_tags and turn.role != "system":
        speaker = turn.speaker or ("User" if turn.role == "user" else "Assistant")
        content = f"[{speaker}]: {content}"
    return to_message(turn.role, content, message_id=turn.id)


def condense_message(msg: BaseMessage, speaker_tags: bool = False) -> BaseMessage:
    """Same treatment for an inbound message that has no stored turn."""
    if isinstance(msg, SystemMessage):
        return msg
    if isinstance(msg, AIMessage) and isinstance(msg.content, str):
        msg = AIMessage(content=strip_reasoning(msg.content).strip(), id=msg.id)
    if not speaker_tags or not isinstance(msg.content, str):
        return msg
    speaker = "Assistant" if isinstance(msg, AIMessage) else "User"
    return type(msg)(content=f"[{speaker}]: {msg.content}", id=msg.id)


def build_summary_message(summary: str) -> SystemMessage:
    return SystemMessage(
        content=(
            f"{SUMMARY_HEADER}\n{summary}\n\n"
            "The summary above replaces earlier messages of this conversation."
        ),
        id="compression-summary",
    )


def build_memory_message(contents: list[str]) -> Optional[SystemMessage]:
    contents = [c.strip() for c in contents if c and c.strip()]
    if not contents:
        return None
    lines = "\n".join(f"- {c}" for c in contents)
    return SystemMessage(
        content=f"{MEMORY_HEADER}\nThings you know about the user:\n{lines}",
        id="memory-block",
    )
