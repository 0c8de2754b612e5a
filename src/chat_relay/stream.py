"""
Incremental answer / reasoning splitter for streamed model output.

Some models interleave their reasoning with the answer in a single text
stream, wrapped in <think>...</think>. StreamSplitter consumes deltas as
they arrive and routes text to two outputs. Markers may be cut anywhere by
chunk boundaries; feeding a string in one piece or in any number of pieces
produces the same (answer, reasoning) pair.

End-of-stream policy: text still held back as a possible marker prefix is
dropped by finish() unless flush_carry=True. A reasoning region that never
closes simply ends; what was already routed to reasoning stays there.

A splitter owns mutable state and is meant for a single stream consumer.
"""

from dataclasses import dataclass, field
from typing import Optional

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"


@dataclass
class StreamAssemblyState:
    in_think_region: bool = False
    carry: str = ""
    answer: str = ""
    reasoning: str = ""


@dataclass(frozen=True)
class SplitDelta:
    answer: str = ""
    reasoning: str = ""

    def __bool__(self) -> bool:
        return bool(self.answer or self.reasoning)


def partial_marker_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of `text` that is a strict prefix of `marker`."""
    for size in range(min(len(text), len(marker) - 1), 0, -1):
        if text.endswith(marker[:size]):
            return size
    return 0


class StreamSplitter:
    """
    Usage:
        splitter = StreamSplitter()
        for delta in upstream:
            part = splitter.feed(delta)
            ...
        splitter.finish()
        splitter.state.answer, splitter.state.reasoning
    """

    def __init__(
        self,
        open_marker: str = THINK_OPEN,
        close_marker: str = THINK_CLOSE,
        state: Optional[StreamAssemblyState] = None,
    ):
        if not open_marker or not close_marker:
            raise ValueError("Markers must be non-empty")
        self.open_marker = open_marker
        self.close_marker = close_marker
        self.state = state or StreamAssemblyState()
        self.finished = False

    def feed(self, delta: str) -> SplitDelta:
        """Consume one delta; return the answer / reasoning text it released."""
        if self.finished:
            raise RuntimeError("StreamSplitter.feed() called after finish()")
        state = self.state
        text = state.carry + (delta or "")
        state.carry = ""

        answer: list[str] = []
        reasoning: list[str] = []

        while text:
            if state.in_think_region:
                marker, sink = self.close_marker, reasoning
            else:
                marker, sink = self.open_marker, answer

            index = text.find(marker)
            if index >= 0:
                sink.append(text[:index])
                text = text[index + len(marker):]
                state.in_think_region = not state.in_think_region
                continue

            held = partial_marker_suffix(text, marker)
            sink.append(text[: len(text) - held])
            state.carry = text[len(text) - held:]
            break

        part = SplitDelta(answer="".join(answer), reasoning="".join(reasoning))
        state.answer += part.answer
        state.reasoning += part.reasoning
        return part

    def finish(self, flush_carry: bool = False) -> SplitDelta:
        """
        End the stream.

        By default the held-back carry is truncated. With flush_carry=True it
        is released into whichever region is currently open.
        """
        state = self.state
        carry, state.carry = state.carry, ""
        self.finished = True
        if not flush_carry or not carry:
            return SplitDelta()
        if state.in_think_region:
            state.reasoning += carry
            return SplitDelta(reasoning=carry)
        state.answer += carry
        return SplitDelta(answer=carry)


def split_text(text: str) -> tuple[str, str]:
    """Split a complete string into (answer, reasoning)."""
    splitter = StreamSplitter()
    splitter.feed(text)
    splitter.finish()
    return splitter.state.answer, splitter.state.reasoning


def strip_reasoning(text: str) -> str:
    """Answer part of a complete string, reasoning regions removed."""
    return split_text(text)[0]


@dataclass
class StreamEvent:
    type: str
    data: dict = field(default_factory=dict)


class StreamEventEmitter:
    """Builds the event dicts yielded to relay clients."""

    def thinking(self, content: str) -> StreamEvent:
        return StreamEvent("thinking", {"type": "thinking", "content": content})

    def text(self, content: str) -> StreamEvent:
        return StreamEvent("text", {"type": "text", "content": content})

    def error(self, message: str) -> StreamEvent:
        return StreamEvent("error", {"type": "error", "message": message})

    def done(self, response: str, reasoning: str = "", cancelled: bool = False) -> StreamEvent:
        return StreamEvent(
            "done",
            {
                "type": "done",
                "response": response,
                "reasoning": reasoning,
                "cancelled": cancelled,
            },
        )
