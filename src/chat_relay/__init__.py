"""
Chat relay with context compression and long-term memory extraction.
"""

from .modules import Module
from .relay import ChatRelay, RelayRequest, RequestContext
from .stream import StreamSplitter, split_text

__all__ = [
    "ChatRelay",
    "Module",
    "RelayRequest",
    "RequestContext",
    "StreamSplitter",
    "split_text",
]
