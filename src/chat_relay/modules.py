"""
Chat module variants and their per-module compression / memory rules.

Every inbound request names a module (or none, meaning chitchat). Behaviour
that differs between modules is resolved once through MODULE_PROFILES
instead of comparing module strings at each call site.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class Module(str, Enum):
    CHITCHAT = "chitchat"
    SNACK_FEED = "snack-feed"
    SYZYGY_FEED = "syzygy-feed"
    RP_ROOM = "rp-room"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Module":
        """Map a request's module string to a Module; unknown or empty → chitchat."""
        if isinstance(value, Module):
            return value
        normalized = (value or "").strip().lower()
        for member in cls:
            if member.value == normalized:
                return member
        return cls.CHITCHAT


class MemoryInjection(str, Enum):
    ALWAYS = "always"
    FIRST_MESSAGE = "first_message"
    NEVER = "never"


@dataclass(frozen=True)
class ModuleProfile:
    """Compression and memory rules for one module."""

    keep_recent_default: int
    keep_recent_min: int
    keep_recent_max: int
    # Token-scarce modules shrink the recent window when still over budget
    shrink_to_fit: bool = False
    speaker_tags: bool = False
    memory_injection: MemoryInjection = MemoryInjection.ALWAYS

    def clamp_keep_recent(self, requested: Optional[int]) -> int:
        """Clamp a configured keep-recent count into this module's range."""
        if requested is None:
            return self.keep_recent_default
        return max(self.keep_recent_min, min(self.keep_recent_max, int(requested)))

    def injects_memories(self, is_first_message: bool) -> bool:
        if self.memory_injection is MemoryInjection.ALWAYS:
            return True
        if self.memory_injection is MemoryInjection.FIRST_MESSAGE:
            return is_first_message
        return False


_GENEROUS = dict(keep_recent_default=20, keep_recent_min=10, keep_recent_max=50)
_SCARCE = dict(
    keep_recent_default=10,
    keep_recent_min=5,
    keep_recent_max=20,
    shrink_to_fit=True,
    memory_injection=MemoryInjection.FIRST_MESSAGE,
)

MODULE_PROFILES: dict[Module, ModuleProfile] = {
    Module.CHITCHAT: ModuleProfile(**_GENEROUS),
    Module.SNACK_FEED: ModuleProfile(**_SCARCE),
    Module.SYZYGY_FEED: ModuleProfile(**_SCARCE),
    Module.RP_ROOM: ModuleProfile(
        **_GENEROUS,
        speaker_tags=True,
        memory_injection=MemoryInjection.NEVER,
    ),
}


def profile_for(module) -> ModuleProfile:
    return MODULE_PROFILES[Module.parse(module)]
