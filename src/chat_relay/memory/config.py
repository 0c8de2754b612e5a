"""
Compression and memory configuration, plus model context window mappings.
"""

import os
from dataclasses import dataclass, replace
from typing import Optional

# Model → context window size (tokens). Keys are bare model names; a
# provider prefix such as "anthropic/" is stripped before lookup.
MODEL_CONTEXT_WINDOWS: dict[str, int] = {
    # Anthropic
    "claude-sonnet-4.5": 200_000,
    "claude-sonnet-4": 200_000,
    "claude-opus-4": 200_000,
    "claude-3.7-sonnet": 200_000,
    "claude-3.5-sonnet": 200_000,
    "claude-3.5-haiku": 200_000,
    "claude-3-haiku": 200_000,
    # OpenAI
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4.1-mini": 1_047_576,
    "o3-mini": 200_000,
    # Google
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-2.0-flash-001": 1_048_576,
    # DeepSeek
    "deepseek-chat": 64_000,
    "deepseek-chat-v3-0324": 163_840,
    "deepseek-r1": 163_840,
    "deepseek-reasoner": 64_000,
    # GLM / Qwen / Kimi
    "glm-4": 128_000,
    "glm-4.5": 131_072,
    "qwen-max": 32_768,
    "qwen3-235b-a22b": 40_960,
    "kimi-k2": 131_072,
}

# Substring rules tried in order when the exact name is unknown.
MODEL_FAMILY_WINDOWS: list[tuple[str, int]] = [
    ("claude", 200_000),
    ("gemini", 1_000_000),
    ("gpt-4.1", 1_047_576),
    ("gpt-4o", 128_000),
    ("gpt-5", 400_000),
    ("deepseek", 64_000),
    ("kimi", 131_072),
    ("moonshot", 131_072),
    ("glm", 128_000),
    ("llama", 128_000),
    ("qwen", 32_768),
    ("mistral", 32_768),
]

# Unknown models get a conservative window so compression errs early.
DEFAULT_CONTEXT_WINDOW = 32_000

TRUE_VALUES = ("1", "true", "yes", "on")


def _strip_provider(model_id: str) -> str:
    model_id = (model_id or "").strip().lower()
    if "/" in model_id:
        model_id = model_id.split("/", 1)[1]
    # OpenRouter variants like "deepseek-r1:free"
    return model_id.split(":", 1)[0]


def context_limit_for(model_id: str) -> int:
    """Resolve a model's context window: exact name, then family, then default."""
    name = _strip_provider(model_id)
    if not name:
        return DEFAULT_CONTEXT_WINDOW
    if name in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[name]
    for family, size in MODEL_FAMILY_WINDOWS:
        if family in name:
            return size
    return DEFAULT_CONTEXT_WINDOW


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in TRUE_VALUES


def _env_optional_int(name: str) -> Optional[int]:
    raw = os.getenv(name, "")
    return int(raw) if raw.strip() else None


@dataclass
class MemoryConfig:
    """Configuration for context compression and memory extraction."""

    # Compression
    compression_enabled: bool = True
    trigger_ratio: float = 0.65
    # None = use the module's default keep-recent count
    keep_recent: Optional[int] = None
    summarizer_model: str = ""
    resummarize_min_turns: int = 5
    min_extra_turns: int = 25
    # Context window (0 = auto-detect from model name)
    context_window: int = 0

    # Memory extraction
    merge_enabled: bool = True
    max_memory_items: int = 10
    max_merged_items: int = 20
    min_memory_length: int = 8
    cluster_threshold: float = 0.75
    dedupe_threshold: float = 0.85
    recent_turn_limit: int = 30
    existing_limit: int = 200
    pending_cap: int = 50

    @classmethod
    def from_env(cls) -> "MemoryConfig":
        """Load configuration from environment variables."""
        return cls(
            compression_enabled=_env_bool("COMPRESSION_ENABLED", True),
            trigger_ratio=float(os.getenv("COMPRESSION_TRIGGER_RATIO", "0.65")),
            keep_recent=_env_optional_int("COMPRESSION_KEEP_RECENT"),
            summarizer_model=os.getenv("SUMMARIZER_MODEL", ""),
            resummarize_min_turns=int(
                os.getenv("COMPRESSION_RESUMMARIZE_MIN_TURNS", "5")
            ),
            min_extra_turns=int(os.getenv("COMPRESSION_MIN_EXTRA_TURNS", "25")),
            context_window=int(os.getenv("COMPRESSION_CONTEXT_WINDOW", "0")),
            merge_enabled=_env_bool("MEMORY_MERGE_ENABLED", True),
            max_memory_items=int(os.getenv("MEMORY_MAX_ITEMS", "10")),
            max_merged_items=int(os.getenv("MEMORY_MAX_MERGED_ITEMS", "20")),
            min_memory_length=int(os.getenv("MEMORY_MIN_LENGTH", "8")),
            cluster_threshold=float(os.getenv("MEMORY_CLUSTER_THRESHOLD", "0.75")),
            dedupe_threshold=float(os.getenv("MEMORY_DEDUPE_THRESHOLD", "0.85")),
            recent_turn_limit=int(os.getenv("MEMORY_RECENT_LIMIT", "30")),
            existing_limit=int(os.getenv("MEMORY_EXISTING_LIMIT", "200")),
            pending_cap=int(os.getenv("MEMORY_PENDING_CAP", "50")),
        )

    def with_settings(self, settings: Optional[dict]) -> "MemoryConfig":
        """
        Overlay a per-user settings row on top of this config.

        Recognized keys mirror the user_settings columns; missing or null
        values keep the current value.
        """
        if not settings:
            return self
        overrides = {}
        mapping = {
            "compression_enabled": "compression_enabled",
            "compression_trigger_ratio": "trigger_ratio",
            "compression_keep_recent_messages": "keep_recent",
            "summarizer_model": "summarizer_model",
            "memory_merge_enabled": "merge_enabled",
        }
        for column, attr in mapping.items():
            value = settings.get(column)
            if value is None:
                continue
            if isinstance(value, str):
                value = value.strip()
                if not value:
                    continue
            overrides[attr] = value
        return replace(self, **overrides) if overrides else self

    def get_context_window(self, model_name: str) -> int:
        """Resolve context window size from config or model name."""
        if self.context_window > 0:
            return self.context_window
        return context_limit_for(model_name)
