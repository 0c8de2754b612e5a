"""
Context budget management and memory distillation.

- Token estimator: calibrated heuristic cost of mixed CJK/Latin text
- Compression: rolling per-conversation summary replacing aged-out turns,
  cached per (module, conversation) and refreshed incrementally
- Memory extraction: LLM-proposed memory items, clustered and deduplicated
  against stored memories with a CJK-aware Jaccard similarity
"""

from .cache import (
    CompressionCache,
    CompressionCacheEntry,
    InMemoryCompressionCache,
    PostgresCompressionCache,
)
from .compression import CompressionOrchestrator, CompressionResult
from .config import MemoryConfig, context_limit_for
from .dedup import DedupResult, cluster, deduplicate_against_existing
from .extraction import ExtractionResult, MemoryExtractionPipeline, MemoryExtractor, parse_items
from .similarity import similarity, tokenize
from .stores import (
    ConversationTurn,
    InMemoryMemoryStore,
    InMemoryTurnStore,
    MemoryStore,
    PostgresMemoryStore,
    PostgresTurnStore,
    StoredMemory,
    TurnStore,
)
from .summarizer import ConversationSummarizer
from .token_budget import (
    TokenBudget,
    calculate_budget,
    estimate_message_tokens,
    estimate_tokens,
    estimate_total,
)

__all__ = [
    "CompressionCache",
    "CompressionCacheEntry",
    "CompressionOrchestrator",
    "CompressionResult",
    "ConversationSummarizer",
    "ConversationTurn",
    "DedupResult",
    "ExtractionResult",
    "InMemoryCompressionCache",
    "InMemoryMemoryStore",
    "InMemoryTurnStore",
    "MemoryConfig",
    "MemoryExtractionPipeline",
    "MemoryExtractor",
    "MemoryStore",
    "PostgresCompressionCache",
    "PostgresMemoryStore",
    "PostgresTurnStore",
    "StoredMemory",
    "TokenBudget",
    "TurnStore",
    "calculate_budget",
    "cluster",
    "context_limit_for",
    "deduplicate_against_existing",
    "estimate_message_tokens",
    "estimate_tokens",
    "estimate_total",
    "parse_items",
    "similarity",
    "tokenize",
]
