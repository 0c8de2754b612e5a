"""
Memory candidate clustering and deduplication.

Two thresholds are used on purpose. Candidates from the same extraction run
are merged at the looser clustering threshold; a candidate is only dropped
as already known when it reaches the stricter dedupe threshold against a
stored memory, so distinct facts that share vocabulary still get through.
"""

import logging
from dataclasses import dataclass, field

from .similarity import jaccard, normalize_content, normalize_for_comparison, tokenize

logger = logging.getLogger(__name__)

CLUSTER_SIMILARITY_THRESHOLD = 0.75
EXISTING_DEDUPE_THRESHOLD = 0.85
MIN_MEMORY_LENGTH = 8
MAX_ACCEPTED_ITEMS = 10


@dataclass
class DedupResult:
    accepted: list[str] = field(default_factory=list)
    skipped_count: int = 0


def pick_representative(members: list[str]) -> str:
    """Shortest member wins; ties go to the lexicographically smaller one."""
    return min(members, key=lambda item: (len(item), item))


def cluster(
    items: list[str],
    threshold: float = CLUSTER_SIMILARITY_THRESHOLD,
) -> list[str]:
    """
    Greedily group near-duplicate items and return one representative per group.

    Each item joins the first cluster holding any member at or above
    `threshold`, otherwise it opens a new cluster. Output order follows the
    order in which clusters were opened.
    """
    clusters: list[list[tuple[str, frozenset]]] = []

    for item in items:
        tokens = tokenize(item)
        for members in clusters:
            if any(jaccard(tokens, other) >= threshold for _, other in members):
                members.append((item, tokens))
                break
        else:
            clusters.append([(item, tokens)])

    return [pick_representative([text for text, _ in members]) for members in clusters]


def deduplicate_against_existing(
    candidates: list[str],
    existing_contents: list[str],
    threshold: float = EXISTING_DEDUPE_THRESHOLD,
    min_length: int = MIN_MEMORY_LENGTH,
    max_accepted: int = MAX_ACCEPTED_ITEMS,
) -> DedupResult:
    """
    Filter candidates against stored memories and against each other.

    A candidate is skipped when it is shorter than `min_length`, normalizes
    to the same key as an item already accepted in this batch, or reaches
    `threshold` similarity with any stored memory or accepted item.
    Candidates left over once `max_accepted` is reached count as skipped.
    """
    result = DedupResult()
    existing_tokens = [tokenize(content) for content in existing_contents]
    existing_tokens = [tokens for tokens in existing_tokens if tokens]
    accepted_tokens: list[frozenset] = []
    seen_keys: set[str] = set()

    for index, raw in enumerate(candidates):
        if len(result.accepted) >= max_accepted:
            result.skipped_count += len(candidates) - index
            break

        item = normalize_content(raw)
        if len(item) < min_length:
            result.skipped_count += 1
            continue

        key = normalize_for_comparison(item)
        tokens = tokenize(item)
        if not key or key in seen_keys or not tokens:
            result.skipped_count += 1
            continue

        if any(jaccard(tokens, other) >= threshold for other in existing_tokens):
            logger.debug("Skipping memory already stored: %r", item)
            result.skipped_count += 1
            continue

        if any(jaccard(tokens, other) >= threshold for other in accepted_tokens):
            result.skipped_count += 1
            continue

        seen_keys.add(key)
        accepted_tokens.append(tokens)
        result.accepted.append(item)

    return result
