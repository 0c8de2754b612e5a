"""
Memory extraction pipeline.

recent turns → extractor LLM → {"items": [...]} → per-item parse → length
filter → LLM merge with existing memories and clustering (when merge is
enabled) → dedupe against stored memories → insert as pending → trim the
pending backlog.

A malformed model response means "nothing extracted"; it is never raised.
A failed merge call leaves the extracted candidates unmerged.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from .config import MemoryConfig
from .dedup import cluster, deduplicate_against_existing
from .similarity import normalize_content
from .stores import MemoryStore

logger = logging.getLogger(__name__)

MAX_MERGED_ITEMS = 20

EXTRACTION_PROMPT = """You extract long-term memory suggestions from a chat.
Return ONLY valid JSON (no markdown): {"items":["...", "..."]}

Rules:
- Keep only: stable preferences/habits, project progress or technical decisions, important facts, repeated points.
- Exclude: small talk, temporary chatter, one-off emotional fluctuations.
- Each item must be concise and 1-2 sentences.
- If multiple items describe the same memory, merge them into one concise item."""

MERGE_PROMPT_TEMPLATE = """You are given candidate long-term memory items. Many are duplicates or paraphrases.
Merge items with the same meaning into one concise item.
Return ONLY valid JSON (no markdown): {{"items":["...", "..."]}}

Rules:
- Keep only: stable preferences/habits, project progress or technical decisions, important facts, repeated points.
- Exclude: small talk, temporary chatter, one-off emotional fluctuations.
- Each item must be concise and 1-2 sentences.
- Maximum {max_items} items.
- Prefer specific wording when merging similar items.
- No commentary, no markdown, no extra keys."""


@dataclass(frozen=True)
class ParsedItem:
    """One entry of the model's items array: either a value or an error."""

    value: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


@dataclass
class ExtractionResult:
    inserted_count: int = 0
    skipped_count: int = 0
    items: list[str] = field(default_factory=list)


def _parse_item(item) -> ParsedItem:
    if isinstance(item, str):
        return ParsedItem(value=normalize_content(item))
    if isinstance(item, dict):
        content = item.get("content")
        if isinstance(content, str):
            return ParsedItem(value=normalize_content(content))
        return ParsedItem(error="object without string content")
    return ParsedItem(error=f"unsupported item type {type(item).__name__}")


def _items_array(output) -> Optional[list]:
    """The items list of the outermost {...} span, or None when there is none."""
    if not isinstance(output, str):
        return None
    start = output.find("{")
    end = output.rfind("}")
    if start < 0 or end < start:
        return None
    try:
        parsed = json.loads(output[start: end + 1])
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict) or not isinstance(parsed.get("items"), list):
        return None
    return parsed["items"]


def parse_items(output: str) -> list[ParsedItem]:
    """
    Parse the extractor's raw output.

    The outermost {...} span is decoded so prose or code fences around the
    JSON are tolerated. Anything that isn't an object with an items list
    yields no items.
    """
    items = _items_array(output)
    if items is None:
        return []
    return [_parse_item(item) for item in items]


class MemoryExtractor:
    """Extractor capability backed by a LangChain chat model."""

    def __init__(self, llm=None):
        self._llm = llm

    def _call(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        try:
            response = self._llm.invoke([
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ])
        except Exception as e:
            logger.warning("Memory extraction call failed: %s", e)
            return None
        raw = response.content if hasattr(response, "content") else str(response)
        return raw if isinstance(raw, str) else str(raw)

    def extract(self, recent_turns: list[dict]) -> str:
        """Return the model's raw output; empty string on any failure."""
        if not self._llm or not recent_turns:
            return ""
        conversation = "\n".join(
            f"{turn['role'].upper()}: {turn['content']}" for turn in recent_turns
        )
        return self._call(EXTRACTION_PROMPT, f"Conversation:\n{conversation}") or ""

    def merge(
        self,
        candidates: list[str],
        existing_pending: list[str],
        max_items: int = MAX_MERGED_ITEMS,
    ) -> Optional[list[str]]:
        """
        Ask the model to merge paraphrased candidates, with stored memories as context.

        Returns None when there is no model, the call fails or the output
        has no items list.
        """
        if not self._llm:
            return None
        payload = json.dumps(
            {"rawItems": candidates, "existingPending": existing_pending},
            ensure_ascii=False,
        )
        raw = self._call(
            MERGE_PROMPT_TEMPLATE.format(max_items=max_items),
            f"Merge these memory candidates and existing pending memories:\n{payload}",
        )
        items = _items_array(raw)
        if items is None:
            return None
        parsed = [_parse_item(item) for item in items]
        return [p.value for p in parsed if p.ok][:max_items]


class MemoryExtractionPipeline:
    """
    Usage:
        pipeline = MemoryExtractionPipeline(extractor, memory_store, config)
        result = pipeline.run(user_id, [{"role": "user", "content": "..."}])
    """

    def __init__(
        self,
        extractor: MemoryExtractor,
        memory_store: MemoryStore,
        config: Optional[MemoryConfig] = None,
    ):
        self.extractor = extractor
        self.memory_store = memory_store
        self.config = config or MemoryConfig()

    def recent_window(self, turns: list) -> list[dict]:
        """Last N turns as normalized {role, content}; empty turns dropped."""
        window = []
        for turn in turns[-self.config.recent_turn_limit:]:
            if isinstance(turn, dict):
                role, content = turn.get("role", "user"), turn.get("content")
            else:
                role, content = getattr(turn, "role", "user"), getattr(turn, "content", "")
            content = normalize_content(content if isinstance(content, str) else "")
            if content:
                window.append({"role": role, "content": content})
        return window

    def _merge(self, candidates: list[str], existing: list[str]) -> list[str]:
        """LLM merge pass; the unmerged candidates are kept when it fails."""
        pending_context = [normalize_content(c) for c in existing if isinstance(c, str)]
        pending_context = [
            c for c in pending_context if len(c) >= self.config.min_memory_length
        ][: self.config.pending_cap]
        try:
            merged = self.extractor.merge(
                candidates, pending_context, max_items=self.config.max_merged_items
            )
        except Exception as e:
            logger.warning("Memory merge raised: %s", e)
            merged = None
        if not isinstance(merged, list):
            logger.info("Memory merge unavailable, keeping %d unmerged candidates", len(candidates))
            return candidates
        merged = [normalize_content(m) for m in merged if isinstance(m, str)]
        return [m for m in merged if len(m) >= self.config.min_memory_length][
            : self.config.max_merged_items
        ]

    def run(
        self,
        user_id: str,
        recent_turns: list,
        merge_enabled: Optional[bool] = None,
    ) -> ExtractionResult:
        window = self.recent_window(recent_turns)
        if not window:
            return ExtractionResult()

        if merge_enabled is None:
            merge_enabled = self.config.merge_enabled

        try:
            raw = self.extractor.extract(window)
        except Exception as e:
            logger.warning("Memory extractor raised: %s", e)
            raw = ""

        parsed = parse_items(raw)
        candidates = [p.value for p in parsed if p.ok]
        skipped = len(parsed) - len(candidates)
        for p in parsed:
            if not p.ok:
                logger.debug("Dropping extracted item: %s", p.error)

        long_enough = [c for c in candidates if len(c) >= self.config.min_memory_length]
        skipped += len(candidates) - len(long_enough)

        existing = self.memory_store.fetch_active_contents(
            user_id, limit=self.config.existing_limit
        )

        merged = long_enough
        if merge_enabled and long_enough:
            merged = cluster(self._merge(long_enough, existing), self.config.cluster_threshold)
            skipped += max(0, len(long_enough) - len(merged))

        dedup = deduplicate_against_existing(
            merged,
            existing,
            threshold=self.config.dedupe_threshold,
            min_length=self.config.min_memory_length,
            max_accepted=self.config.max_memory_items,
        )
        skipped += dedup.skipped_count

        if dedup.accepted:
            self.memory_store.insert_pending(user_id, dedup.accepted)
        trimmed = self.memory_store.enforce_pending_cap(user_id, self.config.pending_cap)
        if trimmed:
            logger.info("Soft-deleted %d pending memories over the cap", trimmed)

        logger.info(
            "Memory extraction for %s: %d inserted, %d skipped",
            user_id, len(dedup.accepted), skipped,
        )
        return ExtractionResult(
            inserted_count=len(dedup.accepted),
            skipped_count=skipped,
            items=dedup.accepted,
        )
