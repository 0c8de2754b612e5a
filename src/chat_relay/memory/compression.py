"""
Context compression orchestrator.

Runs before every upstream call and decides whether older history must be
replaced by a rolling summary:

1. compression disabled            → pass through
2. history too short               → pass through (speaker-tagged modules reformat)
3. estimated size under the budget → pass through
4. load the (module, conversation) cache entry and locate its boundary turn
5. boundary close to the target    → reuse the cached summary, no LLM call
6. otherwise                       → fold only the unseen turns into the summary
7. assemble system + summary + recent turns, shrinking the recent window for
   token-scarce modules until it fits or hits the floor

The original message list is never modified.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from ..modules import Module, ModuleProfile, profile_for
from .cache import CompressionCache, CompressionCacheEntry
from .condenser import (
    build_summary_message,
    condense_message,
    condense_turn,
    to_messages,
)
from .config import MemoryConfig
from .stores import ConversationTurn, TurnStore
from .summarizer import ConversationSummarizer
from .token_budget import TokenBudget, calculate_budget, estimate_total

logger = logging.getLogger(__name__)

# Outcomes reported in CompressionResult.state
DISABLED = "disabled"
NO_HISTORY = "no_history"
INSUFFICIENT_HISTORY = "insufficient_history"
UNDER_BUDGET = "under_budget"
CACHE_REUSED = "cache_reused"
REFRESHED = "refreshed"
SUMMARIZER_FAILED = "summarizer_failed"


@dataclass
class CompressionResult:
    messages: list
    state: str
    summary: Optional[str] = None
    boundary_turn_id: Optional[str] = None
    estimated_tokens: int = 0
    recent_count: int = 0
    notes: list[str] = field(default_factory=list)

    @property
    def compressed(self) -> bool:
        return self.state in (CACHE_REUSED, REFRESHED, SUMMARIZER_FAILED)


class CompressionOrchestrator:
    """
    Usage:
        orchestrator = CompressionOrchestrator(config, turn_store, cache, summarizer)
        result = orchestrator.apply(messages, conversation_id, model_name, module)
        # send result.messages upstream
    """

    def __init__(
        self,
        config: MemoryConfig,
        turn_store: Optional[TurnStore] = None,
        cache: Optional[CompressionCache] = None,
        summarizer: Optional[ConversationSummarizer] = None,
    ):
        self.config = config
        self.turn_store = turn_store
        self.cache = cache
        self.summarizer = summarizer

    def apply(
        self,
        messages: list,
        conversation_id: Optional[str],
        model_name: str,
        module: Module = Module.CHITCHAT,
    ) -> CompressionResult:
        module = Module.parse(module)
        profile = profile_for(module)
        inbound = to_messages(messages)
        system_msgs = [m for m in inbound if isinstance(m, SystemMessage)]
        conversation = [m for m in inbound if not isinstance(m, SystemMessage)]

        if not self.config.compression_enabled:
            logger.debug("Compression disabled, passing %d messages through", len(inbound))
            return CompressionResult(messages=inbound, state=DISABLED)

        turns = self._load_turns(conversation_id)
        if turns is None:
            return CompressionResult(messages=inbound, state=NO_HISTORY)

        keep_recent = profile.clamp_keep_recent(self.config.keep_recent)
        if len(turns) <= keep_recent + self.config.min_extra_turns:
            logger.debug(
                "Conversation %s has %d turns (keep %d + slack %d), not compressing",
                conversation_id, len(turns), keep_recent, self.config.min_extra_turns,
            )
            if profile.speaker_tags:
                inbound = system_msgs + [condense_message(m, True) for m in conversation]
            return CompressionResult(messages=inbound, state=INSUFFICIENT_HISTORY)

        budget = calculate_budget(self.config, model_name, keep_recent)
        pending = self._pending_messages(conversation, turns, profile)
        history = [condense_turn(t, profile.speaker_tags) for t in turns]
        total = estimate_total(system_msgs + history + pending)
        if not budget.exceeded_by(total):
            logger.debug(
                "All %d turns fit in budget (%d/%d tokens), no compression needed",
                len(turns), total, budget.trigger_tokens,
            )
            return CompressionResult(messages=inbound, state=UNDER_BUDGET, estimated_tokens=total)

        logger.info(
            "Compressing conversation %s: %d turns, %d tokens (trigger %d of %d)",
            conversation_id, len(turns), total, budget.trigger_tokens, budget.context_limit,
        )

        # Index of the last turn that should end up inside the summary
        target_index = len(turns) - keep_recent - 1
        entry = self._load_cache(module, conversation_id)
        boundary_index = self._resolve_boundary(entry, turns, target_index)

        if boundary_index is not None and target_index - boundary_index < self.config.resummarize_min_turns:
            state = CACHE_REUSED
            summary = entry.summary_text
            logger.info(
                "Reusing cached summary for %s (%d new turns since boundary)",
                conversation_id, target_index - boundary_index,
            )
        else:
            existing = entry.summary_text if boundary_index is not None else None
            start = boundary_index + 1 if boundary_index is not None else 0
            new_turns = turns[start: target_index + 1]
            refreshed = self._summarize(existing, new_turns)
            if refreshed:
                state = REFRESHED
                summary = refreshed
                boundary_index = target_index
                self._store_cache(module, conversation_id, turns[target_index].id, summary)
            else:
                # Nothing changed: keep the old summary if it is still valid
                state = SUMMARIZER_FAILED
                summary = existing

        return self._assemble(
            system_msgs, summary, turns, boundary_index, pending, budget, profile, state,
        )

    def _load_turns(self, conversation_id: Optional[str]) -> Optional[list[ConversationTurn]]:
        if not conversation_id or self.turn_store is None:
            return None
        try:
            return self.turn_store.fetch_ordered_turns(conversation_id)
        except Exception as e:
            logger.warning("Failed to load turns for conversation %s: %s", conversation_id, e)
            return None

    def _load_cache(self, module: Module, conversation_id: str) -> Optional[CompressionCacheEntry]:
        if self.cache is None:
            return None
        try:
            return self.cache.get(module.value, conversation_id)
        except Exception as e:
            logger.warning("Failed to read compression cache for %s: %s", conversation_id, e)
            return None

    def _store_cache(self, module: Module, conversation_id: str, turn_id: str, summary: str):
        if self.cache is None:
            return
        try:
            self.cache.upsert(module.value, conversation_id, turn_id, summary)
        except Exception as e:
            # The summary is still used for this request
            logger.warning("Failed to save compression cache for %s: %s", conversation_id, e)

    def _summarize(self, existing: Optional[str], new_turns: list[ConversationTurn]) -> Optional[str]:
        if self.summarizer is None or not new_turns:
            return None
        try:
            return self.summarizer.summarize(existing, new_turns)
        except Exception as e:
            logger.warning("Summarizer failed: %s", e)
            return None

    @staticmethod
    def _resolve_boundary(
        entry: Optional[CompressionCacheEntry],
        turns: list[ConversationTurn],
        target_index: int,
    ) -> Optional[int]:
        """Position of the cached boundary turn, or None when the cache can't be used."""
        if entry is None or not entry.summary_text or not entry.compressed_up_to_turn_id:
            return None
        for index, turn in enumerate(turns):
            if turn.id == entry.compressed_up_to_turn_id:
                break
        else:
            logger.info(
                "Cached boundary %s no longer in history, resummarizing from start",
                entry.compressed_up_to_turn_id,
            )
            return None
        if index > target_index:
            # Summary already covers turns that must stay verbatim
            logger.info("Cached boundary %s is inside the recent window, ignoring", turn.id)
            return None
        return index

    @staticmethod
    def _pending_messages(
        conversation: list[BaseMessage],
        turns: list[ConversationTurn],
        profile: ModuleProfile,
    ) -> list[BaseMessage]:
        """The inbound user message, when it has not been stored as a turn yet."""
        if not conversation or not isinstance(conversation[-1], HumanMessage):
            return []
        last = conversation[-1]
        text = last.content.strip() if isinstance(last.content, str) else ""
        if turns and turns[-1].role == "user" and turns[-1].content.strip() == text:
            return []
        return [condense_message(last, profile.speaker_tags)]

    def _assemble(
        self,
        system_msgs: list[BaseMessage],
        summary: Optional[str],
        turns: list[ConversationTurn],
        boundary_index: Optional[int],
        pending: list[BaseMessage],
        budget: TokenBudget,
        profile: ModuleProfile,
        state: str,
    ) -> CompressionResult:
        if summary and boundary_index is not None:
            recent = turns[boundary_index + 1:]
            head = system_msgs + [build_summary_message(summary)]
            boundary_turn_id = turns[boundary_index].id
        else:
            recent = turns[-budget.keep_recent_count:]
            head = list(system_msgs)
            summary = None
            boundary_turn_id = None

        recent_msgs = [condense_turn(t, profile.speaker_tags) for t in recent]
        messages = head + recent_msgs + pending
        total = estimate_total(messages)
        notes = []

        if profile.shrink_to_fit and budget.exceeded_by(total):
            floor = profile.keep_recent_min
            while budget.exceeded_by(total) and len(recent_msgs) > floor:
                recent_msgs = recent_msgs[1:]
                messages = head + recent_msgs + pending
                total = estimate_total(messages)
            if budget.exceeded_by(total):
                logger.warning(
                    "Recent window at floor (%d) and still over budget (%d/%d tokens)",
                    len(recent_msgs), total, budget.trigger_tokens,
                )
                notes.append("floor_reached")

        logger.info(
            "Compression %s: summary=%s, recent=%d msgs, %d tokens",
            state, bool(summary), len(recent_msgs), total,
        )
        return CompressionResult(
            messages=messages,
            state=state,
            summary=summary,
            boundary_turn_id=boundary_turn_id,
            estimated_tokens=total,
            recent_count=len(recent_msgs),
            notes=notes,
        )
