"""
Tests for similarity, clustering, deduplication and the extraction pipeline.
"""

import pytest
from unittest.mock import MagicMock

from chat_relay.memory.config import MemoryConfig
from chat_relay.memory.dedup import cluster, deduplicate_against_existing
from chat_relay.memory.extraction import (
    EXTRACTION_PROMPT,
    MemoryExtractionPipeline,
    MemoryExtractor,
    parse_items,
)
from chat_relay.memory.similarity import (
    normalize_content,
    normalize_for_comparison,
    similarity,
    tokenize,
)
from chat_relay.memory.stores import InMemoryMemoryStore


GREEK = "alpha beta gamma delta epsilon zeta eta theta iota kappa".split()


def _words(n: int, start: int = 0) -> str:
    return " ".join(GREEK[start:start + n])


# ── Similarity Tests ──


class TestSimilarity:
    def test_latin_word_tokens(self):
        assert tokenize("Hello, World!") == frozenset({"hello", "world"})

    def test_cjk_bigrams(self):
        assert tokenize("我喜欢猫") == frozenset({"我喜", "喜欢", "欢猫"})

    def test_cjk_partial_overlap(self):
        score = similarity("我喜欢猫", "我喜欢狗")
        assert 0 < score < 1
        assert score == pytest.approx(0.5)

    def test_empty_inputs(self):
        assert tokenize("") == frozenset()
        assert tokenize("!!! ...") == frozenset()
        assert similarity("", "anything") == 0.0

    def test_identical_texts(self):
        assert similarity("Likes green tea", "likes green tea.") == 1.0

    def test_normalization(self):
        assert normalize_content("  a \n\t b  ") == "a b"
        assert normalize_for_comparison("Likes, Green  Tea!") == "likesgreentea"


# ── Cluster Tests ──


class TestCluster:
    def test_superset_merges_to_shorter(self):
        result = cluster(["likes green tea daily", "likes green tea"])
        assert result == ["likes green tea"]

    def test_joins_through_any_member(self):
        a = _words(6)
        b = _words(7)
        c = _words(7, start=1)
        # c is only 0.625 similar to a but 0.75 similar to b
        assert similarity(a, c) < 0.75
        assert similarity(b, c) == pytest.approx(0.75)
        assert cluster([a, b, c]) == [a]

    def test_dissimilar_items_stay_apart(self):
        items = ["user likes hiking trips", "project uses postgres database"]
        assert cluster(items) == items

    def test_representative_tie_break(self):
        assert cluster(["bb aa cc dd", "aa bb cc dd"]) == ["aa bb cc dd"]

    def test_cluster_threshold_boundary(self):
        base = _words(6)
        near = _words(8)
        # 6/8 = 0.75, exactly the threshold
        assert len(cluster([base, near], threshold=0.75)) == 1
        assert len(cluster([base, near], threshold=0.76)) == 2


# ── Deduplication Tests ──


class TestDeduplicate:
    def test_below_threshold_accepted(self):
        result = deduplicate_against_existing([_words(8)], [_words(10)])
        # 8/10 = 0.8 < 0.85
        assert result.accepted == [_words(8)]
        assert result.skipped_count == 0

    def test_above_threshold_rejected(self):
        result = deduplicate_against_existing([_words(9)], [_words(10)])
        # 9/10 = 0.9 >= 0.85
        assert result.accepted == []
        assert result.skipped_count == 1

    def test_normalized_duplicate_in_batch(self):
        result = deduplicate_against_existing(["Likes green tea.", "likes  green tea"], [])
        assert result.accepted == ["Likes green tea."]
        assert result.skipped_count == 1

    def test_max_accepted(self):
        candidates = [
            "user likes hiking trips",
            "project uses postgres database",
            "works remotely from lisbon",
        ]
        result = deduplicate_against_existing(candidates, [], max_accepted=2)
        assert result.accepted == candidates[:2]
        assert result.skipped_count == 1

    def test_too_short(self):
        result = deduplicate_against_existing(["short", "long enough text"], [])
        assert result.accepted == ["long enough text"]
        assert result.skipped_count == 1

    def test_cjk_existing_duplicate(self):
        result = deduplicate_against_existing(["用户喜欢喝绿茶。"], ["用户喜欢喝绿茶"])
        assert result.accepted == []


# ── Parse Tests ──


class TestParseItems:
    def test_plain_json(self):
        parsed = parse_items('{"items": ["a memory item"]}')
        assert [p.value for p in parsed] == ["a memory item"]

    def test_fenced_json(self):
        parsed = parse_items('Here you go:\n```json\n{"items": ["x y z"]}\n```')
        assert [p.value for p in parsed] == ["x y z"]

    def test_mixed_item_shapes(self):
        parsed = parse_items('{"items": [1, {"content": "c  d"}, {"foo": 1}, "e"]}')
        assert [p.ok for p in parsed] == [False, True, False, True]
        assert parsed[1].value == "c d"
        assert parsed[0].error

    @pytest.mark.parametrize("output", [
        "not json at all",
        '{"items": "nope"}',
        "[1, 2]",
        "{broken",
        '{"items": [1,}',
        "",
        None,
    ])
    def test_malformed_output(self, output):
        assert parse_items(output) == []


# ── Extractor Tests ──


class TestMemoryExtractor:
    def test_prompt_contains_conversation(self):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content='{"items": []}')
        raw = MemoryExtractor(llm).extract([{"role": "user", "content": "I moved to Lisbon"}])
        assert raw == '{"items": []}'
        prompt = llm.invoke.call_args[0][0]
        assert prompt[0]["content"] == EXTRACTION_PROMPT
        assert "USER: I moved to Lisbon" in prompt[1]["content"]

    def test_failure_returns_empty(self):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("rate limited")
        assert MemoryExtractor(llm).extract([{"role": "user", "content": "hi"}]) == ""

    def test_merge_prompt_and_output(self):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content='{"items": ["a merged  memory item", 3]}')
        merged = MemoryExtractor(llm).merge(["用户喜欢绿茶"], ["works remotely from lisbon"], max_items=5)
        assert merged == ["a merged memory item"]
        system, user = llm.invoke.call_args[0][0]
        assert "Maximum 5 items." in system["content"]
        assert '{"items":["...", "..."]}' in system["content"]
        assert '"rawItems": ["用户喜欢绿茶"]' in user["content"]
        assert '"existingPending": ["works remotely from lisbon"]' in user["content"]

    def test_merge_truncates_to_max_items(self):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content='{"items": ["one item", "two item", "three item"]}')
        assert MemoryExtractor(llm).merge(["x"], [], max_items=2) == ["one item", "two item"]

    @pytest.mark.parametrize("content", ["not json", '{"items": "nope"}'])
    def test_merge_unparseable_returns_none(self, content):
        llm = MagicMock()
        llm.invoke.return_value = MagicMock(content=content)
        assert MemoryExtractor(llm).merge(["candidate item"], []) is None

    def test_merge_failure_returns_none(self):
        llm = MagicMock()
        llm.invoke.side_effect = RuntimeError("timeout")
        assert MemoryExtractor(llm).merge(["candidate item"], []) is None
        assert MemoryExtractor(None).merge(["candidate item"], []) is None

    def test_no_llm(self):
        assert MemoryExtractor(None).extract([{"role": "user", "content": "hi"}]) == ""


# ── Pipeline Tests ──


def _pipeline(raw_output: str, store=None, merge_output=None, **config):
    extractor = MagicMock()
    extractor.extract.return_value = raw_output
    # None means the merge call failed
    extractor.merge.return_value = merge_output
    store = store or InMemoryMemoryStore()
    return MemoryExtractionPipeline(extractor, store, MemoryConfig(**config)), extractor, store


TURNS = [
    {"role": "user", "content": "I drink green tea every morning"},
    {"role": "assistant", "content": "Noted!"},
]


class TestExtractionPipeline:
    def test_not_json(self):
        pipeline, _, store = _pipeline("not json at all")
        result = pipeline.run("u1", TURNS)
        assert (result.inserted_count, result.skipped_count) == (0, 0)
        assert store.rows("u1") == []

    def test_short_item_skipped(self):
        pipeline, _, store = _pipeline('{"items":["ok long enough text","x"]}')
        result = pipeline.run("u1", TURNS)
        assert result.inserted_count == 1
        assert result.skipped_count >= 1
        rows = store.rows("u1")
        assert [(r.content, r.status) for r in rows] == [("ok long enough text", "pending")]

    def test_object_items(self):
        pipeline, _, _ = _pipeline('{"items":[{"content":"prefers dark mode"}, {"text":"bad"}]}')
        result = pipeline.run("u1", TURNS)
        assert result.items == ["prefers dark mode"]
        assert result.skipped_count == 1

    def test_fenced_output(self):
        pipeline, _, _ = _pipeline('```json\n{"items":["works remotely from lisbon"]}\n```')
        assert pipeline.run("u1", TURNS).inserted_count == 1

    def test_existing_memory_deduplicated(self):
        store = InMemoryMemoryStore()
        store.add("u1", "works remotely from Lisbon.")
        pipeline, _, _ = _pipeline('{"items":["Works remotely from lisbon"]}', store=store)
        result = pipeline.run("u1", TURNS)
        assert result.inserted_count == 0
        assert result.skipped_count == 1

    def test_deleted_memory_not_considered(self):
        store = InMemoryMemoryStore()
        store.add("u1", "works remotely from lisbon").is_deleted = True
        pipeline, _, _ = _pipeline('{"items":["works remotely from lisbon"]}', store=store)
        assert pipeline.run("u1", TURNS).inserted_count == 1

    def test_merge_enabled_clusters_candidates(self):
        output = (
            '{"items":["alice drinks green tea every morning",'
            '"alice drinks green tea every morning before work"]}'
        )
        pipeline, _, _ = _pipeline(output)
        result = pipeline.run("u1", TURNS, merge_enabled=True)
        assert result.items == ["alice drinks green tea every morning"]
        assert result.skipped_count == 1

    def test_merge_disabled_keeps_near_duplicates(self):
        output = (
            '{"items":["alice drinks green tea every morning",'
            '"alice drinks green tea every morning before work"]}'
        )
        pipeline, _, _ = _pipeline(output)
        result = pipeline.run("u1", TURNS, merge_enabled=False)
        assert result.inserted_count == 2

    def test_merge_default_from_config(self):
        output = (
            '{"items":["alice drinks green tea every morning",'
            '"alice drinks green tea every morning before work"]}'
        )
        pipeline, _, _ = _pipeline(output, merge_enabled=False)
        assert pipeline.run("u1", TURNS).inserted_count == 2

    def test_empty_window_skips_extractor(self):
        pipeline, extractor, _ = _pipeline('{"items":["anything at all"]}')
        result = pipeline.run("u1", [{"role": "user", "content": "   "}])
        assert (result.inserted_count, result.skipped_count) == (0, 0)
        extractor.extract.assert_not_called()

    def test_extractor_exception_is_nothing_extracted(self):
        pipeline, extractor, _ = _pipeline("")
        extractor.extract.side_effect = RuntimeError("boom")
        result = pipeline.run("u1", TURNS)
        assert (result.inserted_count, result.skipped_count) == (0, 0)

    def test_store_failure_propagates(self):
        store = MagicMock()
        store.fetch_active_contents.side_effect = RuntimeError("db down")
        pipeline, _, _ = _pipeline('{"items":["works remotely from lisbon"]}', store=store)
        with pytest.raises(RuntimeError):
            pipeline.run("u1", TURNS)

    def test_pending_cap_soft_deletes_oldest(self):
        store = InMemoryMemoryStore()
        store.add("u1", "first pending memory", status="pending")
        store.add("u1", "second pending memory here", status="pending")
        pipeline, _, _ = _pipeline('{"items":["project uses postgres database"]}', store=store, pending_cap=2)
        pipeline.run("u1", TURNS)
        live = [r.content for r in store.rows("u1") if not r.is_deleted]
        assert live == ["project uses postgres database", "second pending memory here"]

    def test_max_items_per_run(self):
        output = (
            '{"items":["user likes hiking trips","project uses postgres database",'
            '"works remotely from lisbon"]}'
        )
        pipeline, _, _ = _pipeline(output, max_memory_items=2)
        result = pipeline.run("u1", TURNS)
        assert result.inserted_count == 2
        assert result.skipped_count == 1

    def test_recent_window_limit(self):
        pipeline, extractor, _ = _pipeline('{"items":[]}')
        turns = [{"role": "user", "content": f"turn {i}"} for i in range(35)]
        pipeline.run("u1", turns)
        window = extractor.extract.call_args[0][0]
        assert len(window) == 30
        assert window[0]["content"] == "turn 5"
        assert window[-1]["content"] == "turn 34"

    def test_pending_cap_enforced_when_nothing_inserted(self):
        store = InMemoryMemoryStore()
        for content in ("first pending memory", "second pending memory", "third pending memory"):
            store.add("u1", content, status="pending")
        pipeline, _, _ = _pipeline("not json at all", store=store, pending_cap=2)
        pipeline.run("u1", TURNS)
        live = [r.content for r in store.rows("u1") if not r.is_deleted]
        assert live == ["third pending memory", "second pending memory"]


class TestMergePass:
    EXTRACTED = '{"items":["likes tea a lot","enjoys drinking tea a lot"]}'

    def test_merge_output_replaces_candidates(self):
        store = InMemoryMemoryStore()
        store.add("u1", "works remotely from lisbon")
        store.add("u1", "short")
        pipeline, extractor, _ = _pipeline(
            self.EXTRACTED, store=store, merge_output=["user enjoys drinking tea"]
        )

        result = pipeline.run("u1", TURNS, merge_enabled=True)

        assert result.items == ["user enjoys drinking tea"]
        assert result.skipped_count == 1
        extractor.merge.assert_called_once_with(
            ["likes tea a lot", "enjoys drinking tea a lot"],
            ["works remotely from lisbon"],
            max_items=20,
        )

    def test_merge_failure_keeps_candidates(self):
        pipeline, extractor, _ = _pipeline(self.EXTRACTED, merge_output=None)
        result = pipeline.run("u1", TURNS, merge_enabled=True)
        extractor.merge.assert_called_once()
        assert result.items == ["likes tea a lot", "enjoys drinking tea a lot"]

    def test_merge_exception_keeps_candidates(self):
        pipeline, extractor, _ = _pipeline(self.EXTRACTED)
        extractor.merge.side_effect = RuntimeError("boom")
        assert pipeline.run("u1", TURNS, merge_enabled=True).inserted_count == 2

    def test_merge_disabled_skips_call(self):
        pipeline, extractor, _ = _pipeline(self.EXTRACTED, merge_output=["anything merged"])
        result = pipeline.run("u1", TURNS, merge_enabled=False)
        extractor.merge.assert_not_called()
        assert result.inserted_count == 2

    def test_merged_items_capped(self):
        merged = [f"memory item number {i} details" for i in range(25)]
        pipeline, _, _ = _pipeline(
            self.EXTRACTED, merge_output=merged, max_memory_items=30
        )
        result = pipeline.run("u1", TURNS, merge_enabled=True)
        assert result.items == merged[:20]

    def test_merged_items_still_deduplicated(self):
        store = InMemoryMemoryStore()
        store.add("u1", "User enjoys drinking tea.")
        pipeline, _, _ = _pipeline(
            self.EXTRACTED, store=store, merge_output=["user enjoys drinking tea", "project uses postgres database"]
        )
        result = pipeline.run("u1", TURNS, merge_enabled=True)
        assert result.items == ["project uses postgres database"]

    def test_no_candidates_skips_merge(self):
        pipeline, extractor, _ = _pipeline('{"items":["x"]}', merge_output=["anything merged"])
        pipeline.run("u1", TURNS, merge_enabled=True)
        extractor.merge.assert_not_called()
