"""Tests for token-budget batching."""

import pytest

from resume_batcher.models import BatchConfig
from resume_batcher.scheduler import Batch, BatchEntry, BatchScheduler, estimate_tokens

PY = frozenset({"python", "django", "developer"})
JAVA = frozenset({"java", "spring", "engineer"})


def entries(n, tokens, keywords=PY, prefix="r"):
    return [
        BatchEntry(item_id=f"{prefix}{i}", text="resume text", estimated_tokens=tokens, keywords=keywords)
        for i in range(n)
    ]


@pytest.fixture
def scheduler(batch_config):
    return BatchScheduler(batch_config)


def test_estimate_tokens():
    assert estimate_tokens("one two three") == 4
    assert estimate_tokens("one two three four", words_per_token=1.0) == 4
    assert estimate_tokens("") == 0
    assert estimate_tokens(None) == 0


def test_fixed_overhead_includes_context(scheduler):
    assert scheduler.fixed_overhead() == 1000
    assert scheduler.fixed_overhead("senior python role") == 1004


def test_empty_input(scheduler):
    assert scheduler.create_batches([]) == []


def test_fills_budget_exactly(scheduler):
    """10 entries of 400 tokens plus 1000 overhead fit a 5000 ceiling in one call."""
    batches = scheduler.create_batches(entries(10, 400))

    assert len(batches) == 1
    batch = batches[0]
    assert batch.size == 10
    assert batch.estimated_tokens == 4000
    assert batch.total_tokens == 5000
    assert batch.token_utilization == 100.0
    assert not batch.split
    assert not batch.oversized
    assert batch.batch_id.startswith("batch_")


def test_closes_on_token_overflow(scheduler):
    batches = scheduler.create_batches(entries(4, 1500))
    assert [b.size for b in batches] == [2, 2]
    assert all(b.total_tokens <= 5000 for b in batches)


def test_closes_on_max_batch_size(scheduler):
    batches = scheduler.create_batches(entries(12, 10))
    assert [b.size for b in batches] == [10, 2]


def test_undersized_tail_borrows_from_previous(scheduler):
    """A one-entry tail cannot join a full batch, so it borrows to reach the minimum."""
    batches = scheduler.create_batches(entries(11, 10))
    assert [b.size for b in batches] == [9, 2]
    assert batches[1].item_ids == ["r9", "r10"]


def test_undersized_tail_merges_across_clusters(scheduler):
    batches = scheduler.create_batches(entries(9, 100, PY, "py") + entries(1, 100, JAVA, "java"))

    assert [b.size for b in batches] == [10]
    assert batches[0].item_ids[-1] == "java0"


def test_sizes_stay_within_bounds():
    scheduler = BatchScheduler(BatchConfig(min_batch_size=10, target_batch_size=18, max_batch_size=25))
    batches = scheduler.create_batches(entries(26, 10))

    assert [b.size for b in batches] == [16, 10]
    assert all(10 <= b.size <= 25 for b in batches)


def test_first_batch_kept_when_total_is_small():
    scheduler = BatchScheduler(BatchConfig())
    assert [b.size for b in scheduler.create_batches(entries(3, 10))] == [3]


def test_minimum_size_overflow_is_split_by_budget(scheduler):
    batches = scheduler.create_batches(entries(2, 3000))

    assert [b.size for b in batches] == [1, 1]
    assert all(b.split for b in batches)
    assert not any(b.oversized for b in batches)
    assert all(b.total_tokens == 4000 for b in batches)


def test_single_entry_over_ceiling_is_flagged(scheduler):
    batches = scheduler.create_batches(entries(1, 4500))

    assert len(batches) == 1
    assert batches[0].oversized
    assert batches[0].total_tokens == 5500


def test_missing_estimates_are_computed(scheduler):
    entry = BatchEntry(item_id="a", text="one two three")
    scheduler.create_batches([entry])
    assert entry.estimated_tokens == 4


def test_shared_context_reduces_room(batch_config):
    scheduler = BatchScheduler(batch_config)
    context = " ".join(["word"] * 750)  # 1000 tokens
    batches = scheduler.create_batches(entries(10, 400), shared_context=context)

    assert len(batches) > 1
    assert all(b.total_tokens <= 5000 for b in batches)
    assert all(b.context == context for b in batches)


def test_similar_entries_grouped(scheduler):
    mixed = []
    for i in range(5):
        mixed.extend(entries(1, 100, PY, prefix=f"py{i}_"))
        mixed.extend(entries(1, 100, JAVA, prefix=f"java{i}_"))

    batches = scheduler.create_batches(mixed)

    assert [b.size for b in batches] == [5, 5]
    assert all(i.startswith("py") for i in batches[0].item_ids)
    assert all(i.startswith("java") for i in batches[1].item_ids)


def test_small_clusters_share_batches():
    """Ten unrelated pairs pack into one call instead of ten undersized ones."""
    scheduler = BatchScheduler(BatchConfig())
    mixed = []
    for stack in range(10):
        mixed.extend(entries(2, 100, frozenset({f"stack{stack}"}), prefix=f"s{stack}_"))

    batches = scheduler.create_batches(mixed)

    assert [b.size for b in batches] == [20]
    assert batches[0].item_ids == [e.item_id for e in mixed]


def test_dissimilar_entries_leave_at_most_one_small_batch(scheduler):
    loners = [
        BatchEntry(item_id=f"l{i}", text="resume", estimated_tokens=100, keywords=frozenset({f"k{i}"}))
        for i in range(13)
    ]

    sizes = [b.size for b in scheduler.create_batches(loners)]

    assert sizes == [10, 3]
    assert len([s for s in sizes if s < 2]) <= 1


def test_small_inputs_are_not_grouped(scheduler):
    few = entries(2, 100, PY, "py") + entries(2, 100, JAVA, "java")
    assert len(scheduler.group_similar(few)) == 1


def test_entries_without_keywords_never_cluster(scheduler):
    loners = entries(10, 100, keywords=frozenset())
    assert len(scheduler.group_similar(loners)) == 10


def test_keywords_extracted_when_grouping(scheduler):
    group = [BatchEntry(item_id=str(i), text="Senior Python developer, AWS") for i in range(10)]
    clusters = scheduler.group_similar(group)
    assert len(clusters) == 1
    assert group[0].keywords == frozenset({"senior", "python", "developer", "aws"})


def test_token_utilization_rounding():
    batch = Batch(batch_id="b", entries=[], estimated_tokens=1000, fixed_overhead_tokens=234, max_tokens=3000)
    assert batch.token_utilization == 41.1


def test_recommendations_need_history(scheduler):
    assert scheduler.recommendations()["recommendations"] == []
    for _ in range(4):
        scheduler.create_batches(entries(1, 10))
    assert "message" in scheduler.recommendations()


def test_recommendations_for_low_utilization(scheduler):
    for _ in range(5):
        scheduler.create_batches(entries(1, 10))

    advice = scheduler.recommendations()
    kinds = [r["type"] for r in advice["recommendations"]]
    assert kinds == ["increase_batch_size", "reduce_token_overhead"]
    assert advice["recommendations"][0]["recommended"] == 8
    assert advice["current_performance"]["average_batch_size"] == 1.0


def test_recommendations_for_high_utilization(scheduler):
    for _ in range(5):
        scheduler.create_batches(entries(10, 400))

    kinds = [r["type"] for r in scheduler.recommendations()["recommendations"]]
    assert kinds == ["decrease_batch_size"]


def test_stats_and_report(scheduler):
    batches = scheduler.create_batches(entries(4, 1500))
    stats = scheduler.get_stats()
    assert stats["total_batches"] == 2
    assert stats["total_items"] == 4
    assert stats["average_batch_size"] == 2.0
    assert stats["configuration"]["max_batch_size"] == 10

    report = scheduler.generate_report(batches)
    assert report["summary"]["total_batches"] == 2
    assert report["summary"]["token_utilization"] == 80.0
    assert len(report["batches"]) == 2


def test_config_rejects_unusable_budget():
    with pytest.raises(ValueError):
        BatchConfig(max_tokens_per_request=1000, token_buffer=500, base_prompt_tokens=500)
