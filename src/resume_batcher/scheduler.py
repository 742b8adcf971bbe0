"""Token-budget batch scheduler.

Packs documents into the fewest calls that stay under the per-request token
ceiling:

1. Fixed overhead = shared context + prompt template + safety buffer
2. Optional keyword-similarity clustering (only for larger inputs)
3. Greedy accumulation across clusters, honouring min/max batch sizes
4. Validation pass that re-splits any batch over the ceiling or max size
5. Batch metadata (ids, estimates, utilisation) and rolling statistics
"""

import logging
import math
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from .keywords import extract_keywords, jaccard
from .models import BatchConfig

logger = logging.getLogger(__name__)

RUN_HISTORY_SIZE = 100
MIN_RUNS_FOR_ADVICE = 5
ADVICE_WINDOW = 10
LOW_UTILIZATION_PCT = 60.0
HIGH_UTILIZATION_PCT = 85.0


def _tokens(entries: Sequence["BatchEntry"]) -> int:
    return sum(e.estimated_tokens for e in entries)


def estimate_tokens(text: Optional[str], words_per_token: float = 0.75) -> int:
    """Approximate token count: ceil(words / words_per_token).

    This is a word-count heuristic, not a tokenizer. The configured buffer
    absorbs its error.
    """
    if not text:
        return 0
    return math.ceil(len(text.split()) / words_per_token)


@dataclass
class BatchEntry:
    """One document as the scheduler sees it."""
    item_id: str
    text: str
    estimated_tokens: Optional[int] = None     # Filled in by create_batches if missing
    keywords: Optional[FrozenSet[str]] = None  # Filled in when grouping runs


@dataclass
class Batch:
    """A group of entries dispatched in one service call."""
    batch_id: str
    entries: List[BatchEntry]
    estimated_tokens: int
    fixed_overhead_tokens: int
    max_tokens: int
    split: bool = False
    oversized: bool = False
    context: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def size(self) -> int:
        return len(self.entries)

    @property
    def item_ids(self) -> List[str]:
        return [entry.item_id for entry in self.entries]

    @property
    def total_tokens(self) -> int:
        return self.estimated_tokens + self.fixed_overhead_tokens

    @property
    def token_utilization(self) -> float:
        """Percentage of the per-call ceiling used, one decimal."""
        return round(self.total_tokens / self.max_tokens * 100, 1)

    def summary(self) -> Dict[str, Any]:
        return {
            "id": self.batch_id,
            "size": self.size,
            "estimated_tokens": self.estimated_tokens,
            "total_tokens": self.total_tokens,
            "token_utilization": self.token_utilization,
            "split": self.split,
            "oversized": self.oversized,
        }


class BatchScheduler:
    """Creates token-budget batches and keeps rolling batching statistics."""

    def __init__(self, config: Optional[BatchConfig] = None):
        self.config = config or BatchConfig()
        self._lock = threading.Lock()
        self._history: deque = deque(maxlen=RUN_HISTORY_SIZE)
        self._stats = {
            "total_batches": 0,
            "total_items": 0,
            "total_tokens": 0,
            "average_batch_size": 0.0,
            "average_token_usage": 0.0,
            "token_efficiency": 0.0,
        }

    def estimate_tokens(self, text: Optional[str]) -> int:
        return estimate_tokens(text, self.config.words_per_token)

    def fixed_overhead(self, shared_context: str = "") -> int:
        return (
            self.estimate_tokens(shared_context)
            + self.config.base_prompt_tokens
            + self.config.token_buffer
        )

    def create_batches(
        self,
        entries: Sequence[BatchEntry],
        shared_context: str = "",
    ) -> List[Batch]:
        """Pack entries into batches under the per-request token ceiling.

        Args:
            entries: Documents to pack, in queue order
            shared_context: Text sent once per call alongside every batch

        Returns:
            Batches in packing order. Every batch not flagged ``oversized``
            satisfies ``total_tokens <= max_tokens_per_request``.
        """
        if not entries:
            return []

        cfg = self.config
        overhead = self.fixed_overhead(shared_context)
        available = cfg.max_tokens_per_request - overhead

        for entry in entries:
            if entry.estimated_tokens is None:
                entry.estimated_tokens = self.estimate_tokens(entry.text)

        logger.debug(
            "Batching %d entries: overhead %d tokens, %d available per batch",
            len(entries), overhead, available,
        )

        groups = self.group_similar(entries)
        candidates = self._accumulate(groups, available)

        batches: List[Batch] = []
        for candidate in candidates:
            tokens = _tokens(candidate)
            if tokens + overhead > cfg.max_tokens_per_request or len(candidate) > cfg.max_batch_size:
                logger.warning(
                    "Batch of %d entries needs %d tokens (ceiling %d, max size %d); splitting",
                    len(candidate), tokens + overhead, cfg.max_tokens_per_request, cfg.max_batch_size,
                )
                batches.extend(self._split(candidate, overhead, available, shared_context))
            else:
                batches.append(self._make_batch(candidate, overhead, shared_context))

        self._record_run(batches)
        logger.info(
            "Created %d batch(es) for %d entries (average size %.1f)",
            len(batches), len(entries), len(entries) / len(batches),
        )
        return batches

    def group_similar(self, entries: Sequence[BatchEntry]) -> List[List[BatchEntry]]:
        """Greedy seed clustering on keyword Jaccard similarity.

        Each entry joins the first cluster whose seed it is similar enough
        to, otherwise it seeds a new cluster. Small inputs form one group.
        """
        if len(entries) < self.config.grouping_threshold:
            return [list(entries)]

        for entry in entries:
            if entry.keywords is None:
                entry.keywords = extract_keywords(entry.text)

        seeds: List[BatchEntry] = []
        clusters: List[List[BatchEntry]] = []
        for entry in entries:
            for seed, cluster in zip(seeds, clusters):
                if jaccard(seed.keywords, entry.keywords) >= self.config.similarity_threshold:
                    cluster.append(entry)
                    break
            else:
                seeds.append(entry)
                clusters.append([entry])

        logger.debug("Grouped %d entries into %d similarity cluster(s)", len(entries), len(clusters))
        return clusters

    def _accumulate(self, groups: List[List[BatchEntry]], available: int) -> List[List[BatchEntry]]:
        cfg = self.config
        closed: List[List[BatchEntry]] = []
        current: List[BatchEntry] = []
        tokens = 0
        mixed = False  # current spans a cluster boundary

        for group in groups:
            for entry in group:
                overflows = tokens + entry.estimated_tokens > available
                if (overflows or len(current) >= cfg.max_batch_size) and len(current) >= cfg.min_batch_size:
                    closed.append(current)
                    current, tokens, mixed = [], 0, False
                current.append(entry)
                tokens += entry.estimated_tokens

            # A whole cluster run closes here; short runs carry into the next cluster
            if current and len(current) >= cfg.min_batch_size and not mixed:
                closed.append(current)
                current, tokens = [], 0
            elif current:
                mixed = True

        if current:
            self._settle_tail(closed, current, available)
        return closed

    def _settle_tail(self, closed: List[List[BatchEntry]], tail: List[BatchEntry], available: int) -> None:
        """Place the final run, keeping every batch within [min, max] where the budget allows."""
        cfg = self.config
        if not closed or len(tail) >= cfg.min_batch_size:
            closed.append(tail)
            return

        previous = closed[-1]
        if (
            len(previous) + len(tail) <= cfg.max_batch_size
            and _tokens(previous) + _tokens(tail) <= available
        ):
            previous.extend(tail)
            return

        # Too big to merge: borrow from the end of the previous batch instead
        while (
            len(tail) < cfg.min_batch_size
            and len(previous) > cfg.min_batch_size
            and _tokens(tail) + previous[-1].estimated_tokens <= available
        ):
            tail.insert(0, previous.pop())
        closed.append(tail)

    def _split(
        self,
        candidate: List[BatchEntry],
        overhead: int,
        available: int,
        shared_context: str,
    ) -> List[Batch]:
        pieces: List[List[BatchEntry]] = []
        current: List[BatchEntry] = []
        tokens = 0
        for entry in candidate:
            if current and (
                tokens + entry.estimated_tokens > available
                or len(current) >= self.config.max_batch_size
            ):
                pieces.append(current)
                current, tokens = [], 0
            current.append(entry)
            tokens += entry.estimated_tokens
        if current:
            pieces.append(current)

        batches = []
        for piece in pieces:
            batch = self._make_batch(piece, overhead, shared_context, split=True)
            if batch.total_tokens > batch.max_tokens:
                batch.oversized = True
                logger.error(
                    "Entry %s alone needs %d tokens, over the %d ceiling",
                    piece[0].item_id, batch.total_tokens, batch.max_tokens,
                )
            batches.append(batch)
        return batches

    def _make_batch(
        self,
        entries: List[BatchEntry],
        overhead: int,
        shared_context: str,
        split: bool = False,
    ) -> Batch:
        return Batch(
            batch_id=f"batch_{uuid.uuid4().hex[:12]}",
            entries=list(entries),
            estimated_tokens=sum(e.estimated_tokens for e in entries),
            fixed_overhead_tokens=overhead,
            max_tokens=self.config.max_tokens_per_request,
            split=split,
            context=shared_context,
        )

    # ------------------------------------------------------------------
    # Statistics and tuning advice
    # ------------------------------------------------------------------

    def _record_run(self, batches: List[Batch]) -> None:
        if not batches:
            return
        items = sum(b.size for b in batches)
        utilization = sum(b.token_utilization for b in batches) / len(batches)
        with self._lock:
            stats = self._stats
            stats["total_batches"] += len(batches)
            stats["total_items"] += items
            stats["total_tokens"] += sum(b.total_tokens for b in batches)
            stats["average_batch_size"] = stats["total_items"] / stats["total_batches"]
            stats["average_token_usage"] = stats["total_tokens"] / stats["total_batches"]
            stats["token_efficiency"] = (
                stats["average_token_usage"] / self.config.max_tokens_per_request * 100
            )
            self._history.append({
                "timestamp": datetime.now().isoformat(),
                "batch_count": len(batches),
                "item_count": items,
                "average_size": items / len(batches),
                "token_utilization": utilization,
            })

    def recommendations(self) -> Dict[str, Any]:
        """Tuning advice from the most recent batching runs."""
        with self._lock:
            history = list(self._history)
        if len(history) < MIN_RUNS_FOR_ADVICE:
            return {"message": "Not enough data for optimization", "recommendations": []}

        recent = history[-ADVICE_WINDOW:]
        avg_utilization = sum(h["token_utilization"] for h in recent) / len(recent)
        avg_size = sum(h["average_size"] for h in recent) / len(recent)
        cfg = self.config

        advice = []
        if avg_utilization < LOW_UTILIZATION_PCT:
            advice.append({
                "type": "increase_batch_size",
                "current": cfg.target_batch_size,
                "recommended": min(cfg.max_batch_size, cfg.target_batch_size + 3),
                "reason": f"Low token utilization ({avg_utilization:.1f}%)",
            })
        if avg_utilization > HIGH_UTILIZATION_PCT:
            advice.append({
                "type": "decrease_batch_size",
                "current": cfg.target_batch_size,
                "recommended": max(cfg.min_batch_size, cfg.target_batch_size - 2),
                "reason": f"High token utilization ({avg_utilization:.1f}%), risk of exceeding limits",
            })
        if avg_size < cfg.min_batch_size:
            advice.append({
                "type": "reduce_token_overhead",
                "reason": f"Average batch size ({avg_size:.1f}) below minimum",
            })

        return {
            "current_performance": {
                "token_utilization": round(avg_utilization, 1),
                "average_batch_size": round(avg_size, 1),
            },
            "recommendations": advice,
        }

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats["batch_history"] = list(self._history)[-10:]
        stats["configuration"] = {
            "max_tokens_per_request": self.config.max_tokens_per_request,
            "target_batch_size": self.config.target_batch_size,
            "min_batch_size": self.config.min_batch_size,
            "max_batch_size": self.config.max_batch_size,
        }
        return stats

    def generate_report(self, batches: List[Batch]) -> Dict[str, Any]:
        """Summary of a set of batches plus current tuning advice."""
        total_items = sum(b.size for b in batches)
        total_tokens = sum(b.total_tokens for b in batches)
        count = len(batches) or 1
        return {
            "summary": {
                "total_batches": len(batches),
                "total_items": total_items,
                "average_batch_size": round(total_items / count, 1),
                "average_token_usage": round(total_tokens / count),
                "token_utilization": round(
                    total_tokens / count / self.config.max_tokens_per_request * 100, 1
                ),
            },
            "batches": [b.summary() for b in batches],
            "optimization": self.recommendations(),
            "generated_at": datetime.now().isoformat(),
        }
