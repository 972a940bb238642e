from __future__ import annotations

import time
from dataclasses import asdict
from typing import List, Optional, Sequence

from .models import VocabularyItem, WordDefinition

DAY_SECONDS = 24 * 60 * 60

# Ebbinghaus-style spacing, in days.
INTERVAL_DAYS = (1, 3, 7, 15, 30)
INTERVALS = tuple(d * DAY_SECONDS for d in INTERVAL_DAYS)


def interval_for(stage: int) -> float:
    return INTERVALS[max(0, min(stage, len(INTERVALS) - 1))]


def find_word(vocabulary: Sequence[VocabularyItem], word: str) -> Optional[VocabularyItem]:
    key = (word or "").strip().lower()
    for item in vocabulary:
        if item.word.strip().lower() == key:
            return item
    return None


def new_vocabulary_item(definition: WordDefinition, context: str = "", *, now: Optional[float] = None) -> VocabularyItem:
    now = time.time() if now is None else now
    return VocabularyItem(
        **asdict(definition),
        added_at=now,
        next_review_at=now + INTERVALS[0],
        review_stage=0,
        context_sentence=context or "",
    )


def apply_review(item: VocabularyItem, success: bool, now: Optional[float] = None) -> VocabularyItem:
    """Advance (or reset) ``item`` in place and return it."""
    now = time.time() if now is None else now
    item.review_stage = item.review_stage + 1 if success else 0
    item.next_review_at = now + interval_for(item.review_stage)
    item.last_reviewed_at = now
    return item


def due_items(vocabulary: Sequence[VocabularyItem], now: Optional[float] = None) -> List[VocabularyItem]:
    now = time.time() if now is None else now
    return sorted((v for v in vocabulary if v.next_review_at <= now), key=lambda v: v.next_review_at)
