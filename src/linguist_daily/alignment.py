"""Sentence segmentation and heuristic sentence-to-audio time mapping.

There are no server-side timestamps for narration, so each sentence gets a
"speech weight" (characters plus pause penalties for punctuation and line
breaks) and the narration duration is split proportionally to those weights.
"""

from __future__ import annotations

import re
from typing import Dict, List, Optional, Sequence, Tuple

from .models import LoopRange, SentenceSpan

ISO_CODES: Dict[str, str] = {
    "Japanese": "ja",
    "Korean": "ko",
    "French": "fr",
    "Italian": "it",
    "Dutch": "nl",
    "English": "en",
    "Cantonese": "zh-HK",
    "Spanish": "es",
}
DEFAULT_ISO_CODE = "en"

# Punkt ships models for these; CJK languages always take the punctuation path.
PUNKT_MODELS: Dict[str, str] = {
    "en": "english",
    "fr": "french",
    "it": "italian",
    "nl": "dutch",
    "es": "spanish",
}

TERMINATORS = ".!?。！？"
_SENTENCE_RE = re.compile(r"[^.!?。！？]+[.!?。！？]+[\"'”’」』]?|[^.!?。！？]+$")
_TERMINATOR_RE = re.compile(r"[.!?。！？]")
_PAUSE_RE = re.compile(r"[,;：、，；]")
_QUOTE_RE = re.compile(r"[\"'“”‘’]")

TERMINATOR_WEIGHT = 20
PAUSE_WEIGHT = 8
QUOTE_WEIGHT = 2
NEWLINE_WEIGHT = 25

LOOP_LEAD_IN = 0.1
LOOP_TAIL = 1.0

_punkt_cache: Dict[str, object] = {}


def iso_code(language: str) -> str:
    return ISO_CODES.get(str(getattr(language, "value", language)), DEFAULT_ISO_CODE)


def _punkt_tokenizer(code: str):
    model = PUNKT_MODELS.get(code)
    if model is None:
        return None
    if model in _punkt_cache:
        return _punkt_cache[model]
    try:
        from nltk.tokenize import PunktTokenizer

        tok = PunktTokenizer(model)
    except LookupError:
        # punkt_tab data not installed
        tok = None
    _punkt_cache[model] = tok
    return tok


def _regex_split(text: str) -> List[Tuple[str, int]]:
    out: List[Tuple[str, int]] = []
    pos = 0
    for m in _SENTENCE_RE.finditer(text):
        if m.start() > pos:
            out.append((text[pos : m.start()], pos))
        out.append((m.group(0), m.start()))
        pos = m.end()
    if pos < len(text):
        out.append((text[pos:], pos))
    return out


def _spans_to_partition(text: str, spans: Sequence[Tuple[int, int]]) -> List[Tuple[str, int]]:
    """Turn (start, end) sentence spans into a gapless partition of ``text``.

    The gap before each sentence is folded into that sentence; only a gap at
    the very end of the text is folded backwards.
    """
    out: List[Tuple[str, int]] = []
    pos = 0
    for _, end in spans:
        if end <= pos:
            continue
        out.append((text[pos:end], pos))
        pos = end
    if pos < len(text):
        if out:
            prev_text, prev_start = out[-1]
            out[-1] = (prev_text + text[pos:], prev_start)
        else:
            out.append((text[pos:], pos))
    return out


def segment(text: str, language: str, *, use_punkt: bool = True) -> List[Tuple[str, int]]:
    """Split ``text`` into ``(sentence, start_char)`` pairs covering it exactly."""
    if not text:
        return []
    tok = _punkt_tokenizer(iso_code(language)) if use_punkt else None
    if tok is not None:
        try:
            spans = list(tok.span_tokenize(text))
        except (ValueError, LookupError):
            spans = []
        if spans:
            return _spans_to_partition(text, spans)
    return _regex_split(text)


def weight(text: str) -> int:
    w = len(text)
    w += TERMINATOR_WEIGHT * len(_TERMINATOR_RE.findall(text))
    w += PAUSE_WEIGHT * len(_PAUSE_RE.findall(text))
    w += QUOTE_WEIGHT * len(_QUOTE_RE.findall(text))
    w += NEWLINE_WEIGHT * text.count("\n")
    return w


def map_timeline(segments: Sequence[Tuple[str, int]], duration: float) -> List[SentenceSpan]:
    """Assign start/end times proportional to each segment's weight.

    Times are computed from the running weight total, so adjacent spans share
    their boundary exactly and the last span ends at ``duration``.
    """
    weights = [weight(s) for s, _ in segments]
    total = sum(weights)
    duration = max(0.0, float(duration or 0.0))
    out: List[SentenceSpan] = []
    acc = 0
    for i, ((text, start_char), w) in enumerate(zip(segments, weights)):
        if total > 0:
            start_t = (acc / total) * duration
            acc += w
            end_t = duration if acc == total else (acc / total) * duration
        else:
            start_t = end_t = 0.0
        out.append(
            SentenceSpan(
                id=f"s-{i}",
                text=text,
                start_char=start_char,
                end_char=start_char + len(text),
                start_time=start_t,
                end_time=end_t,
            )
        )
    return out


def build_spans(text: str, language: str, duration: float, *, use_punkt: bool = True) -> List[SentenceSpan]:
    """Full partition of ``text`` with times, whitespace-only spans included."""
    return map_timeline(segment(text, language, use_punkt=use_punkt), duration)


def visible_spans(spans: Sequence[SentenceSpan]) -> List[SentenceSpan]:
    return [s for s in spans if not s.is_whitespace]


def active_span(spans: Sequence[SentenceSpan], position: float) -> Optional[SentenceSpan]:
    if not spans:
        return None
    last = spans[-1]
    for s in spans:
        if s.start_time <= position < s.end_time:
            return s
        if s is last and s.start_time <= position <= s.end_time:
            return s
    return None


def sentence_loop_range(span: SentenceSpan, duration: float) -> LoopRange:
    start = max(0.0, span.start_time - LOOP_LEAD_IN)
    end = min(float(duration), span.end_time + LOOP_TAIL)
    return LoopRange(start=start, end=max(start, end))
