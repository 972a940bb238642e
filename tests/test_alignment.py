from linguist_daily import alignment
from linguist_daily.alignment import (
    _spans_to_partition,
    active_span,
    build_spans,
    iso_code,
    map_timeline,
    segment,
    sentence_loop_range,
    visible_spans,
    weight,
)
from linguist_daily.models import SentenceSpan


def test_segment_partitions_text_exactly():
    text = "First line here. Second, with a pause!\n\nThird one?  Trailing words"
    parts = segment(text, "English", use_punkt=False)
    assert "".join(p for p, _ in parts) == text
    for p, start in parts:
        assert text[start : start + len(p)] == p


def test_segment_whitespace_joins_following_sentence():
    parts = segment("Hello world. How are you?", "English", use_punkt=False)
    assert [p for p, _ in parts] == ["Hello world.", " How are you?"]
    assert [s for _, s in parts] == [0, 12]


def test_segment_punkt_and_regex_agree_on_simple_text():
    text = "Hello world. How are you?"
    assert segment(text, "English") == segment(text, "English", use_punkt=False)


def test_segment_cjk_terminators():
    text = "今日は晴れです。明日は雨です。"
    parts = segment(text, "Japanese")
    assert [p for p, _ in parts] == ["今日は晴れです。", "明日は雨です。"]


def test_segment_leading_terminators_kept_in_partition():
    text = "...Hi there"
    parts = segment(text, "English", use_punkt=False)
    assert "".join(p for p, _ in parts) == text
    assert parts[0] == ("...", 0)


def test_segment_empty_text():
    assert segment("", "English") == []


def test_weight_counts_punctuation_quotes_and_newlines():
    assert weight("Hello world.") == 12 + 20
    assert weight("a, b") == 4 + 8
    assert weight('"x"') == 3 + 2 * 2
    assert weight("a\nb") == 3 + 25
    assert weight("") == 0
    for text in ("x", "。", "Ok", "«Oui»"):
        assert weight(text) > 0


def test_two_sentence_scenario_splits_before_midpoint():
    spans = build_spans("Hello world. How are you?", "English", 10.0, use_punkt=False)
    assert len(spans) == 2
    assert spans[0].start_time == 0.0
    assert abs(spans[0].end_time - 320 / 65) < 1e-9
    assert spans[0].end_time < 5.0
    assert spans[1].start_time == spans[0].end_time
    assert spans[1].end_time == 10.0


def test_map_timeline_is_contiguous_and_ends_at_duration():
    text = "One. Two, three! Four?\nFive six seven eight."
    spans = build_spans(text, "English", 37.3, use_punkt=False)
    for a, b in zip(spans, spans[1:]):
        assert a.end_time == b.start_time
        assert a.end_char == b.start_char
    assert spans[-1].end_time == 37.3
    assert [s.id for s in spans] == [f"s-{i}" for i in range(len(spans))]


def test_map_timeline_zero_weight_degrades_to_zero_length():
    spans = map_timeline([("", 0)], 12.0)
    assert len(spans) == 1
    assert spans[0].start_time == 0.0 and spans[0].end_time == 0.0


def test_map_timeline_unknown_duration():
    spans = map_timeline([("A.", 0), (" B.", 2)], 0.0)
    assert all(s.start_time == 0.0 and s.end_time == 0.0 for s in spans)


def test_visible_spans_drop_whitespace_only():
    spans = map_timeline([("A.", 0), ("   ", 2), ("B.", 5)], 3.0)
    assert [s.text for s in visible_spans(spans)] == ["A.", "B."]


def test_active_span_boundaries():
    spans = build_spans("Hello world. How are you?", "English", 10.0, use_punkt=False)
    assert active_span(spans, 0.0).id == "s-0"
    assert active_span(spans, spans[0].end_time).id == "s-1"
    assert active_span(spans, 10.0).id == "s-1"
    assert active_span(spans, 10.5) is None
    assert active_span([], 1.0) is None


def test_sentence_loop_range_pads_and_clamps():
    span = SentenceSpan(id="s-0", text="x", start_char=0, end_char=1, start_time=0.05, end_time=9.5)
    loop = sentence_loop_range(span, 10.0)
    assert loop.start == 0.0
    assert loop.end == 10.0

    mid = SentenceSpan(id="s-1", text="y", start_char=1, end_char=2, start_time=3.0, end_time=4.0)
    loop = sentence_loop_range(mid, 10.0)
    assert abs(loop.start - 2.9) < 1e-9
    assert loop.end == 5.0


def test_iso_code_defaults_to_english():
    assert iso_code("Cantonese") == "zh-HK"
    assert iso_code("Klingon") == "en"


def _assert_partition(text, parts):
    assert "".join(p for p, _ in parts) == text
    for p, start in parts:
        assert text[start : start + len(p)] == p


def test_spans_to_partition_folds_gaps_forward_and_tail_back():
    text = "  Hi there.  Bye now.  "
    parts = _spans_to_partition(text, [(2, 11), (13, 21)])
    assert parts == [("  Hi there.", 0), ("  Bye now.  ", 11)]
    _assert_partition(text, parts)


def test_spans_to_partition_skips_overlapping_spans():
    text = "abcdefghij"
    parts = _spans_to_partition(text, [(0, 5), (3, 5), (3, 8)])
    assert parts == [("abcde", 0), ("fghij", 5)]
    _assert_partition(text, parts)


def test_spans_to_partition_empty_span_and_no_spans():
    assert _spans_to_partition("abcdefgh", [(4, 4), (6, 8)]) == [("abcd", 0), ("efgh", 4)]
    assert _spans_to_partition("  lone", []) == [("  lone", 0)]


class _FakePunkt:
    def __init__(self, spans=None, error=None):
        self.spans = spans or []
        self.error = error

    def span_tokenize(self, text):
        if self.error is not None:
            raise self.error
        return iter(self.spans)


def test_segment_uses_language_tokenizer_when_available(monkeypatch):
    text = "Dr. Smith arrived. He sat."
    monkeypatch.setattr(alignment, "_punkt_tokenizer", lambda code: _FakePunkt([(0, 18), (19, 26)]))
    parts = segment(text, "English")
    assert parts == [("Dr. Smith arrived.", 0), (" He sat.", 18)]
    # punctuation splitting would break after "Dr."
    assert segment(text, "English", use_punkt=False)[0] == ("Dr.", 0)


def test_segment_falls_back_when_tokenizer_fails(monkeypatch):
    text = "One. Two."
    monkeypatch.setattr(alignment, "_punkt_tokenizer", lambda code: _FakePunkt(error=LookupError("punkt_tab")))
    assert segment(text, "French") == [("One.", 0), (" Two.", 4)]
    monkeypatch.setattr(alignment, "_punkt_tokenizer", lambda code: _FakePunkt([]))
    assert segment(text, "French") == [("One.", 0), (" Two.", 4)]
