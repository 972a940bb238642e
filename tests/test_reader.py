import base64

import numpy as np

from linguist_daily.models import Article
from linguist_daily.reader import ArticleSession, open_session


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class _Stream:
    def __init__(self, on_finished):
        self.on_finished = on_finished
        self.closed = False

    def start(self):
        pass

    def stop(self):
        pass

    def close(self):
        self.closed = True


class _Factory:
    def __init__(self):
        self.streams = []

    def __call__(self, sample_rate, source, on_finished):
        s = _Stream(on_finished)
        self.streams.append(s)
        return s


def _article(seconds=10.0):
    pcm = np.zeros(int(24000 * seconds), dtype="<i2").tobytes()
    return Article(
        title="Greeting",
        content="Hello world. How are you?",
        language="English",
        audio_base64=base64.b64encode(pcm).decode("ascii"),
        audio_encoding="pcm",
    )


def _session(article=None):
    clock, factory = _Clock(), _Factory()
    s = ArticleSession(article or _article(), use_punkt=False, clock=clock, stream_factory=factory)
    return s, clock, factory


def test_spans_built_once_duration_known():
    s, _, _ = _session()
    assert s.duration == 10.0
    assert [x.text for x in s.sentences] == ["Hello world.", " How are you?"]
    assert s.spans[-1].end_time == 10.0


def test_play_sentence_loops_padded_range():
    s, clock, _ = _session()
    s.play_sentence("s-1")
    assert s.looping_id == "s-1"
    loop = s.backend.loop
    assert abs(loop.start - (s.spans[1].start_time - 0.1)) < 1e-9
    assert loop.end == 10.0
    clock.now += 1.0
    assert s.active_span_id() == "s-1"


def test_seek_clears_sentence_loop():
    s, _, _ = _session()
    s.play_sentence("s-0")
    s.seek(8.0)
    assert s.looping_id is None
    assert s.backend.loop is None
    assert s.active_span_id() == "s-1"


def test_toggle_play_resumes_and_restarts_after_end():
    s, clock, _ = _session()
    s.toggle_play()
    assert s.backend.playing
    clock.now += 2.0
    s.toggle_play()
    assert not s.backend.playing
    assert s.backend.state.position == 2.0

    s.backend.state.position = 10.0
    s.toggle_play()
    assert s.backend.playing
    assert s.backend.poll() == 0.0


def test_step_sentence_moves_loop():
    s, _, _ = _session()
    s.step_sentence(1)
    assert s.looping_id == "s-1"
    s.step_sentence(-1)
    assert s.looping_id == "s-0"
    s.step_sentence(-1)
    assert s.looping_id == "s-0"


def test_clear_loop_keeps_playing_linearly():
    s, _, factory = _session()
    s.play_sentence("s-0")
    s.clear_loop()
    assert s.looping_id is None
    assert s.backend.loop is None
    assert s.backend.playing
    assert len(factory.streams) == 2


def test_open_session_releases_previous_backend():
    first, _, factory = _session()
    first.toggle_play()
    stream = factory.streams[0]
    second = open_session(_article(4.0), first, use_punkt=False, clock=_Clock(), stream_factory=_Factory())
    assert stream.closed
    assert first.backend is None
    assert second.duration == 4.0


def test_article_without_narration():
    s = ArticleSession(Article(title="t", content="Just text.", language="French"), use_punkt=False)
    assert not s.has_narration
    s.toggle_play()
    s.play_sentence("s-0")
    assert s.active_span_id() == "s-0"
    assert s.duration == 0.0
    s.close()
