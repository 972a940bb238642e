import base64
import io

import numpy as np
import pytest
import soundfile as sf

from linguist_daily.audio import (
    AudioDecodeError,
    BufferedBackend,
    BufferSource,
    StreamedBackend,
    _GainStage,
    create_backend,
    decode_audio,
)
from linguist_daily.models import Article, LoopRange


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class FakeStream:
    def __init__(self, source, on_finished):
        self.source = source
        self.on_finished = on_finished
        self.started = False
        self.stopped = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.stopped = True

    def close(self):
        self.closed = True


class StreamFactory:
    def __init__(self):
        self.streams = []

    def __call__(self, sample_rate, source, on_finished):
        s = FakeStream(source, on_finished)
        self.streams.append(s)
        return s


def _backend(seconds=10.0, sr=1000):
    clock = FakeClock()
    factory = StreamFactory()
    b = BufferedBackend(np.zeros(int(seconds * sr), dtype=np.float32), sr, clock=clock, stream_factory=factory)
    return b, clock, factory


def test_decode_pcm_little_endian_int16():
    raw = np.array([0, 16384, -32768], dtype="<i2").tobytes() + b"\x01"
    samples, sr = decode_audio(base64.b64encode(raw).decode("ascii"), "pcm")
    assert sr == 24000
    assert samples.dtype == np.float32
    assert samples.tolist() == [0.0, 0.5, -1.0]


def test_decode_encoded_container_downmixes_to_mono():
    buf = io.BytesIO()
    stereo = np.stack([np.full(800, 0.5), np.full(800, -0.5)], axis=1)
    sf.write(buf, stereo, 8000, format="WAV")
    samples, sr = decode_audio(base64.b64encode(buf.getvalue()).decode("ascii"), "wav")
    assert sr == 8000
    assert samples.ndim == 1
    assert len(samples) == 800
    assert np.allclose(samples, 0.0, atol=1e-3)


def test_decode_rejects_empty_and_garbage():
    with pytest.raises(AudioDecodeError):
        decode_audio("", "pcm")
    with pytest.raises(AudioDecodeError):
        decode_audio(base64.b64encode(b"not audio at all").decode("ascii"), "mp3")


def test_buffered_duration_known_at_construction():
    b, _, _ = _backend(10.0)
    got = []
    b.on_duration(got.append)
    assert b.duration == 10.0
    assert got == [10.0]


def test_buffered_play_poll_pause_resume():
    b, clock, factory = _backend()
    b.play(2.0)
    assert b.playing
    clock.now += 3.0
    assert b.poll() == pytest.approx(5.0)

    b.pause()
    assert not b.playing
    assert b.state.position == pytest.approx(5.0)
    assert factory.streams[0].stopped and factory.streams[0].closed

    # One-shot sources: resuming builds a new stream.
    b.play(b.state.position)
    assert len(factory.streams) == 2
    assert factory.streams[1].source.cursor == 5000


def test_buffered_loop_position_wraps():
    b, clock, _ = _backend()
    b.play(3.0, LoopRange(3.0, 5.0))
    clock.now += 5.0
    assert b.poll() == pytest.approx(4.0)
    assert b.loop == LoopRange(3.0, 5.0)


def test_buffered_loop_clamps_offset_and_end():
    b, _, factory = _backend()
    b.play(1.0, LoopRange(3.0, 12.0))
    assert b.loop.end == 10.0
    assert b.state.position == 3.0
    src = factory.streams[0].source
    assert src.loop and src.loop_start == 3.0 and src.loop_end == 10.0


def test_buffered_natural_end_rewinds():
    b, clock, factory = _backend()
    b.play(0.0)
    clock.now += 10.0
    factory.streams[0].on_finished()
    assert not b.playing
    assert b.state.position == 0.0


def test_buffered_stale_end_after_stop_is_ignored():
    b, clock, factory = _backend()
    b.play(1.0)
    first = factory.streams[0]
    clock.now += 2.0
    b.pause()
    pos = b.state.position
    first.on_finished()
    assert b.state.position == pos
    b.play(pos)
    first.on_finished()
    assert b.playing


def test_buffered_seek_clears_loop_and_restarts():
    b, _, factory = _backend()
    b.play(3.0, LoopRange(3.0, 5.0))
    b.seek(7.0)
    assert b.loop is None
    assert b.playing
    assert len(factory.streams) == 2
    assert factory.streams[1].source.cursor == 7000


def test_buffered_seek_while_paused_only_moves_offset():
    b, _, factory = _backend()
    b.seek(4.0)
    assert not b.playing
    assert b.poll() == 4.0
    assert factory.streams == []


def test_buffered_volume_applies_without_restart():
    clock = FakeClock()
    factory = StreamFactory()
    b = BufferedBackend(np.ones(1000, dtype=np.float32), 1000, clock=clock, stream_factory=factory)
    b.play(0.0)
    b.set_volume(0.5)
    assert len(factory.streams) == 1
    assert np.allclose(factory.streams[0].source.render(10), 0.5)
    b.set_volume(3.0)
    assert b.state.volume == 1.0


def test_buffer_source_wraps_inside_loop():
    src = BufferSource(np.arange(10, dtype=np.float32), 10, _GainStage(1.0))
    src.loop, src.loop_start, src.loop_end = True, 0.2, 0.5
    src.cursor = 2
    assert src.render(7).tolist() == [2, 3, 4, 2, 3, 4, 2]
    assert not src.finished


def test_buffer_source_finishes_at_end():
    src = BufferSource(np.arange(4, dtype=np.float32), 4, _GainStage(1.0))
    out = src.render(6)
    assert out.tolist() == [0, 1, 2, 3, 0, 0]
    assert src.finished


class FakePlayer:
    def __init__(self):
        self.time = 0.0
        self.playing = False
        self.set_times = []
        self.volume = None
        self.released = False
        self.length_cb = None
        self.end_cb = None

    def on_length(self, cb):
        self.length_cb = cb

    def on_end(self, cb):
        self.end_cb = cb

    def play(self):
        self.playing = True

    def pause(self):
        self.playing = False

    def get_time(self):
        return self.time

    def set_time(self, seconds):
        self.time = seconds
        self.set_times.append(seconds)

    def set_volume(self, volume):
        self.volume = volume

    def release(self):
        self.released = True


def test_streamed_duration_arrives_from_metadata():
    player = FakePlayer()
    b = StreamedBackend("https://example.com/a.mp3", player=player)
    got = []
    b.on_duration(got.append)
    assert b.duration == 0.0 and got == []
    player.length_cb(42.0)
    assert b.duration == 42.0
    assert got == [42.0]


def test_streamed_loop_rewinds_on_poll():
    player = FakePlayer()
    b = StreamedBackend("u", player=player)
    player.length_cb(30.0)
    b.play(10.0, LoopRange(10.0, 12.0))
    assert player.playing and player.time == 10.0
    player.time = 12.3
    assert b.poll() == 10.0
    assert player.time == 10.0


def test_streamed_pause_and_seek_while_paused():
    player = FakePlayer()
    b = StreamedBackend("u", player=player)
    player.length_cb(30.0)
    b.play(0.0)
    player.time = 6.5
    b.pause()
    assert not b.playing and b.state.position == 6.5
    b.seek(20.0)
    assert player.time == 20.0
    assert not player.playing


def test_streamed_end_and_close():
    player = FakePlayer()
    b = StreamedBackend("u", player=player)
    player.length_cb(5.0)
    b.play(1.0)
    player.end_cb()
    assert not b.playing and b.state.position == 0.0
    b.set_volume(0.25)
    assert player.volume == 0.25
    b.close()
    assert player.released


def test_streamed_loop_on_last_sentence_wraps_at_media_end():
    player = FakePlayer()
    b = StreamedBackend("u", player=player)
    player.length_cb(30.0)
    b.play(27.9, LoopRange(27.9, 30.0))
    player.time = 29.95
    assert b.poll() == 27.9

    player.time = 29.5
    player.playing = False
    player.end_cb()
    assert b.playing and b.loop is not None
    assert b.poll() == 27.9
    assert player.playing and player.time == 27.9


def test_streamed_end_without_loop_drops_stale_loop():
    player = FakePlayer()
    b = StreamedBackend("u", player=player)
    player.length_cb(30.0)
    b.play(5.0, LoopRange(5.0, 7.0))
    b.state.playing = False
    player.end_cb()
    assert b.loop is None
    assert not b.playing and b.poll() == 0.0


def test_create_backend_prefers_official_url():
    pcm = base64.b64encode(np.zeros(2400, dtype="<i2").tobytes()).decode("ascii")
    both = Article(title="t", content="c", language="French", audio_url="u", audio_base64=pcm, audio_encoding="pcm")
    assert isinstance(create_backend(both, player=FakePlayer()), StreamedBackend)

    inline = Article(title="t", content="c", language="French", audio_base64=pcm, audio_encoding="pcm")
    b = create_backend(inline, stream_factory=StreamFactory(), clock=FakeClock())
    assert isinstance(b, BufferedBackend)
    assert b.duration == pytest.approx(0.1)

    assert create_backend(Article(title="t", content="c", language="French")) is None
