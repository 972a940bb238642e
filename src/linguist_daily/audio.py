"""Narration decoding and the two playback engines.

``StreamedBackend`` plays an external URL through libVLC and reads position
from the player clock. ``BufferedBackend`` plays a fully decoded sample buffer
through a PortAudio output stream; every ``play`` starts a fresh source at the
requested offset, the way one-shot buffer sources behave.
"""

from __future__ import annotations

import base64
import binascii
import io
import sys
import threading
import time
from typing import Any, Callable, List, Optional, Tuple

import numpy as np
import soundfile as sf

from .clock import loop_position
from .models import Article, LoopRange, PlaybackState

try:
    import sounddevice as sd
except Exception:  # pragma: no cover - PortAudio missing at import time
    sd = None

try:
    import vlc
except Exception:  # pragma: no cover - libVLC missing at import time
    vlc = None

PCM_SAMPLE_RATE = 24000
END_TOLERANCE = 0.1


class AudioDecodeError(ValueError):
    pass


class PlaybackUnavailableError(RuntimeError):
    pass


def decode_audio(base64_data: str, encoding: Optional[str] = "pcm") -> Tuple[np.ndarray, int]:
    """Decode a base64 narration payload into mono float32 samples.

    ``pcm`` is raw little-endian 16-bit mono at 24 kHz; anything else is
    treated as an encoded container (MP3/WAV) and decoded by libsndfile.
    """
    try:
        raw = base64.b64decode(base64_data, validate=False)
    except (binascii.Error, ValueError) as e:
        raise AudioDecodeError(f"Narration payload is not valid base64: {e}") from e
    if not raw:
        raise AudioDecodeError("Narration payload is empty")

    if (encoding or "pcm") == "pcm":
        usable = len(raw) - (len(raw) % 2)
        samples = np.frombuffer(raw[:usable], dtype="<i2").astype(np.float32) / 32768.0
        return samples, PCM_SAMPLE_RATE

    try:
        data, sr = sf.read(io.BytesIO(raw), dtype="float32", always_2d=False)
    except Exception as e:
        raise AudioDecodeError(f"Failed to decode {encoding} narration: {e}") from e
    data = np.asarray(data, dtype=np.float32)
    if data.ndim == 2:
        data = data.mean(axis=1).astype(np.float32)
    return data, int(sr)


class PlaybackBackend:
    """Uniform transport contract shared by both engines."""

    kind = "none"

    def __init__(self) -> None:
        self.state = PlaybackState(engine=self.kind)
        self._duration_listeners: List[Callable[[float], None]] = []

    @property
    def duration(self) -> float:
        return self.state.duration

    @property
    def playing(self) -> bool:
        return self.state.playing

    @property
    def loop(self) -> Optional[LoopRange]:
        return self.state.loop

    def on_duration(self, cb: Callable[[float], None]) -> None:
        self._duration_listeners.append(cb)
        if self.state.duration > 0:
            cb(self.state.duration)

    def _set_duration(self, seconds: float) -> None:
        seconds = float(seconds or 0.0)
        if seconds <= 0 or abs(seconds - self.state.duration) < 1e-9:
            return
        self.state.duration = seconds
        for cb in list(self._duration_listeners):
            cb(seconds)

    @staticmethod
    def _clamp_into(offset: float, loop: Optional[LoopRange]) -> float:
        if loop is not None and (offset < loop.start or offset > loop.end):
            return loop.start
        return offset

    def play(self, offset: float, loop: Optional[LoopRange] = None) -> None:
        raise NotImplementedError

    def stop(self) -> None:
        raise NotImplementedError

    def poll(self) -> float:
        """Current position in seconds; called once per frame."""
        raise NotImplementedError

    def pause(self) -> None:
        pos = self.poll()
        self.stop()
        self.state.position = pos

    def seek(self, offset: float) -> None:
        offset = max(0.0, min(float(offset), self.state.duration or float(offset)))
        self.state.loop = None
        self.state.position = offset
        if self.state.playing:
            self.play(offset)

    def clear_loop(self) -> None:
        """Drop the loop range, continuing linearly from the current position."""
        if self.state.loop is None:
            return
        pos = self.poll()
        if self.state.playing:
            self.play(pos)
        else:
            self.state.loop = None

    def set_volume(self, volume: float) -> None:
        self.state.volume = max(0.0, min(1.0, float(volume)))

    def close(self) -> None:
        self.stop()


class _GainStage:
    def __init__(self, value: float = 1.0) -> None:
        self.value = value


class BufferSource:
    """One-shot reader over a decoded buffer; cannot be restarted once stopped."""

    def __init__(self, samples: np.ndarray, sample_rate: int, gain: _GainStage) -> None:
        self.samples = samples
        self.sample_rate = sample_rate
        self.gain = gain
        self.loop = False
        self.loop_start = 0.0
        self.loop_end = 0.0
        self.cursor = 0
        self.finished = False
        self.detached = False

    def _frame(self, seconds: float) -> int:
        return max(0, min(len(self.samples), int(round(seconds * self.sample_rate))))

    def render(self, frames: int) -> np.ndarray:
        out = np.zeros(frames, dtype=np.float32)
        filled = 0
        while filled < frames and not self.finished:
            if self.loop:
                end = self._frame(self.loop_end)
                if self.cursor >= end:
                    self.cursor = self._frame(self.loop_start)
                    if self.cursor >= end:
                        break
            else:
                end = len(self.samples)
                if self.cursor >= end:
                    self.finished = True
                    break
            n = min(frames - filled, end - self.cursor)
            out[filled : filled + n] = self.samples[self.cursor : self.cursor + n]
            self.cursor += n
            filled += n
        return out * float(self.gain.value)


def _portaudio_stream(sample_rate: int, source: BufferSource, on_finished: Callable[[], None]) -> Any:
    if sd is None:
        raise PlaybackUnavailableError("sounddevice/PortAudio is not available; cannot play narration.")

    def callback(outdata, frames, time_info, status) -> None:
        outdata[:, 0] = source.render(frames)
        if source.finished:
            raise sd.CallbackStop()

    return sd.OutputStream(
        samplerate=sample_rate,
        channels=1,
        dtype="float32",
        callback=callback,
        finished_callback=on_finished,
    )


class BufferedBackend(PlaybackBackend):
    kind = "buffered"

    def __init__(
        self,
        samples: np.ndarray,
        sample_rate: int,
        *,
        clock: Callable[[], float] = time.monotonic,
        stream_factory: Callable[[int, BufferSource, Callable[[], None]], Any] = _portaudio_stream,
    ) -> None:
        super().__init__()
        self.samples = np.asarray(samples, dtype=np.float32)
        self.sample_rate = int(sample_rate)
        self._clock = clock
        self._stream_factory = stream_factory
        self._gain = _GainStage(self.state.volume)
        self._source: Optional[BufferSource] = None
        self._stream: Any = None
        self._started_at = 0.0
        self._lock = threading.RLock()
        self._set_duration(len(self.samples) / float(self.sample_rate) if self.sample_rate else 0.0)

    @classmethod
    def from_base64(cls, data: str, encoding: Optional[str], **kwargs: Any) -> "BufferedBackend":
        samples, sr = decode_audio(data, encoding)
        return cls(samples, sr, **kwargs)

    def _stop_source(self) -> None:
        if self._source is not None:
            # Detach first: PortAudio runs the finished callback while stop() waits.
            self._source.detached = True
            self._source.finished = True
            self._source = None
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.stop()
            stream.close()

    def play(self, offset: float, loop: Optional[LoopRange] = None) -> None:
        with self._lock:
            self._stop_source()
            source = BufferSource(self.samples, self.sample_rate, self._gain)
            offset = max(0.0, float(offset))
            if loop is not None:
                loop = LoopRange(start=loop.start, end=min(self.state.duration, loop.end))
                source.loop = True
                source.loop_start = loop.start
                source.loop_end = loop.end
                offset = self._clamp_into(offset, loop)
            self.state.loop = loop
            source.cursor = source._frame(offset)

            def ended() -> None:
                if not source.detached:
                    self._on_source_ended(source)

            self._stream = self._stream_factory(self.sample_rate, source, ended)
            self._source = source
            self._stream.start()
            self._started_at = self._clock() - offset
            self.state.position = offset
            self.state.playing = True

    def _on_source_ended(self, source: BufferSource) -> None:
        with self._lock:
            if source is not self._source or source.loop:
                return
            self.state.playing = False
            elapsed = self._clock() - self._started_at
            if elapsed >= self.state.duration - END_TOLERANCE or source.cursor >= len(self.samples):
                self.state.position = 0.0
            else:
                self.state.position = min(elapsed, self.state.duration)
            self._source = None

    def stop(self) -> None:
        with self._lock:
            self._stop_source()
            self.state.playing = False
            self.state.loop = None

    def poll(self) -> float:
        with self._lock:
            if not self.state.playing:
                return self.state.position
            elapsed = self._clock() - self._started_at
            loop = self.state.loop
            if loop is not None:
                pos = loop_position(elapsed, loop.start, loop.end)
            else:
                pos = min(elapsed, self.state.duration)
            self.state.position = pos
            return pos

    def set_volume(self, volume: float) -> None:
        super().set_volume(volume)
        self._gain.value = self.state.volume


class VlcStream:
    """Thin libVLC wrapper for URL playback."""

    def __init__(self, url: str) -> None:
        if vlc is None:
            raise PlaybackUnavailableError("python-vlc/libVLC is not available; cannot stream narration.")
        args = ["--no-xlib", "--quiet"] if sys.platform.startswith("linux") else ["--quiet"]
        self.instance = vlc.Instance(args)
        self.player = self.instance.media_player_new()
        self.media = self.instance.media_new(url)
        self.player.set_media(self.media)

    def on_length(self, cb: Callable[[float], None]) -> None:
        def handler(event: Any) -> None:
            cb(self.player.get_length() / 1000.0)

        def parsed(event: Any) -> None:
            cb(self.media.get_duration() / 1000.0)

        self.player.event_manager().event_attach(vlc.EventType.MediaPlayerLengthChanged, handler)
        self.media.event_manager().event_attach(vlc.EventType.MediaParsedChanged, parsed)
        self.media.parse_with_options(vlc.MediaParseFlag.network, 10000)

    def on_end(self, cb: Callable[[], None]) -> None:
        self.player.event_manager().event_attach(vlc.EventType.MediaPlayerEndReached, lambda event: cb())

    def play(self) -> None:
        if int(self.player.play()) == -1:
            raise RuntimeError("VLC failed to start playback.")

    def pause(self) -> None:
        self.player.set_pause(1)

    def get_time(self) -> float:
        return max(0, int(self.player.get_time() or 0)) / 1000.0

    def set_time(self, seconds: float) -> None:
        self.player.set_time(int(max(0.0, seconds) * 1000))

    def set_volume(self, volume: float) -> None:
        self.player.audio_set_volume(int(round(volume * 100)))

    def release(self) -> None:
        self.player.stop()
        self.media.release()
        self.player.release()
        self.instance.release()


class StreamedBackend(PlaybackBackend):
    kind = "streamed"

    def __init__(self, url: str, *, player: Any = None) -> None:
        super().__init__()
        self.url = url
        self.player = player if player is not None else VlcStream(url)
        self.player.on_length(self._set_duration)
        self._rewind_pending = False
        self.player.on_end(self._on_end)

    def _on_end(self) -> None:
        # Fired on a libVLC event thread, which must not call back into the player.
        if self.state.playing and self.state.loop is not None:
            self._rewind_pending = True
            return
        self.state.playing = False
        self.state.position = 0.0
        self.state.loop = None

    def play(self, offset: float, loop: Optional[LoopRange] = None) -> None:
        offset = self._clamp_into(max(0.0, float(offset)), loop)
        self.state.loop = loop
        self._rewind_pending = False
        self.player.set_time(offset)
        self.player.play()
        self.player.set_time(offset)
        self.state.position = offset
        self.state.playing = True

    def stop(self) -> None:
        self._rewind_pending = False
        self.player.pause()
        self.state.position = self.player.get_time()
        self.state.playing = False
        self.state.loop = None

    def seek(self, offset: float) -> None:
        super().seek(offset)
        if not self.state.playing:
            self.player.set_time(self.state.position)

    def poll(self) -> float:
        if not self.state.playing:
            return self.state.position
        loop = self.state.loop
        if self._rewind_pending:
            self._rewind_pending = False
            if loop is not None:
                # media ended inside the loop; restart it and jump back
                self.player.play()
                self.player.set_time(loop.start)
                self.state.position = loop.start
                return loop.start
        pos = self.player.get_time()
        # a loop ending at the media end would otherwise hit end-of-media first
        if loop is not None and pos >= loop.end - END_TOLERANCE:
            self.player.set_time(loop.start)
            pos = loop.start
        self.state.position = pos
        return pos

    def set_volume(self, volume: float) -> None:
        super().set_volume(volume)
        self.player.set_volume(self.state.volume)

    def close(self) -> None:
        self.stop()
        self.player.release()


def create_backend(article: Article, **kwargs: Any) -> Optional[PlaybackBackend]:
    """Pick the engine for ``article``: official URL first, then inline audio."""
    if article.audio_url:
        return StreamedBackend(article.audio_url, player=kwargs.get("player"))
    if article.audio_base64:
        extra = {k: v for k, v in kwargs.items() if k in {"clock", "stream_factory"}}
        return BufferedBackend.from_base64(article.audio_base64, article.audio_encoding or "pcm", **extra)
    return None
