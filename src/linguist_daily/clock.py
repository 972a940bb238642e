from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from .alignment import active_span
from .models import SentenceSpan

FRAME_SECONDS = 1.0 / 60.0


def loop_position(elapsed: float, loop_start: float, loop_end: float) -> float:
    """Map linear elapsed playback time onto a natively looping range.

    Assumes wall clock and audio clock advance together; drift is tolerated
    because the result only drives highlighting.
    """
    loop_len = loop_end - loop_start
    if loop_len <= 0:
        return loop_start
    pos = loop_start + (elapsed - loop_start) % loop_len
    if pos < loop_start:
        pos = loop_start
    return pos


@dataclass
class ClockReading:
    position: float
    active_id: Optional[str]
    playing: bool


class SyncClock:
    """Per-frame position tracker; keeps ticking while paused."""

    def __init__(self, backend: Any, spans: Sequence[SentenceSpan] = ()) -> None:
        self.backend = backend
        self.spans: List[SentenceSpan] = list(spans)
        self.reading = ClockReading(position=0.0, active_id=None, playing=False)
        self._listeners: List[Callable[[ClockReading], None]] = []
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def set_spans(self, spans: Sequence[SentenceSpan]) -> None:
        self.spans = list(spans)

    def subscribe(self, cb: Callable[[ClockReading], None]) -> None:
        self._listeners.append(cb)

    def tick(self) -> ClockReading:
        if self.backend is None:
            pos, playing = 0.0, False
        else:
            pos = self.backend.poll()
            playing = self.backend.playing
        hit = active_span(self.spans, pos)
        self.reading = ClockReading(position=pos, active_id=hit.id if hit else None, playing=playing)
        for cb in list(self._listeners):
            cb(self.reading)
        return self.reading

    def start(self, frame_seconds: float = FRAME_SECONDS) -> None:
        if self._thread is not None:
            return
        self._stop.clear()

        def run() -> None:
            while not self._stop.wait(frame_seconds):
                self.tick()

        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None
