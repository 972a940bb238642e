from __future__ import annotations

import shutil
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from .alignment import build_spans, sentence_loop_range, visible_spans
from .audio import PlaybackBackend, create_backend
from .clock import SyncClock
from .models import Article, SentenceSpan


class ArticleSession:
    """One article on screen: its backend, its sentence timeline, its clock."""

    def __init__(
        self,
        article: Article,
        *,
        backend_factory: Callable[..., Optional[PlaybackBackend]] = create_backend,
        use_punkt: bool = True,
        **backend_kwargs: Any,
    ) -> None:
        self.article = article
        self.use_punkt = use_punkt
        self.spans: List[SentenceSpan] = build_spans(article.content, article.language, 0.0, use_punkt=use_punkt)
        self.looping_id: Optional[str] = None
        self.backend = backend_factory(article, **backend_kwargs)
        self.clock = SyncClock(self.backend, self.spans)
        if self.backend is not None:
            self.backend.on_duration(self._rebuild)

    def _rebuild(self, duration: float) -> None:
        self.spans = build_spans(self.article.content, self.article.language, duration, use_punkt=self.use_punkt)
        self.clock.set_spans(self.spans)
        self.looping_id = None

    @property
    def has_narration(self) -> bool:
        return self.backend is not None

    @property
    def duration(self) -> float:
        return self.backend.duration if self.backend is not None else 0.0

    @property
    def sentences(self) -> List[SentenceSpan]:
        return visible_spans(self.spans)

    def span(self, span_id: str) -> Optional[SentenceSpan]:
        for s in self.spans:
            if s.id == span_id:
                return s
        return None

    def toggle_play(self) -> None:
        if self.backend is None:
            return
        if self.backend.playing:
            self.backend.pause()
            self.looping_id = None
            return
        start = self.backend.state.position
        if start >= self.backend.duration:
            start = 0.0
        self.backend.play(start)

    def seek(self, offset: float) -> None:
        if self.backend is None:
            return
        self.looping_id = None
        self.backend.seek(offset)

    def seek_by(self, delta: float) -> None:
        if self.backend is not None:
            self.seek(self.backend.poll() + delta)

    def play_sentence(self, span_id: str) -> None:
        span = self.span(span_id)
        if self.backend is None or span is None or self.backend.duration <= 0:
            return
        loop = sentence_loop_range(span, self.backend.duration)
        self.looping_id = span.id
        self.backend.play(loop.start, loop)

    def step_sentence(self, direction: int) -> None:
        """Loop the sentence before/after the looped (or active) one."""
        shown = self.sentences
        if not shown:
            return
        anchor = self.looping_id or self.active_span_id()
        ids = [s.id for s in shown]
        if anchor in ids:
            idx = max(0, min(len(ids) - 1, ids.index(anchor) + direction))
        else:
            idx = 0 if direction >= 0 else len(ids) - 1
        self.play_sentence(ids[idx])

    def clear_loop(self) -> None:
        self.looping_id = None
        if self.backend is not None:
            self.backend.clear_loop()

    def set_volume(self, volume: float) -> None:
        if self.backend is not None:
            self.backend.set_volume(volume)

    @property
    def volume(self) -> float:
        return self.backend.state.volume if self.backend is not None else 1.0

    def active_span_id(self) -> Optional[str]:
        return self.clock.tick().active_id

    def close(self) -> None:
        self.clock.stop()
        if self.backend is not None:
            self.backend.close()
            self.backend = None
            self.clock.backend = None


def open_session(article: Article, previous: Optional[ArticleSession] = None, **kwargs: Any) -> ArticleSession:
    """Switch articles: release the previous engine before building the next."""
    if previous is not None:
        previous.close()
    return ArticleSession(article, **kwargs)


def read_article(session: ArticleSession, *, window: int = 2, seek_step: float = 5.0) -> Dict[str, Any]:
    from prompt_toolkit.application import Application
    from prompt_toolkit.key_binding import KeyBindings
    from prompt_toolkit.layout import Layout
    from prompt_toolkit.layout.containers import HSplit, Window
    from prompt_toolkit.layout.controls import FormattedTextControl
    from prompt_toolkit.styles import Style

    state = {"window": max(0, int(window))}
    kb = KeyBindings()

    @kb.add(" ")
    def _(event: Any) -> None:
        session.toggle_play()

    @kb.add("q")
    @kb.add("Q")
    @kb.add("escape")
    def _(event: Any) -> None:
        event.app.exit()

    @kb.add("left")
    def _(event: Any) -> None:
        session.seek_by(-seek_step)

    @kb.add("right")
    def _(event: Any) -> None:
        session.seek_by(seek_step)

    @kb.add("n")
    def _(event: Any) -> None:
        session.step_sentence(1)

    @kb.add("p")
    def _(event: Any) -> None:
        session.step_sentence(-1)

    @kb.add("l")
    def _(event: Any) -> None:
        active = session.clock.reading.active_id
        if active:
            session.play_sentence(active)

    @kb.add("x")
    def _(event: Any) -> None:
        session.clear_loop()

    @kb.add("+")
    @kb.add("=")
    def _(event: Any) -> None:
        session.set_volume(session.volume + 0.1)

    @kb.add("-")
    @kb.add("_")
    def _(event: Any) -> None:
        session.set_volume(session.volume - 0.1)

    @kb.add("]")
    def _(event: Any) -> None:
        state["window"] = min(20, int(state["window"]) + 1)

    @kb.add("[")
    def _(event: Any) -> None:
        state["window"] = max(0, int(state["window"]) - 1)

    def _sentence_lines(active_id: Optional[str]) -> List[Tuple[str, str]]:
        shown = session.sentences
        if not shown:
            return [("class:meta", "(empty article)\n")]
        ids = [s.id for s in shown]
        idx = ids.index(active_id) if active_id in ids else 0
        ww = int(state["window"])
        lo, hi = max(0, idx - ww), min(len(shown), idx + ww + 1)
        width = max(40, shutil.get_terminal_size((120, 30)).columns - 4)
        out: List[Tuple[str, str]] = []
        for s in shown[lo:hi]:
            text = " ".join(s.text.split())
            if len(text) > width:
                text = text[: width - 1] + "…"
            marker = "↻ " if s.id == session.looping_id else "  "
            style = "class:focus" if s.id == active_id else ("class:near" if abs(ids.index(s.id) - idx) <= 1 else "class:far")
            out.append(("class:loop", marker))
            out.append((style, text + "\n"))
        return out

    def render() -> List[Tuple[str, str]]:
        reading = session.clock.reading
        art = session.article
        body: List[Tuple[str, str]] = [("class:title", f"{art.title}\n"), ("class:meta", f"{art.language}  {art.date}\n\n")]
        if session.has_narration:
            backend = session.backend
            mode = "PLAY" if reading.playing else "PAUSE"
            loop = backend.loop if backend is not None else None
            loop_txt = f"  loop={loop.start:.1f}-{loop.end:.1f}s" if loop else ""
            engine = backend.kind if backend is not None else "none"
            info = f"{mode} {reading.position:6.2f}s/{session.duration:6.2f}s  engine={engine}  vol={session.volume:.1f}{loop_txt}"
        else:
            info = "No narration available"
        body.append(("class:header", info + "\n\n"))
        body.extend(_sentence_lines(reading.active_id))
        body.append(("", "\n"))
        body.append(
            (
                "class:meta",
                "space play/pause | <-/-> seek | n/p loop next/prev | l loop current | x clear loop | +/- volume | [/] context | q/esc quit",
            )
        )
        return body

    control = FormattedTextControl(render)
    root = HSplit([Window(control, wrap_lines=True)])
    style = Style.from_dict(
        {
            "title": "bold",
            "header": "bold",
            "meta": "fg:#888888",
            "focus": "bold fg:#ff3b30",
            "near": "fg:#b8b8b8",
            "far": "fg:#5f5f5f",
            "loop": "fg:#3b82f6",
        }
    )
    app = Application(layout=Layout(root), key_bindings=kb, style=style, full_screen=False)

    session.clock.start()
    stop = threading.Event()

    def ticker() -> None:
        while not stop.is_set():
            time.sleep(0.05)
            app.invalidate()

    t = threading.Thread(target=ticker, daemon=True)
    t.start()
    try:
        app.run()
    finally:
        stop.set()
        volume = session.volume
        session.close()
    return {"window": int(state["window"]), "volume": float(volume)}
