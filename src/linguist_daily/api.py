from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from . import fallback
from .models import ApiSettings, Article, Language, VocabularyItem
from .providers import ProviderHandler
from .remote_config import fetch_remote_settings
from .review import apply_review, due_items
from .storage import Store


class LinguistDaily:
    """Programmatic API over the reader services, backed by one ``Store``."""

    def __init__(
        self,
        root: Optional[str] = None,
        *,
        handlers: Optional[Dict[str, ProviderHandler]] = None,
        fetch_remote: Optional[Callable[[], Optional[Dict[str, str]]]] = None,
        info_cb: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = Store(Path(root).expanduser() if root else None, info_cb=info_cb)
        self.handlers = handlers
        self.fetch_remote = fetch_remote if fetch_remote is not None else (lambda: fetch_remote_settings(info_cb=info_cb))
        self.info_cb = info_cb

    @property
    def settings(self) -> ApiSettings:
        return self.store.load_settings()

    def save_settings(self, settings: ApiSettings) -> ApiSettings:
        self.store.save_settings(settings)
        return settings

    def refresh_settings(self) -> Dict[str, Any]:
        keys = self.fetch_remote()
        if not keys:
            return {"updated": False, "providers": []}
        merged = self.settings.with_keys(keys)
        self.store.save_settings(merged)
        return {"updated": True, "providers": sorted(keys)}

    def preload(
        self,
        languages: Optional[Sequence[str]] = None,
        *,
        delay_seconds: float = fallback.PRELOAD_DELAY_SECONDS,
        sleep: Optional[Callable[[float], None]] = None,
        progress_cb: Optional[Callable[[str, int, int, str], None]] = None,
    ) -> Dict[str, Any]:
        langs = [Language.parse(l).value for l in languages] if languages else [l.value for l in Language]
        extra: Dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        coord = fallback.PreloadCoordinator(
            self.settings,
            languages=langs,
            handlers=self.handlers,
            fetch_remote=self.fetch_remote,
            save_settings=self.store.save_settings,
            delay_seconds=delay_seconds,
            info_cb=self.info_cb,
            progress_cb=progress_cb,
            **extra,
        )
        states = coord.run()
        loaded: List[Article] = []
        for lang in langs:
            loaded.extend(states[lang].articles)
        if loaded:
            self.store.remember_articles(loaded)
        return {
            "cycle": coord.cycle,
            "languages": {
                lang: {"status": st.status, "articles": [a.id for a in st.articles], "error": st.error}
                for lang, st in states.items()
            },
            "articles": loaded,
        }

    def history(self) -> List[Article]:
        return self.store.load_history()

    def find_article(self, token: str) -> Optional[Article]:
        return self.store.find_article(token)

    def narrate(self, article: Article) -> Article:
        """Attach synthesized narration to ``article`` when it has none."""
        if article.has_narration:
            return article
        speech = fallback.synthesize_speech(
            article.content, article.language, self.settings, handlers=self.handlers, info_cb=self.info_cb
        )
        article.audio_base64 = speech.audio_data
        article.audio_encoding = speech.encoding
        return article

    def lookup(self, word: str, language: str, context: str = "", *, now: Optional[float] = None) -> VocabularyItem:
        vocab = self.store.load_vocabulary()
        item = fallback.lookup_word(
            word,
            Language.parse(language).value,
            context,
            self.settings,
            vocab,
            handlers=self.handlers,
            info_cb=self.info_cb,
            now=now,
        )
        if all(v.id != item.id for v in vocab):
            self.store.save_vocabulary([item] + vocab)
        return item

    def vocabulary(self) -> List[VocabularyItem]:
        return self.store.load_vocabulary()

    def due(self, *, now: Optional[float] = None) -> List[VocabularyItem]:
        return due_items(self.store.load_vocabulary(), now)

    def review(self, item_id: str, success: bool, *, now: Optional[float] = None) -> VocabularyItem:
        vocab = self.store.load_vocabulary()
        for item in vocab:
            if item.id == item_id or item.id.startswith(item_id):
                apply_review(item, success, now)
                self.store.save_vocabulary(vocab)
                return item
        raise KeyError(f"No vocabulary item with id '{item_id}'")
