"""Provider fallback and the per-language preload cycle.

Every provider call goes through ``execute_with_fallback``: quota failures on
the primary are retried once on the configured backup. The preload cycle adds
a second recovery path: on a quota failure it asks the remote credential store
for fresh keys and, when the primary's key actually changed, restarts the whole
cycle under the new settings.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, TypeVar

from .models import ApiSettings, Article, Language, SpeechResult, VocabularyItem, WordDefinition
from .providers import ProviderHandler, get_handler, is_quota_error, resolve_key
from .review import find_word, new_vocabulary_item

T = TypeVar("T")

PRELOAD_DELAY_SECONDS = 2.0

InfoCb = Optional[Callable[[str], None]]


def _info(info_cb: InfoCb, msg: str) -> None:
    if info_cb:
        info_cb(msg)


def execute_with_fallback(
    operation: Callable[[ProviderHandler], T],
    settings: ApiSettings,
    description: str,
    *,
    handlers: Optional[Dict[str, ProviderHandler]] = None,
    info_cb: InfoCb = None,
) -> T:
    primary = get_handler(settings.primary, handlers)
    try:
        return operation(primary)
    except Exception as e:
        backup = settings.backup
        if not is_quota_error(e):
            raise
        if not backup or backup == settings.primary or not resolve_key(backup, settings):
            raise
        _info(info_cb, f"{primary.name} quota exceeded for {description}; switching to {backup}")

    # Backup failures propagate as-is.
    return operation(get_handler(backup, handlers))


def synthesize_speech(
    text: str,
    language: str,
    settings: ApiSettings,
    *,
    handlers: Optional[Dict[str, ProviderHandler]] = None,
    info_cb: InfoCb = None,
) -> SpeechResult:
    return execute_with_fallback(
        lambda h: h.synthesize_speech(text, language, settings),
        settings,
        "speech",
        handlers=handlers,
        info_cb=info_cb,
    )


def analyze_word(
    word: str,
    language: str,
    context: str,
    settings: ApiSettings,
    *,
    handlers: Optional[Dict[str, ProviderHandler]] = None,
    info_cb: InfoCb = None,
) -> WordDefinition:
    return execute_with_fallback(
        lambda h: h.analyze_word(word, language, context, settings),
        settings,
        "word analysis",
        handlers=handlers,
        info_cb=info_cb,
    )


def _narrate(text: str, language: str, settings: ApiSettings, handlers, info_cb: InfoCb) -> Optional[SpeechResult]:
    try:
        return synthesize_speech(text, language, settings, handlers=handlers, info_cb=info_cb)
    except Exception as e:
        _info(info_cb, f"Narration failed for {language}: {e}")
        return None


def preload_language_content(
    language: str,
    settings: ApiSettings,
    *,
    handlers: Optional[Dict[str, ProviderHandler]] = None,
    info_cb: InfoCb = None,
) -> List[Article]:
    """Fetch and narrate the day's news plus general articles for one language.

    Steps run strictly in sequence. Non-quota failures only drop the affected
    piece; quota failures propagate so the caller can recover credentials.
    """

    language = str(getattr(language, "value", language))
    articles: List[Article] = []

    try:
        news = execute_with_fallback(
            lambda h: h.fetch_news_article(language, settings),
            settings,
            "news",
            handlers=handlers,
            info_cb=info_cb,
        )
    except Exception as e:
        if is_quota_error(e):
            raise
        _info(info_cb, f"News failed for {language}: {e}")
    else:
        # Official narration wins over synthesis.
        speech = None if news.audio_url else _narrate(news.content, language, settings, handlers, info_cb)
        articles.append(
            Article(
                title=news.title,
                content=news.content,
                language=language,
                audio_base64=speech.audio_data if speech else None,
                audio_encoding=speech.encoding if speech else None,
                audio_url=news.audio_url,
                source_url=news.source_url,
            )
        )

    try:
        drafts = execute_with_fallback(
            lambda h: h.fetch_general_articles(language, settings),
            settings,
            "general articles",
            handlers=handlers,
            info_cb=info_cb,
        )
    except Exception as e:
        if is_quota_error(e):
            raise
        _info(info_cb, f"General articles failed for {language}: {e}")
        drafts = []

    for draft in drafts:
        speech = _narrate(draft.content, language, settings, handlers, info_cb)
        articles.append(
            Article(
                title=draft.title,
                content=draft.content,
                language=language,
                audio_base64=speech.audio_data if speech else None,
                audio_encoding=speech.encoding if speech else None,
            )
        )

    return articles


def lookup_word(
    word: str,
    language: str,
    context: str,
    settings: ApiSettings,
    vocabulary: Sequence[VocabularyItem] = (),
    *,
    handlers: Optional[Dict[str, ProviderHandler]] = None,
    info_cb: InfoCb = None,
    now: Optional[float] = None,
) -> VocabularyItem:
    """Define ``word`` and fetch its pronunciation concurrently.

    A word already in ``vocabulary`` is returned as-is without any provider
    call. A pronunciation failure leaves the item without audio; a definition
    failure propagates.
    """

    existing = find_word(vocabulary, word)
    if existing is not None:
        return existing

    language = str(getattr(language, "value", language))
    with ThreadPoolExecutor(max_workers=2) as ex:
        fut_def = ex.submit(analyze_word, word, language, context, settings, handlers=handlers, info_cb=info_cb)
        fut_audio = ex.submit(synthesize_speech, word, language, settings, handlers=handlers, info_cb=info_cb)
        definition = fut_def.result()
        try:
            speech = fut_audio.result()
        except Exception as e:
            _info(info_cb, f"Pronunciation unavailable for '{word}': {e}")
            speech = None

    item = new_vocabulary_item(definition, context, now=now)
    if speech is not None:
        item.audio_base64 = speech.audio_data
        item.audio_encoding = speech.encoding
    return item


# ---------------------------------------------------------------------------
# Preload coordinator
# ---------------------------------------------------------------------------

IDLE = "idle"
LOADING = "loading"
READY = "ready"
FAILED = "failed"


@dataclass
class LanguageState:
    status: str = IDLE
    articles: List[Article] = field(default_factory=list)
    cycle: int = 0
    error: Optional[str] = None


class PreloadCoordinator:
    """Owns the per-language state table for preload cycles.

    State only changes through ``dispatch`` events tagged with a cycle id;
    events from a superseded cycle are dropped.
    """

    def __init__(
        self,
        settings: ApiSettings,
        *,
        languages: Optional[Sequence[str]] = None,
        handlers: Optional[Dict[str, ProviderHandler]] = None,
        fetch_remote: Optional[Callable[[], Optional[Dict[str, str]]]] = None,
        save_settings: Optional[Callable[[ApiSettings], None]] = None,
        preload: Callable[..., List[Article]] = preload_language_content,
        delay_seconds: float = PRELOAD_DELAY_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        info_cb: InfoCb = None,
        progress_cb: Optional[Callable[[str, int, int, str], None]] = None,
    ) -> None:
        self.settings = settings
        self.languages: List[str] = [str(getattr(l, "value", l)) for l in (languages or list(Language))]
        self.handlers = handlers
        self.fetch_remote = fetch_remote
        self.save_settings = save_settings
        self.preload = preload
        self.delay_seconds = delay_seconds
        self.sleep = sleep
        self.info_cb = info_cb
        self.progress_cb = progress_cb

        self.cycle = 0
        self.states: Dict[str, LanguageState] = {lang: LanguageState() for lang in self.languages}
        self._attempted_keys: set = set()
        self._lock = threading.RLock()

    def dispatch(
        self,
        language: str,
        event: str,
        cycle: int,
        *,
        articles: Optional[List[Article]] = None,
        error: Optional[str] = None,
    ) -> bool:
        """Apply a transition event. Returns False when the event was stale."""
        with self._lock:
            if cycle != self.cycle:
                _info(self.info_cb, f"Ignoring stale '{event}' for {language} from cycle {cycle}")
                return False
            if event == "started":
                self.states[language] = LanguageState(status=LOADING, cycle=cycle)
            elif event == "succeeded":
                self.states[language] = LanguageState(status=READY, articles=list(articles or []), cycle=cycle)
            elif event == "failed":
                self.states[language] = LanguageState(status=FAILED, cycle=cycle, error=error)
            else:
                raise ValueError(f"Unknown preload event '{event}'")
            return True

    def invalidate(self) -> int:
        """Supersede any in-flight cycle and reset the table."""
        with self._lock:
            self.cycle += 1
            self.states = {lang: LanguageState(cycle=self.cycle) for lang in self.languages}
            return self.cycle

    def status(self, language: str) -> str:
        return self.states[str(getattr(language, "value", language))].status

    def articles(self, language: str) -> List[Article]:
        return list(self.states[str(getattr(language, "value", language))].articles)

    def ready_languages(self) -> List[str]:
        return [l for l in self.languages if self.states[l].status == READY]

    def run(self) -> Dict[str, LanguageState]:
        """Run preload cycles until one completes without a credential restart."""
        while self.run_cycle():
            _info(self.info_cb, "Restarting preload with refreshed credentials")
        return self.states

    def run_cycle(self) -> bool:
        """Run one sequential cycle. Returns True when a restart is required."""
        cycle = self.invalidate()
        for i, lang in enumerate(self.languages):
            if cycle != self.cycle:
                return False
            if i and self.delay_seconds > 0:
                self.sleep(self.delay_seconds)

            self.dispatch(lang, "started", cycle)
            if self.progress_cb:
                self.progress_cb(f"cycle-{cycle}", i, len(self.languages), f"Preloading {lang}")
            try:
                got = self.preload(lang, self.settings, handlers=self.handlers, info_cb=self.info_cb)
            except Exception as e:
                if is_quota_error(e) and self._refresh_credentials(lang):
                    # The restarted cycle supersedes everything loaded so far.
                    return True
                self.dispatch(lang, "failed", cycle, error=str(e))
                continue

            if got:
                self.dispatch(lang, "succeeded", cycle, articles=got)
            else:
                self.dispatch(lang, "failed", cycle, error="no content")
        if self.progress_cb:
            self.progress_cb(f"cycle-{cycle}", len(self.languages), len(self.languages), "Preload finished")
        return False

    def _refresh_credentials(self, language: str) -> bool:
        if self.fetch_remote is None:
            _info(self.info_cb, f"Quota exhausted for {language}; no remote credential store")
            return False

        primary = self.settings.primary
        failed_key = resolve_key(primary, self.settings)
        if failed_key:
            self._attempted_keys.add(failed_key)

        remote = self.fetch_remote()
        if not remote:
            _info(self.info_cb, f"Quota exhausted for {language}; remote store returned nothing")
            return False

        new_key = remote.get(primary)
        if not new_key or new_key in self._attempted_keys:
            _info(self.info_cb, f"Quota exhausted for {language}; remote {primary} key unchanged, giving up")
            return False

        self._attempted_keys.add(new_key)
        self.settings = self.settings.with_keys(remote)
        if self.save_settings:
            self.save_settings(self.settings)
        _info(self.info_cb, f"Adopted refreshed {primary} credentials from remote store")
        return True
