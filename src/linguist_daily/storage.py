from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence

from .models import ApiSettings, Article, VocabularyItem, articles_from_dicts

HISTORY_BLOB = "linguist_history"
VOCAB_BLOB = "linguist_vocab"
SETTINGS_BLOB = "linguist_settings"


def default_root() -> Path:
    explicit = os.getenv("LINGUIST_HOME")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / "linguist-daily"


class Store:
    """JSON blobs under one directory. Reads degrade to defaults; writes never raise."""

    def __init__(self, root: Optional[Path] = None, *, info_cb: Optional[Callable[[str], None]] = None) -> None:
        self.root = Path(root).expanduser() if root is not None else default_root()
        self.info_cb = info_cb

    def path(self, blob: str) -> Path:
        return self.root / f"{blob}.json"

    def _read(self, blob: str, default: Any) -> Any:
        p = self.path(blob)
        if not p.exists():
            return default
        try:
            data = json.loads(p.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            if self.info_cb:
                self.info_cb(f"Ignoring unreadable {p.name}: {e}")
            return default
        return data if isinstance(data, type(default)) else default

    def _write(self, blob: str, data: Any) -> bool:
        p = self.path(blob)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            if self.info_cb:
                self.info_cb(f"Could not save {p.name}: {e}")
            return False
        return True

    # History keeps text only; narration is re-synthesized on demand.
    def load_history(self) -> List[Article]:
        return articles_from_dicts(self._read(HISTORY_BLOB, []))

    def save_history(self, articles: Sequence[Article]) -> bool:
        return self._write(HISTORY_BLOB, [a.to_dict(include_audio=False) for a in articles])

    def remember_articles(self, articles: Sequence[Article]) -> List[Article]:
        new_ids = {a.id for a in articles}
        history = list(articles) + [a for a in self.load_history() if a.id not in new_ids]
        self.save_history(history)
        return history

    def find_article(self, token: str) -> Optional[Article]:
        """Match a 1-based index into history, else an id prefix.

        Short digit strings are read as indexes since hex ids often start
        with a digit.
        """
        history = self.load_history()
        token = token.strip()
        if token.isdigit() and 0 < int(token) <= len(history):
            return history[int(token) - 1]
        if not token:
            return None
        for a in history:
            if a.id.startswith(token):
                return a
        return None

    def load_vocabulary(self) -> List[VocabularyItem]:
        return [VocabularyItem.from_dict(x) for x in self._read(VOCAB_BLOB, []) if isinstance(x, dict)]

    def save_vocabulary(self, items: Sequence[VocabularyItem]) -> bool:
        return self._write(VOCAB_BLOB, [v.to_dict() for v in items])

    def load_settings(self) -> ApiSettings:
        return ApiSettings.from_dict(self._read(SETTINGS_BLOB, {}))

    def save_settings(self, settings: ApiSettings) -> bool:
        return self._write(SETTINGS_BLOB, settings.to_dict())
