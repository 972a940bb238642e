from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, fields
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class Language(str, Enum):
    JAPANESE = "Japanese"
    KOREAN = "Korean"
    FRENCH = "French"
    ITALIAN = "Italian"
    DUTCH = "Dutch"
    ENGLISH = "English"
    CANTONESE = "Cantonese"
    SPANISH = "Spanish"

    @classmethod
    def parse(cls, name: str) -> "Language":
        key = (name or "").strip().lower()
        for lang in cls:
            if lang.value.lower() == key or lang.name.lower() == key:
                return lang
        raise ValueError(f"Unsupported language '{name}'. Valid: {', '.join(l.value for l in cls)}")


PROVIDERS = ("gemini", "openai", "deepseek")


@dataclass
class LoopRange:
    start: float
    end: float

    @property
    def duration(self) -> float:
        return self.end - self.start


@dataclass
class SentenceSpan:
    id: str
    text: str
    start_char: int
    end_char: int
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def is_whitespace(self) -> bool:
        return not self.text.strip()


@dataclass
class Article:
    title: str
    content: str
    language: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    date: str = field(default_factory=lambda: date.today().isoformat())
    audio_base64: Optional[str] = None
    audio_encoding: Optional[str] = None
    audio_url: Optional[str] = None
    source_url: Optional[str] = None

    @property
    def has_narration(self) -> bool:
        return bool(self.audio_url or self.audio_base64)

    def to_dict(self, *, include_audio: bool = True) -> Dict[str, Any]:
        out = asdict(self)
        if not include_audio:
            out.pop("audio_base64", None)
            out.pop("audio_encoding", None)
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Article":
        return cls(**_known(cls, data))


@dataclass
class WordDefinition:
    word: str
    phonetic: str = ""
    pronunciation_guide: str = ""
    daily_example: str = ""
    academic_example: str = ""
    definition_cn: str = ""
    definition_en: str = ""
    definition_source: str = ""

    # Providers answer with camelCase keys; see the prompts in providers.py.
    _PAYLOAD_KEYS = {
        "phonetic": "phonetic",
        "pronunciationGuide": "pronunciation_guide",
        "dailyExample": "daily_example",
        "academicExample": "academic_example",
        "definitionCN": "definition_cn",
        "definitionEN": "definition_en",
        "definitionSource": "definition_source",
    }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any], word: str) -> "WordDefinition":
        out = cls(word=str(payload.get("word") or word))
        for src, dst in cls._PAYLOAD_KEYS.items():
            value = payload.get(src, payload.get(dst))
            if value is not None:
                setattr(out, dst, str(value))
        return out


@dataclass
class VocabularyItem(WordDefinition):
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    added_at: float = 0.0
    next_review_at: float = 0.0
    review_stage: int = 0
    last_reviewed_at: Optional[float] = None
    context_sentence: str = ""
    audio_base64: Optional[str] = None
    audio_encoding: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VocabularyItem":
        return cls(**_known(cls, data))


@dataclass
class ApiSettings:
    primary: str = "gemini"
    backup: Optional[str] = "openai"
    keys: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"primary": self.primary, "backup": self.backup, "keys": dict(self.keys)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ApiSettings":
        keys = data.get("keys") if isinstance(data.get("keys"), dict) else {}
        return cls(
            primary=str(data.get("primary") or "gemini"),
            backup=data.get("backup", "openai") or None,
            keys={k: str(v) for k, v in keys.items() if v},
        )

    def with_keys(self, keys: Dict[str, str]) -> "ApiSettings":
        merged = dict(self.keys)
        merged.update({k: v for k, v in keys.items() if v})
        return ApiSettings(primary=self.primary, backup=self.backup, keys=merged)


@dataclass
class SpeechResult:
    audio_data: str
    encoding: str


@dataclass
class NewsResult:
    title: str
    content: str
    source_url: Optional[str] = None
    audio_url: Optional[str] = None


@dataclass
class ArticleDraft:
    title: str
    content: str


@dataclass
class PlaybackState:
    engine: str
    playing: bool = False
    position: float = 0.0
    duration: float = 0.0
    loop: Optional[LoopRange] = None
    volume: float = 1.0


def _known(cls: type, data: Dict[str, Any]) -> Dict[str, Any]:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def articles_from_dicts(items: List[Dict[str, Any]]) -> List[Article]:
    return [Article.from_dict(x) for x in items if isinstance(x, dict)]
