from __future__ import annotations

import base64
import json
import os
import re
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from google import genai
from google.genai import types as genai_types
from openai import OpenAI

from .models import ApiSettings, ArticleDraft, NewsResult, SpeechResult, WordDefinition

load_dotenv()

ENV_KEYS: Dict[str, tuple] = {
    "gemini": ("GEMINI_API_KEY", "API_KEY"),
    "openai": ("OPENAI_API_KEY",),
    "deepseek": ("DEEPSEEK_API_KEY",),
}

QUOTA_MARKERS = ("quota", "429", "resource exhausted", "resource_exhausted", "limit")

GEMINI_TEXT_MODEL = "gemini-2.5-flash"
GEMINI_TTS_MODEL = "gemini-2.5-flash-preview-tts"
GEMINI_VOICE = "Kore"
OPENAI_TTS_MODEL = "tts-1"
OPENAI_TTS_VOICE = "alloy"

SYSTEM_PROMPT = (
    "You are a helpful language learning assistant. "
    "Always respond in valid JSON when requested."
)

WORD_FIELDS = (
    "phonetic",
    "pronunciationGuide",
    "dailyExample",
    "academicExample",
    "definitionCN",
    "definitionEN",
    "definitionSource",
)


class ProviderError(RuntimeError):
    pass


class MissingCredentialError(ProviderError):
    pass


class ProviderResponseError(ProviderError):
    pass


def is_quota_error(error: BaseException) -> bool:
    msg = str(error).lower()
    return any(marker in msg for marker in QUOTA_MARKERS)


def resolve_key(provider: str, settings: ApiSettings) -> Optional[str]:
    key = (settings.keys or {}).get(provider)
    if key:
        return key
    for env_name in ENV_KEYS.get(provider, ()):
        val = os.getenv(env_name)
        if val:
            return val
    return None


def _strip_fences(text: str) -> str:
    return re.sub(r"```(?:json)?", "", text or "").strip()


def _parse_json(text: Optional[str], provider: str, what: str) -> Any:
    if not text:
        raise ProviderResponseError(f"{provider} returned an empty response for {what}")
    try:
        return json.loads(_strip_fences(text))
    except json.JSONDecodeError as e:
        raise ProviderResponseError(f"{provider} returned invalid JSON for {what}: {e}") from e


def _word_prompt(word: str, language: str, context: str) -> str:
    return (
        f'Analyze the word "{word}" in the context of {language}.\n'
        f'Context sentence: "{context or ""}".\n'
        "Return a JSON object with these exact keys:\n"
        "{\n"
        f'  "word": "{word}",\n'
        '  "phonetic": "IPA transcription",\n'
        '  "pronunciationGuide": "plain-text pronunciation tip",\n'
        '  "dailyExample": "a sentence used in daily life",\n'
        '  "academicExample": "a sentence used in formal or academic writing",\n'
        '  "definitionCN": "Chinese definition",\n'
        '  "definitionEN": "English definition",\n'
        f'  "definitionSource": "definition in {language}"\n'
        "}"
    )


def _general_prompt(language: str) -> str:
    return (
        f"Write 2 distinct, engaging and educational articles (about 150 words each) for a student learning {language}.\n"
        "Topics:\n"
        f"1. A specific cultural tradition or piece of history of a country where {language} is spoken.\n"
        f"2. A modern lifestyle or technology trend relevant to {language} speakers.\n"
        'Return a JSON object with a key "articles": an array of objects with "title" and "content".'
    )


def _news_from_payload(data: Any, provider: str) -> NewsResult:
    if not isinstance(data, dict) or not data.get("content"):
        raise ProviderResponseError(f"{provider} news response has no content")
    return NewsResult(
        title=str(data.get("title") or "Daily News"),
        content=str(data["content"]),
        source_url=data.get("sourceUrl") or None,
        audio_url=data.get("audioUrl") or None,
    )


def _drafts_from_payload(data: Any) -> List[ArticleDraft]:
    if isinstance(data, dict):
        data = data.get("articles") or []
    if not isinstance(data, list):
        return []
    out: List[ArticleDraft] = []
    for item in data:
        if isinstance(item, dict) and item.get("content"):
            out.append(ArticleDraft(title=str(item.get("title") or ""), content=str(item["content"])))
    return out


class ProviderHandler:
    """Capability interface every AI backend implements."""

    name = ""

    def api_key(self, settings: ApiSettings) -> str:
        key = resolve_key(self.name, settings)
        if not key:
            raise MissingCredentialError(f"{self.name} API key missing")
        return key

    def synthesize_speech(self, text: str, language: str, settings: ApiSettings) -> SpeechResult:
        raise NotImplementedError

    def analyze_word(self, word: str, language: str, context: str, settings: ApiSettings) -> WordDefinition:
        raise NotImplementedError

    def fetch_news_article(self, language: str, settings: ApiSettings) -> NewsResult:
        raise NotImplementedError

    def fetch_general_articles(self, language: str, settings: ApiSettings) -> List[ArticleDraft]:
        raise NotImplementedError


class GeminiHandler(ProviderHandler):
    """Google GenAI backend: native TTS (24 kHz PCM) and search-grounded news."""

    name = "gemini"

    def _client(self, settings: ApiSettings) -> genai.Client:
        return genai.Client(api_key=self.api_key(settings))

    def synthesize_speech(self, text: str, language: str, settings: ApiSettings) -> SpeechResult:
        client = self._client(settings)
        response = client.models.generate_content(
            model=GEMINI_TTS_MODEL,
            contents=text,
            config=genai_types.GenerateContentConfig(
                response_modalities=["AUDIO"],
                speech_config=genai_types.SpeechConfig(
                    voice_config=genai_types.VoiceConfig(
                        prebuilt_voice_config=genai_types.PrebuiltVoiceConfig(voice_name=GEMINI_VOICE)
                    )
                ),
            ),
        )
        try:
            data = response.candidates[0].content.parts[0].inline_data.data
        except (AttributeError, IndexError, TypeError) as e:
            raise ProviderResponseError(f"Gemini TTS returned no audio: {e}") from e
        if not data:
            raise ProviderResponseError("Gemini TTS returned no audio")
        if isinstance(data, str):
            return SpeechResult(audio_data=data, encoding="pcm")
        return SpeechResult(audio_data=base64.b64encode(data).decode("ascii"), encoding="pcm")

    def analyze_word(self, word: str, language: str, context: str, settings: ApiSettings) -> WordDefinition:
        client = self._client(settings)
        schema = genai_types.Schema(
            type=genai_types.Type.OBJECT,
            properties={k: genai_types.Schema(type=genai_types.Type.STRING) for k in ("word",) + WORD_FIELDS},
            required=list(WORD_FIELDS),
        )
        response = client.models.generate_content(
            model=GEMINI_TEXT_MODEL,
            contents=_word_prompt(word, language, context),
            config=genai_types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=schema,
            ),
        )
        data = _parse_json(response.text, "Gemini", "word analysis")
        if not isinstance(data, dict):
            raise ProviderResponseError("Gemini word analysis is not an object")
        return WordDefinition.from_payload(data, word)

    def fetch_news_article(self, language: str, settings: ApiSettings) -> NewsResult:
        client = self._client(settings)
        prompt = (
            "Act as a language learning content curator.\n"
            f"Find the single most significant news story today in {language} from a major official news outlet.\n"
            "Ideally pick a story that has an official audio narration or video report.\n"
            "Summarize it into a B2-level article of about 150-200 words.\n"
            "Return a raw JSON string (no markdown code blocks) with exactly this structure:\n"
            "{\n"
            f'  "title": "The headline in {language}",\n'
            '  "content": "The article text...",\n'
            '  "sourceUrl": "The official URL of the story",\n'
            '  "audioUrl": "Direct link to the audio/video file, or an empty string"\n'
            "}"
        )
        response = client.models.generate_content(
            model=GEMINI_TEXT_MODEL,
            contents=prompt,
            config=genai_types.GenerateContentConfig(
                tools=[genai_types.Tool(google_search=genai_types.GoogleSearch())],
            ),
        )
        return _news_from_payload(_parse_json(response.text or "{}", "Gemini", "news"), "Gemini")

    def fetch_general_articles(self, language: str, settings: ApiSettings) -> List[ArticleDraft]:
        client = self._client(settings)
        item = genai_types.Schema(
            type=genai_types.Type.OBJECT,
            properties={
                "title": genai_types.Schema(type=genai_types.Type.STRING),
                "content": genai_types.Schema(type=genai_types.Type.STRING),
            },
            required=["title", "content"],
        )
        response = client.models.generate_content(
            model=GEMINI_TEXT_MODEL,
            contents=_general_prompt(language),
            config=genai_types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=genai_types.Schema(
                    type=genai_types.Type.OBJECT,
                    properties={"articles": genai_types.Schema(type=genai_types.Type.ARRAY, items=item)},
                    required=["articles"],
                ),
            ),
        )
        return _drafts_from_payload(_parse_json(response.text or "[]", "Gemini", "general articles"))


class OpenAICompatibleHandler(ProviderHandler):
    """Chat-completions backend (OpenAI, DeepSeek). No web search."""

    BASE_URLS = {
        "openai": "https://api.openai.com/v1",
        "deepseek": "https://api.deepseek.com",
    }
    MODELS = {
        "openai": "gpt-4o-mini",
        "deepseek": "deepseek-chat",
    }

    def __init__(self, provider: str) -> None:
        if provider not in self.BASE_URLS:
            raise ValueError(f"Unknown OpenAI-compatible provider '{provider}'")
        self.name = provider
        self.base_url = self.BASE_URLS[provider]
        self.model = self.MODELS[provider]

    @property
    def supports_tts(self) -> bool:
        return self.name == "openai"

    def _client(self, settings: ApiSettings) -> OpenAI:
        return OpenAI(api_key=self.api_key(settings), base_url=self.base_url)

    def _chat_json(self, prompt: str, settings: ApiSettings, what: str) -> Any:
        client = self._client(settings)
        resp = client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
        )
        text = resp.choices[0].message.content if resp.choices else None
        return _parse_json(text, self.name, what)

    def synthesize_speech(self, text: str, language: str, settings: ApiSettings) -> SpeechResult:
        if not self.supports_tts:
            # Borrow the OpenAI voice with the same settings when this backend has none.
            if not resolve_key("openai", settings):
                raise MissingCredentialError(
                    f"{self.name} does not support TTS and no OpenAI key is configured for audio"
                )
            return OpenAICompatibleHandler("openai").synthesize_speech(text, language, settings)

        client = self._client(settings)
        resp = client.audio.speech.create(
            model=OPENAI_TTS_MODEL,
            voice=OPENAI_TTS_VOICE,
            input=text,
            response_format="mp3",
        )
        audio = resp.content
        if not audio:
            raise ProviderResponseError("OpenAI TTS returned no audio")
        return SpeechResult(audio_data=base64.b64encode(audio).decode("ascii"), encoding="mp3")

    def analyze_word(self, word: str, language: str, context: str, settings: ApiSettings) -> WordDefinition:
        data = self._chat_json(_word_prompt(word, language, context), settings, "word analysis")
        if not isinstance(data, dict):
            raise ProviderResponseError(f"{self.name} word analysis is not an object")
        return WordDefinition.from_payload(data, word)

    def fetch_news_article(self, language: str, settings: ApiSettings) -> NewsResult:
        prompt = (
            "Act as a language learning content curator.\n"
            f'Write a "breaking news" style article (about 150 words) about a recent significant event '
            f"or a cultural topic relevant to {language} speakers.\n"
            "You may not have real-time internet access; if so, choose a timely or recently significant "
            "topic and present it as a news report.\n"
            "Return a JSON object:\n"
            "{\n"
            f'  "title": "The headline in {language}",\n'
            '  "content": "The article text...",\n'
            '  "sourceUrl": "",\n'
            '  "audioUrl": ""\n'
            "}"
        )
        return _news_from_payload(self._chat_json(prompt, settings, "news"), self.name)

    def fetch_general_articles(self, language: str, settings: ApiSettings) -> List[ArticleDraft]:
        return _drafts_from_payload(self._chat_json(_general_prompt(language), settings, "general articles"))


HANDLERS: Dict[str, ProviderHandler] = {
    "gemini": GeminiHandler(),
    "openai": OpenAICompatibleHandler("openai"),
    "deepseek": OpenAICompatibleHandler("deepseek"),
}


def get_handler(provider: str, handlers: Optional[Dict[str, ProviderHandler]] = None) -> ProviderHandler:
    table = handlers if handlers is not None else HANDLERS
    if provider not in table:
        raise ValueError(f"Unknown provider '{provider}'. Valid: {', '.join(sorted(table))}")
    return table[provider]
