from __future__ import annotations

import argparse
from datetime import datetime
import json
import os
from pathlib import Path
import sys
from typing import Any, Optional

from google.genai import errors as genai_errors
import openai
from rich.console import Console
from rich.markup import escape
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn
from rich.table import Table

from .api import LinguistDaily
from .audio import AudioDecodeError, PlaybackUnavailableError
from .models import PROVIDERS, Article, Language
from .providers import MissingCredentialError, ProviderError
from .reader import ArticleSession, read_article

console = Console()

class UserCancelledError(RuntimeError):
    pass

DEFAULT_CONFIG: dict[str, Any] = {
    "global": {
        "display": "normal",
        "verbose": 2,
        "logging": 0,
        "logging_file": None,
        "logging_clear": False,
        "data_dir": None,
    },
    "preload": {
        "languages": [],
        "delay_seconds": 2.0,
    },
    "read": {
        "window": 2,
        "seek_step": 5.0,
        "volume": 1.0,
    },
    "review": {
        "limit": 20,
    },
}


def _merge_config(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Overlay config sections onto ``base``; scalars replace, sections merge key by key."""
    merged = {k: dict(v) if isinstance(v, dict) else v for k, v in base.items()}
    for section, values in overlay.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


def _config_path() -> Path:
    explicit = os.getenv("LINGUIST_CONFIG")
    if explicit:
        return Path(explicit).expanduser()
    return Path.home() / ".config" / "linguist-daily" / "config.json"


def _load_config() -> dict[str, Any]:
    path = _config_path()
    local_cfg: dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                local_cfg = data
        except (OSError, ValueError) as e:
            console.print(f"[yellow]Ignoring unreadable config {path}: {e}[/yellow]")
    return _merge_config(DEFAULT_CONFIG, local_cfg)


def _config_overrides(cfg: dict[str, Any]) -> dict[str, Any]:
    """Only the values that differ from DEFAULT_CONFIG."""
    out: dict[str, Any] = {}
    for section, values in cfg.items():
        defaults = DEFAULT_CONFIG.get(section)
        if isinstance(values, dict) and isinstance(defaults, dict):
            changed = {k: v for k, v in values.items() if k not in defaults or defaults[k] != v}
            if changed:
                out[section] = changed
        elif values != defaults:
            out[section] = values
    return out


def _save_config(cfg: dict[str, Any]) -> Path:
    path = _config_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(_config_overrides(cfg), indent=2), encoding="utf-8")
    return path


# Reader window/volume survive between sessions, next to the data blobs when data_dir is set.
def _runtime_state_path(cfg: dict[str, Any]) -> Path:
    data_dir = _cfg_get(cfg, "global.data_dir", None)
    base = Path(data_dir).expanduser() if data_dir else _config_path().parent
    return base / "reader_state.json"


def _load_runtime_state(cfg: dict[str, Any]) -> dict[str, Any]:
    p = _runtime_state_path(cfg)
    try:
        data = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def _save_runtime_state(cfg: dict[str, Any], state: dict[str, Any]) -> Optional[Path]:
    p = _runtime_state_path(cfg)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(state, indent=2), encoding="utf-8")
    except OSError:
        return None
    return p


def _coerce_scalar(text: str) -> Any:
    t = text.strip()
    tl = t.lower()
    if tl in {"true", "false"}:
        return tl == "true"
    if tl in {"null", "none"}:
        return None
    try:
        return float(t) if "." in t else int(t)
    except ValueError:
        pass
    # Arrays/objects as JSON.
    if (t.startswith("{") and t.endswith("}")) or (t.startswith("[") and t.endswith("]")):
        try:
            return json.loads(t)
        except ValueError:
            pass
    return text


def _cfg_get(cfg: dict[str, Any], path: str, default: Any = None) -> Any:
    section, _, key = path.partition(".")
    values = cfg.get(section, default)
    if not key:
        return values
    return values.get(key, default) if isinstance(values, dict) else default


def _cfg_set(cfg: dict[str, Any], path: str, value: Any) -> None:
    section, _, key = path.partition(".")
    if section not in DEFAULT_CONFIG:
        raise ValueError(f"Unknown config section '{section}' (known: {', '.join(DEFAULT_CONFIG)})")
    if not key or "." in key:
        raise ValueError(f"Config keys look like <section>.<name>, got '{path}'")
    cfg.setdefault(section, {})[key] = value


def _cfg_flatten_keys(cfg: dict[str, Any]) -> list[str]:
    return [f"{section}.{k}" for section, values in cfg.items() if isinstance(values, dict) for k in values]


def _resolve(cli_value: Any, cfg: dict[str, Any], path: str, fallback: Any, cast: Any = None) -> Any:
    value = cli_value if cli_value is not None else _cfg_get(cfg, path, fallback)
    return cast(value) if cast is not None and value is not None else value


class _CliLogger:
    """Levelled append-only file log; a failed write disables it for the run."""

    def __init__(self, level: int, log_path: Optional[Path]) -> None:
        self.level = max(0, min(3, int(level)))
        self.log_path = log_path
        self._enabled = self.level > 0 and self.log_path is not None

    def write(self, level: int, message: str) -> None:
        if not self._enabled or int(level) > self.level:
            return
        ts = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        try:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a", encoding="utf-8") as f:
                f.write(f"[{ts}] L{level} {message}\n")
        except OSError as e:
            self._enabled = False
            console.print(f"[yellow]File logging disabled: {e}[/yellow]")


def _resolve_log_file_path(args: argparse.Namespace, raw: Optional[str]) -> Optional[Path]:
    if int(getattr(args, "logging", 0) or 0) <= 0:
        return None
    default_name = f"linguist-{datetime.now().strftime('%y%m%d.%H%M')}.log"
    if raw:
        p = Path(raw).expanduser()
        # Existing directory, trailing slash or no suffix means "folder target".
        if (p.exists() and p.is_dir()) or str(raw).endswith("/") or p.suffix == "":
            return p / default_name
        return p
    return Path.cwd() / default_name


def _setup_logger(args: argparse.Namespace, cfg: dict[str, Any]) -> _CliLogger:
    level = int(_cfg_get(cfg, "global.logging", 0) or 0)
    if getattr(args, "logging", None) is not None:
        level = int(args.logging)
    for n in range(4):
        if getattr(args, f"l{n}", False):
            level = n
            break
    args.logging = level
    raw = getattr(args, "logging_file", None) or _cfg_get(cfg, "global.logging_file", None)
    log_path = _resolve_log_file_path(args, raw)
    clear = bool(getattr(args, "logging_clear", False)) or bool(_cfg_get(cfg, "global.logging_clear", False))
    if log_path and clear:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("", encoding="utf-8")
    logger = _CliLogger(level=level, log_path=log_path)
    logger.write(1, f"log_file={logger.log_path}")
    return logger


def _display_mode(args: argparse.Namespace, cfg: dict[str, Any]) -> str:
    cli = args.display
    if cli is None:
        cli = _cfg_get(cfg, "global.display", "normal")
    return "rich" if cli in {"r", "rich"} else "normal"


def _verbosity(args: argparse.Namespace, cfg: dict[str, Any]) -> int:
    if getattr(args, "quiet", False):
        return 0
    for n in range(4):
        if getattr(args, f"v{n}", False):
            return n
    if args.verbose is not None:
        return max(0, min(3, int(args.verbose)))
    return int(_cfg_get(cfg, "global.verbose", 2))


def _begin(args: argparse.Namespace) -> tuple[dict[str, Any], str, int, _CliLogger]:
    """Load config once and resolve display, verbosity and file logger for a command."""
    cfg = _load_config()
    return cfg, _display_mode(args, cfg), _verbosity(args, cfg), _setup_logger(args, cfg)


def _print(obj: Any, *, verbosity: int, display: str) -> None:
    if verbosity <= 0:
        return
    if verbosity == 1:
        if isinstance(obj, dict):
            for _, v in obj.items():
                if isinstance(v, str) and v:
                    print(v)
        return
    if display == "rich":
        console.print_json(json.dumps(obj, indent=2, ensure_ascii=False))
    else:
        print(json.dumps(obj, indent=2, ensure_ascii=False))


def _service(cfg: dict[str, Any], logger: _CliLogger, *, verbosity: int) -> LinguistDaily:
    def info_cb(message: str) -> None:
        if verbosity >= 3:
            console.log(message)
        logger.write(2, message)

    return LinguistDaily(_cfg_get(cfg, "global.data_dir", None), info_cb=info_cb)


def _mask(key: Optional[str]) -> str:
    if not key:
        return "-"
    return f"{key[:4]}…{key[-4:]}" if len(key) > 10 else "****"


def _cmd_preload(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    languages = args.languages or _cfg_get(cfg, "preload.languages", []) or None
    delay = _resolve(args.delay, cfg, "preload.delay_seconds", 2.0, float)
    logger.write(1, f"command=preload languages={languages or 'all'} delay={delay}")
    svc = _service(cfg, logger, verbosity=verbosity)

    if display == "rich" and verbosity >= 2:
        with Progress(
            SpinnerColumn(),
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            TimeElapsedColumn(),
            console=console,
        ) as progress:
            tasks: dict[str, int] = {}

            def progress_cb(stage: str, current: int, total: int, message: str) -> None:
                if stage not in tasks:
                    tasks[stage] = progress.add_task(message, total=max(total, 1))
                progress.update(tasks[stage], completed=current, total=max(total, 1), description=message)
                logger.write(3, f"progress stage={stage} {current}/{total} msg={message}")

            out = svc.preload(languages, delay_seconds=delay, progress_cb=progress_cb)
    else:
        out = svc.preload(languages, delay_seconds=delay)

    out.pop("articles", None)
    for lang, st in out["languages"].items():
        logger.write(1, f"preload {lang} status={st['status']} articles={len(st['articles'])} error={st['error']}")
    _print(out, verbosity=verbosity, display=display)


def _article_table(articles: list[Article]) -> Table:
    table = Table(title="History")
    table.add_column("#", justify="right")
    table.add_column("id")
    table.add_column("date")
    table.add_column("language")
    table.add_column("title")
    table.add_column("audio")
    for i, a in enumerate(articles, start=1):
        audio = "official" if a.audio_url else ("inline" if a.audio_base64 else "-")
        table.add_row(str(i), a.id[:8], a.date, a.language, a.title, audio)
    return table


def _cmd_history(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    svc = _service(cfg, logger, verbosity=verbosity)
    articles = svc.history()
    if args.language:
        lang = Language.parse(args.language).value
        articles = [a for a in articles if a.language == lang]
    if verbosity <= 0:
        return
    if not articles:
        print("No articles yet. Run `linguist preload` first.")
        return
    console.print(_article_table(articles))


def _pick_article(svc: LinguistDaily, token: Optional[str]) -> Article:
    if token:
        article = svc.find_article(token)
        if article is None:
            raise FileNotFoundError(f"No article matching '{token}' in history")
        return article
    history = svc.history()
    if not history:
        raise FileNotFoundError("History is empty. Run `linguist preload` first.")
    if not sys.stdin.isatty():
        raise UserCancelledError("Interactive selection requires a TTY. Pass an article id or index.")
    console.print(_article_table(history))
    raw = input(f"Article [1-{len(history)}]: ").strip()
    if raw.lower() in {"", "q", "quit", "exit"}:
        raise UserCancelledError("Selection cancelled.")
    if not raw.isdigit() or not (0 < int(raw) <= len(history)):
        raise UserCancelledError("Selection cancelled (invalid index).")
    return history[int(raw) - 1]


def _cmd_read(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    svc = _service(cfg, logger, verbosity=verbosity)
    article = _pick_article(svc, args.article)
    logger.write(1, f"command=read article={article.id} language={article.language}")

    if not article.has_narration and not args.no_audio:
        with console.status("Generating narration..."):
            svc.narrate(article)

    runtime = _load_runtime_state(cfg)
    runtime_read = runtime.get("read", {}) if isinstance(runtime.get("read"), dict) else {}
    window = int(args.window) if args.window is not None else int(runtime_read.get("window", _cfg_get(cfg, "read.window", 2)))
    volume = float(runtime_read.get("volume", _cfg_get(cfg, "read.volume", 1.0)))
    seek_step = _resolve(args.seek_step, cfg, "read.seek_step", 5.0, float)

    session = ArticleSession(article)
    session.set_volume(volume)
    result = read_article(session, window=window, seek_step=seek_step)
    runtime["read"] = result
    saved = _save_runtime_state(cfg, runtime)
    logger.write(2, f"read runtime state saved: {saved}")


def _cmd_lookup(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    logger.write(1, f"command=lookup word={args.word} language={args.language}")
    svc = _service(cfg, logger, verbosity=verbosity)
    with console.status(f'Analyzing "{args.word}"...'):
        item = svc.lookup(args.word, args.language, args.context or "")
    out = item.to_dict()
    out.pop("audio_base64", None)
    out["has_audio"] = bool(item.audio_base64)
    _print(out, verbosity=verbosity, display=display)


def _vocab_table(items: list, title: str) -> Table:
    table = Table(title=title)
    table.add_column("id")
    table.add_column("word")
    table.add_column("definition")
    table.add_column("stage", justify="right")
    table.add_column("due")
    for v in items:
        due = datetime.fromtimestamp(v.next_review_at).strftime("%Y-%m-%d %H:%M")
        table.add_row(v.id[:8], v.word, v.definition_en, str(v.review_stage), due)
    return table


def _cmd_vocab(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    svc = _service(cfg, logger, verbosity=verbosity)
    items = svc.vocabulary()
    if verbosity <= 0:
        return
    if not items:
        print("Vocabulary is empty. Use `linguist lookup <word>` to add words.")
        return
    console.print(_vocab_table(items, f"Vocabulary ({len(items)})"))


def _cmd_review(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    svc = _service(cfg, logger, verbosity=verbosity)
    if args.item_id:
        if args.result not in {"pass", "fail"}:
            raise ValueError("Review result must be 'pass' or 'fail'")
        item = svc.review(args.item_id, args.result == "pass")
        logger.write(1, f"command=review id={item.id} result={args.result} stage={item.review_stage}")
        _print(
            {"id": item.id, "word": item.word, "review_stage": item.review_stage, "next_review_at": item.next_review_at},
            verbosity=verbosity,
            display=display,
        )
        return
    limit = _resolve(args.limit, cfg, "review.limit", 20, int)
    due = svc.due()[:limit]
    if verbosity <= 0:
        return
    if not due:
        print("Nothing due for review.")
        return
    console.print(_vocab_table(due, f"Due for review ({len(due)})"))


def _cmd_settings(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    logger.write(1, f"command=settings action={args.settings_action}")
    svc = _service(cfg, logger, verbosity=verbosity)
    settings = svc.settings

    if args.settings_action == "show":
        _print(
            {
                "primary": settings.primary,
                "backup": settings.backup,
                "keys": {p: _mask(settings.keys.get(p)) for p in PROVIDERS},
            },
            verbosity=verbosity,
            display=display,
        )
        return
    if args.settings_action == "set-key":
        settings.keys[args.provider] = args.key
        svc.save_settings(settings)
        print(f"Saved {args.provider} key")
        return
    if args.settings_action == "primary":
        settings.primary = args.provider
        svc.save_settings(settings)
        print(f"Primary provider: {args.provider}")
        return
    if args.settings_action == "backup":
        settings.backup = None if args.provider == "none" else args.provider
        svc.save_settings(settings)
        print(f"Backup provider: {settings.backup or 'none'}")
        return
    if args.settings_action == "refresh":
        _print(svc.refresh_settings(), verbosity=verbosity, display=display)
        return
    raise ValueError(f"Unknown settings action: {args.settings_action}")


def _cmd_config(args: argparse.Namespace) -> None:
    cfg, display, verbosity, logger = _begin(args)
    logger.write(1, f"command=config action={args.config_action}")
    if args.config_action == "path":
        print(_config_path())
        return
    if args.config_action == "show":
        print(json.dumps(cfg, indent=2))
        print("\nHow to change settings:")
        print("  linguist config set <dotted.key> <value>")
        print("  linguist config get <dotted.key>")
        print("\nExamples:")
        print("  linguist config set preload.delay_seconds 3")
        print('  linguist config set preload.languages \'["French","Spanish"]\'')
        print("  linguist config set read.window 3")
        print("  linguist config set global.display rich")
        print("\nEditable keys:")
        for k in sorted(_cfg_flatten_keys(cfg)):
            print(f"  - {k}")
        return
    if args.config_action == "get":
        print(json.dumps(_cfg_get(cfg, args.key, None), indent=2))
        return
    if args.config_action == "set":
        _cfg_set(cfg, args.key, _coerce_scalar(args.value))
        path = _save_config(cfg)
        print(f"Saved {args.key} in {path}")
        return
    raise ValueError(f"Unknown config action: {args.config_action}")


def _add_common_options(parser: argparse.ArgumentParser) -> None:
    out = parser.add_argument_group("output")
    out.add_argument("--quiet", action="store_true", help="Print nothing but errors")
    out.add_argument("-d", "--display", choices=["rich", "normal", "r", "n"], default=None, help="rich or plain output")
    out.add_argument("--verbose", type=int, choices=range(4), default=None, help="Console verbosity 0-3")
    for n, label in enumerate(("silent", "results only", "normal", "debug, shows provider fallbacks")):
        out.add_argument(f"-v{n}", action="store_true", help=f"Verbosity {n}: {label}")

    log = parser.add_argument_group("file log")
    log.add_argument("--logging", type=int, choices=range(4), default=None, help="File log level 0-3")
    for n in range(4):
        log.add_argument(f"-l{n}", action="store_true", help=f"Log level {n}" + (" (off)" if n == 0 else ""))
    log.add_argument("--logging-file", default=None, help="Log file, or a folder to create a dated log in")
    log.add_argument("--logging-clear", action="store_true", help="Truncate the log file first")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="linguist", description="Linguist Daily: narrated reading and vocabulary review")
    _add_common_options(p)
    languages = ", ".join(l.value for l in Language)

    sub = p.add_subparsers(dest="command", required=True)

    pre = sub.add_parser("preload", help="Fetch and narrate today's articles for each language")
    _add_common_options(pre)
    pre.add_argument("languages", nargs="*", help=f"Languages to preload (default: all of {languages})")
    pre.add_argument("--delay", default=None, help="Seconds to wait between languages")
    pre.set_defaults(func=_cmd_preload)

    hi = sub.add_parser("history", help="List saved articles")
    _add_common_options(hi)
    hi.add_argument("--language", default=None)
    hi.set_defaults(func=_cmd_history)

    rd = sub.add_parser("read", help="Play an article with sentence highlighting and looping")
    _add_common_options(rd)
    rd.add_argument("article", nargs="?", help="Article id prefix or history index")
    rd.add_argument("--no-audio", action="store_true", help="Do not synthesize narration for articles without audio")
    rd.add_argument("--window", default=None, help="Sentences of context around the active one")
    rd.add_argument("--seek-step", default=None, help="Seconds per left/right seek")
    rd.set_defaults(func=_cmd_read)

    lk = sub.add_parser("lookup", help="Define a word and add it to the vocabulary")
    _add_common_options(lk)
    lk.add_argument("word")
    lk.add_argument("--language", "-L", required=True, help=languages)
    lk.add_argument("--context", "-c", default=None, help="Sentence the word appeared in")
    lk.set_defaults(func=_cmd_lookup)

    vo = sub.add_parser("vocab", help="List saved vocabulary")
    _add_common_options(vo)
    vo.set_defaults(func=_cmd_vocab)

    rv = sub.add_parser("review", help="List due words, or record a review result")
    _add_common_options(rv)
    rv.add_argument("item_id", nargs="?", help="Vocabulary id (prefix)")
    rv.add_argument("result", nargs="?", choices=["pass", "fail"])
    rv.add_argument("--limit", default=None)
    rv.set_defaults(func=_cmd_review)

    st = sub.add_parser("settings", help="Show or change AI provider settings")
    _add_common_options(st)
    st_sub = st.add_subparsers(dest="settings_action", required=True)
    st_show = st_sub.add_parser("show", help="Show providers and masked keys")
    _add_common_options(st_show)
    st_key = st_sub.add_parser("set-key", help="Store an API key for a provider")
    _add_common_options(st_key)
    st_key.add_argument("provider", choices=list(PROVIDERS))
    st_key.add_argument("key")
    st_primary = st_sub.add_parser("primary", help="Set the primary provider")
    _add_common_options(st_primary)
    st_primary.add_argument("provider", choices=list(PROVIDERS))
    st_backup = st_sub.add_parser("backup", help="Set the backup provider (or 'none')")
    _add_common_options(st_backup)
    st_backup.add_argument("provider", choices=[*PROVIDERS, "none"])
    st_refresh = st_sub.add_parser("refresh", help="Pull provider keys from the remote config store")
    _add_common_options(st_refresh)
    st.set_defaults(func=_cmd_settings)

    cfg = sub.add_parser("config", help="Show or update linguist defaults config")
    _add_common_options(cfg)
    cfg_sub = cfg.add_subparsers(dest="config_action", required=True)
    cfg_path = cfg_sub.add_parser("path", help="Show config file path")
    _add_common_options(cfg_path)
    cfg_show = cfg_sub.add_parser("show", help="Show effective config")
    _add_common_options(cfg_show)
    cfg_get = cfg_sub.add_parser("get", help="Get config value by dotted path")
    _add_common_options(cfg_get)
    cfg_get.add_argument("key")
    cfg_set = cfg_sub.add_parser("set", help="Set config value by dotted path")
    _add_common_options(cfg_set)
    cfg_set.add_argument("key")
    cfg_set.add_argument("value")
    cfg.set_defaults(func=_cmd_config)

    return p


def main(argv: Optional[list[str]] = None) -> None:
    parser = build_parser()
    try:
        args = parser.parse_args(sys.argv[1:] if argv is None else argv)
        args.func(args)
    except UserCancelledError as e:
        print(str(e))
        raise SystemExit(1)
    except MissingCredentialError as e:
        console.print(f"[red]{escape(str(e))}[/red]\nSet one with `linguist settings set-key <provider> <key>`.")
        raise SystemExit(2)
    except ProviderError as e:
        console.print(f"[red]Provider error:[/red] {escape(str(e))}")
        raise SystemExit(2)
    except (openai.APIError, genai_errors.APIError) as e:
        console.print(f"[red]Provider request failed:[/red] {escape(str(e))}")
        raise SystemExit(2)
    except (PlaybackUnavailableError, AudioDecodeError) as e:
        console.print(f"[red]Playback error:[/red] {escape(str(e))}")
        raise SystemExit(3)
    except (FileNotFoundError, KeyError) as e:
        print(str(e).strip("'\""))
        raise SystemExit(1)
    except ValueError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("Cancelled.")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
