from __future__ import annotations

import os
from typing import Callable, Dict, Optional

import httpx

APP_NAME = "LinguistDaily"
TABLE = "AIProviders"

# Remote table names providers slightly differently.
_PROVIDER_ALIASES = {
    "gemini": "gemini",
    "google": "gemini",
    "openai": "openai",
    "deepseek": "deepseek",
}


def fetch_remote_settings(
    url: Optional[str] = None,
    anon_key: Optional[str] = None,
    *,
    client: Optional[httpx.Client] = None,
    info_cb: Optional[Callable[[str], None]] = None,
) -> Optional[Dict[str, str]]:
    """Fetch enabled provider keys from the hosted PostgREST table.

    Returns a provider -> key mapping, or None when the store is not
    configured, unreachable, or has no enabled rows for this app.
    """

    url = url or os.getenv("SUPABASE_URL")
    anon_key = anon_key or os.getenv("SUPABASE_ANON_KEY")
    if not url or not anon_key:
        if info_cb:
            info_cb("Remote config not configured; skipping.")
        return None

    endpoint = f"{url.rstrip('/')}/rest/v1/{TABLE}"
    params = {
        "select": "provider,apikey",
        "appname": f"eq.{APP_NAME}",
        "enable": "eq.true",
    }
    headers = {"apikey": anon_key, "Authorization": f"Bearer {anon_key}"}

    owns_client = client is None
    http = client or httpx.Client(timeout=15.0)
    try:
        resp = http.get(endpoint, params=params, headers=headers)
        resp.raise_for_status()
        rows = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        if info_cb:
            info_cb(f"Could not fetch remote config: {e}")
        return None
    finally:
        if owns_client:
            http.close()

    keys: Dict[str, str] = {}
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        provider = _PROVIDER_ALIASES.get(str(row.get("provider") or "").strip().lower())
        apikey = row.get("apikey")
        if provider and apikey:
            keys[provider] = str(apikey)

    if not keys:
        if info_cb:
            info_cb("No enabled provider keys in remote config.")
        return None
    return keys
