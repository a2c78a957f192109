from __future__ import annotations

import logging
import os
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

import requests

from siteforge.errors import ModelError

log = logging.getLogger(__name__)

GROQ_API_KEY = os.getenv("GROQ_API_KEY", "").strip()
GROQ_MODEL = os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile").strip()
GROQ_ENDPOINT = "https://api.groq.com/openai/v1/chat/completions"

OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY", "").strip()
OPENROUTER_MODEL = os.getenv("OPENROUTER_MODEL", "google/gemini-2.5-flash").strip()
OPENROUTER_ENDPOINT = "https://openrouter.ai/api/v1/chat/completions"

# provider order tried by chat_completion; unknown names are ignored
LLM_PROVIDERS = [p.strip() for p in os.getenv("LLM_PROVIDERS", "groq,openrouter").split(",") if p.strip()]

try:
    TEMPERATURE = float(os.getenv("GROQ_TEMPERATURE", "0.3"))
except Exception:
    TEMPERATURE = 0.3
try:
    MAX_TOKENS = int(os.getenv("GROQ_MAX_TOKENS", "4000"))
except Exception:
    MAX_TOKENS = 4000
try:
    LLM_TIMEOUT_SECS = int(os.getenv("LLM_TIMEOUT_SECS", "60"))
except Exception:
    LLM_TIMEOUT_SECS = 60

_OPENROUTER_BACKOFF_LOCK = threading.Lock()
_OPENROUTER_BACKOFF_UNTIL = 0.0
try:
    _OPENROUTER_BACKOFF_MAX = float(os.getenv("OPENROUTER_BACKOFF_MAX", "30.0") or 30.0)
except Exception:
    _OPENROUTER_BACKOFF_MAX = 30.0


def _provider_config(name: str) -> Optional[Tuple[str, str, str]]:
    """Return (endpoint, api_key, model) for a configured provider, else None."""
    if name == "groq" and GROQ_API_KEY:
        return GROQ_ENDPOINT, GROQ_API_KEY, GROQ_MODEL
    if name == "openrouter" and OPENROUTER_API_KEY:
        return OPENROUTER_ENDPOINT, OPENROUTER_API_KEY, OPENROUTER_MODEL
    return None


def configured_providers(prefer: Optional[str] = None) -> List[str]:
    order = list(LLM_PROVIDERS)
    if prefer and prefer in order:
        order.remove(prefer)
        order.insert(0, prefer)
    return [name for name in order if _provider_config(name) is not None]


def _openrouter_wait() -> None:
    now = time.time()
    with _OPENROUTER_BACKOFF_LOCK:
        wait_for = _OPENROUTER_BACKOFF_UNTIL - now
    if wait_for > 0:
        log.info("OpenRouter backoff active; waiting %.2fs", wait_for)
        time.sleep(min(wait_for, _OPENROUTER_BACKOFF_MAX))


def _openrouter_register_rate_limit(retry_after: Optional[str]) -> None:
    global _OPENROUTER_BACKOFF_UNTIL
    try:
        delay = float(retry_after) if retry_after else 3.0
    except ValueError:
        delay = 3.0
    delay = max(1.0, min(delay, _OPENROUTER_BACKOFF_MAX))
    with _OPENROUTER_BACKOFF_LOCK:
        _OPENROUTER_BACKOFF_UNTIL = time.time() + delay
    log.warning("OpenRouter rate limited; backing off for %.2fs", delay)


def _post(provider: str, endpoint: str, headers: Dict[str, str], body: Dict[str, Any]) -> requests.Response:
    if provider == "openrouter":
        _openrouter_wait()
    resp = requests.post(endpoint, headers=headers, json=body, timeout=LLM_TIMEOUT_SECS)
    if provider == "openrouter" and resp.status_code == 429:
        _openrouter_register_rate_limit(resp.headers.get("Retry-After"))
    return resp


def _body_preview(resp: requests.Response) -> str:
    try:
        return (resp.text or "")[:400]
    except Exception:
        return str(resp.status_code)


def _call_provider(
    provider: str,
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: float,
    max_tokens: int,
    json_mode: bool,
) -> str:
    config = _provider_config(provider)
    if config is None:
        raise ModelError(f"{provider} is not configured")
    endpoint, api_key, model = config
    headers = {
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }
    if provider == "openrouter":
        headers["X-Title"] = "siteforge"
    body: Dict[str, Any] = {
        "model": model,
        "messages": [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ],
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if json_mode:
        body["response_format"] = {"type": "json_object"}

    start = time.time()
    try:
        resp = _post(provider, endpoint, headers, body)
        if resp.status_code == 400 and json_mode:
            # some models reject response_format; retry once without it
            log.info("%s rejected JSON mode; retrying without response_format", provider)
            body.pop("response_format", None)
            resp = _post(provider, endpoint, headers, body)
    except requests.RequestException as exc:
        log.warning("%s request error: %r", provider, exc)
        raise ModelError("AI generation failed") from exc

    if resp.status_code != 200:
        log.warning("%s HTTP %s: %s", provider, resp.status_code, _body_preview(resp))
        raise ModelError("AI generation failed", upstream_status=resp.status_code)

    try:
        data = resp.json()
    except ValueError as exc:
        log.warning("%s: non-JSON HTTP body", provider)
        raise ModelError("AI generation failed", upstream_status=resp.status_code) from exc

    text = None
    choices = data.get("choices") if isinstance(data, dict) else None
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        if isinstance(message, dict):
            text = message.get("content")
    if not isinstance(text, str) or not text.strip():
        log.warning("%s: empty response text", provider)
        raise ModelError("Empty response from AI")

    log.info(
        "llm: provider=%s model=%s chars=%d dur_ms=%d",
        provider,
        model,
        len(text),
        int((time.time() - start) * 1000),
    )
    return text


def chat_completion(
    system_prompt: str,
    user_prompt: str,
    *,
    temperature: Optional[float] = None,
    max_tokens: Optional[int] = None,
    json_mode: bool = False,
    prefer: Optional[str] = None,
) -> str:
    """Send one system+user exchange and return the assistant text.

    Providers are tried in configured order (``prefer`` moves one to the
    front). Raises :class:`ModelError` carrying the last failure when every
    provider fails, or when none is configured.
    """
    providers = configured_providers(prefer)
    if not providers:
        raise ModelError("Model provider not configured")
    last: Optional[ModelError] = None
    for provider in providers:
        try:
            return _call_provider(
                provider,
                system_prompt,
                user_prompt,
                temperature=TEMPERATURE if temperature is None else temperature,
                max_tokens=MAX_TOKENS if max_tokens is None else max_tokens,
                json_mode=json_mode,
            )
        except ModelError as exc:
            last = exc
    assert last is not None
    raise last


def status() -> Dict[str, Any]:
    providers = configured_providers()
    if not providers:
        return {"provider": None, "model": None, "has_token": False}
    _, _, model = _provider_config(providers[0])  # type: ignore[misc]
    return {"provider": providers[0], "model": model, "has_token": True, "fallbacks": providers[1:]}


def probe() -> Dict[str, Any]:
    providers = configured_providers()
    if not providers:
        return {"ok": False, "error": "Model provider not configured"}
    return {"ok": True, "using": providers[0]}
