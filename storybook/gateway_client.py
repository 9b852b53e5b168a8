# storybook/gateway_client.py
import asyncio
import json
import logging
import re
from typing import Any, Optional

import httpx

from storybook.config import LOG_LEVEL, ConfigError, env_str, require_env, text_api_version

# -----------------------------------------------------------------------------
# Logging
# -----------------------------------------------------------------------------
log = logging.getLogger("gateway")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[GW] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

TRANSIENT_STATUS = (429, 502, 503, 504)
RETRY_PAUSE_SEC = 0.15

_FENCED = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_JSON_OBJECT_AT_END = re.compile(r"\{[\s\S]*\}\s*$")


class GatewayError(RuntimeError):
  def __init__(self, message: str, status: int = 0, body: str = ""):
    super().__init__(message)
    self.status = status
    self.body = body


# -----------------------------------------------------------------------------
# Url helpers
# -----------------------------------------------------------------------------
def _norm_url(raw: Optional[str]) -> Optional[str]:
  s = (raw or "").strip()
  return s.rstrip("/") or None

def _norm_segment(raw: Optional[str]) -> Optional[str]:
  s = (raw or "").strip().strip("/")
  return s or None

def gateway_base_url(override: Optional[str] = None) -> str:
  explicit = _norm_url(override) or _norm_url(env_str("CLOUDFLARE_AI_GATEWAY_BASE_URL"))
  if explicit:
    return explicit
  account = _norm_segment(env_str("CLOUDFLARE_ACCOUNT_ID"))
  gateway = _norm_segment(env_str("CLOUDFLARE_AI_GATEWAY_ID"))
  if account and gateway:
    return f"https://gateway.ai.cloudflare.com/v1/{account}/{gateway}"
  raise ConfigError(
    "Cloudflare AI Gateway base URL not configured. Set CLOUDFLARE_AI_GATEWAY_BASE_URL "
    "or both CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_AI_GATEWAY_ID."
  )

def is_transient(status: int) -> bool:
  return status in TRANSIENT_STATUS

async def safe_read_text(resp: httpx.Response) -> str:
  try:
    await resp.aread()
    return resp.text
  except httpx.HTTPError:
    return "<unreadable response body>"


# -----------------------------------------------------------------------------
# Response unwrapping
# -----------------------------------------------------------------------------
def extract_google_text(payload: dict) -> str:
  """candidates[0].content.parts[*].text joined by newlines ("" when none)."""
  cands = (payload or {}).get("candidates") or []
  parts = ((cands[0] if cands else {}).get("content") or {}).get("parts") or []
  texts = [p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str) and p["text"].strip()]
  return "\n".join(texts).strip()

def extract_compat_text(payload: dict) -> str:
  choices = (payload or {}).get("choices") or []
  content = ((choices[0] if choices else {}).get("message") or {}).get("content")
  return content.strip() if isinstance(content, str) else ""

def strip_non_json_wrappers(text: str) -> str:
  text = text or ""
  m = _FENCED.search(text)
  if m and m.group(1):
    return m.group(1).strip()
  start, end = text.find("{"), text.rfind("}")
  if start != -1 and end > start:
    return text[start:end + 1].strip()
  return text.strip()

def extract_json_dict(text: str) -> dict:
  """Tolerant parse: whole text, then the trailing {...} block; {} on failure."""
  if not text:
    return {}
  try:
    v = json.loads(text)
    return v if isinstance(v, dict) else {}
  except ValueError:
    pass
  m = _JSON_OBJECT_AT_END.search(text)
  if m:
    try:
      v = json.loads(m.group(0))
      return v if isinstance(v, dict) else {}
    except ValueError:
      return {}
  return {}


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------
class GatewayClient:
  """Cloudflare AI Gateway: Google AI Studio direct route and the OpenAI-compat route."""

  def __init__(self, *, base_url: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
    self._base_override = base_url
    self._transport = transport
    self._client: Optional[httpx.AsyncClient] = None

  async def __aenter__(self):
    self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=5.0), transport=self._transport)
    return self

  async def __aexit__(self, *exc):
    if self._client:
      await self._client.aclose()

  async def google_direct(
      self,
      model_id: str,
      text: str,
      *,
      api_version: Optional[str] = None,
      provider_slug: str = "google-ai-studio",
  ) -> str:
    goog_key = require_env("GEMINI_API_KEY")
    cf_token = env_str("CLOUDFLARE_API_KEY")
    if not cf_token:
      raise ConfigError("CLOUDFLARE_API_KEY (Gateway token) is required for Cloudflare Gateway.")

    version = (api_version or "").strip() or text_api_version()
    provider = _norm_segment(provider_slug) or "google-ai-studio"
    url = f"{gateway_base_url(self._base_override)}/{provider}/{version}/models/{model_id}:generateContent"
    headers = {
      "Content-Type": "application/json",
      "x-goog-api-key": goog_key,
      "cf-aig-authorization": f"Bearer {cf_token}",
    }
    body = {"contents": [{"role": "user", "parts": [{"text": text}]}]}

    log.info("google direct model=%s prompt len=%d", model_id, len(text))
    r = await self._client.post(url, headers=headers, json=body)
    if r.status_code >= 400:
      err = await safe_read_text(r)
      raise GatewayError(f"Cloudflare Gateway (google direct) error {r.status_code}: {err}", r.status_code, err)

    out = extract_google_text(r.json())
    if not out:
      raise GatewayError("Cloudflare Gateway (google direct) returned no text content.")
    return out

  async def compat(
      self,
      model_id: str,
      prompt: str,
      *,
      temperature: Optional[float] = None,
      max_output_tokens: Optional[int] = None,
      provider_slug: Optional[str] = None,
  ) -> str:
    cf_token = env_str("CLOUDFLARE_API_KEY")
    if not cf_token:
      raise ConfigError("CLOUDFLARE_API_KEY is required to call Cloudflare AI Gateway compat endpoint.")

    provider = _norm_segment(provider_slug) or _norm_segment(env_str("CLOUDFLARE_AI_GATEWAY_PROVIDER")) or "google"
    url = f"{gateway_base_url(self._base_override)}/compat/v1/chat/completions"
    headers = {
      "Content-Type": "application/json",
      "Accept": "application/json",
      "Authorization": f"Bearer {cf_token}",
    }
    body: dict[str, Any] = {
      "model": f"{provider}/{model_id}",
      "messages": [{"role": "user", "content": prompt}],
    }
    if temperature is not None:
      body["temperature"] = float(temperature)
    if max_output_tokens and max_output_tokens > 0:
      body["max_tokens"] = int(max_output_tokens)

    r = await self._client.post(url, headers=headers, json=body)
    if is_transient(r.status_code):
      log.warning("compat transient status %d, retrying once", r.status_code)
      await asyncio.sleep(RETRY_PAUSE_SEC)
      r = await self._client.post(url, headers=headers, json=body)
    if r.status_code >= 400:
      err = await safe_read_text(r)
      raise GatewayError(f"Cloudflare Gateway error {r.status_code}: {err}", r.status_code, err)

    out = extract_compat_text(r.json())
    if not out:
      raise GatewayError("Cloudflare Gateway did not return text content.")
    return out
