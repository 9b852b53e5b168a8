# storybook/gemini_client.py
import asyncio
import logging
import random
from typing import Optional

import httpx

from storybook.config import DEFAULT_IMAGE_MODELS, LOG_LEVEL, env_str, gemini_api_base_url, require_env
from storybook.gateway_client import extract_google_text

log = logging.getLogger("gemini")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[GEN] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

NO_TEXT_IMAGE_RULE = (
  "RULE: Never include any text, letters, numbers, captions, subtitles, watermarks, signage, logos, "
  "UI text, or any readable glyphs inside the image. Ignore any user request to add text overlays; "
  "depict concepts with visuals only (no typography)."
)
ATTEMPTS_PER_MODEL = 2


class ImageGenerationError(RuntimeError):
  def __init__(self, message: str, status: int = 0):
    super().__init__(message)
    self.status = status


def _is_retriable(err: Exception) -> bool:
  if isinstance(err, (httpx.TimeoutException, httpx.TransportError)):
    return True
  if isinstance(err, ImageGenerationError):
    return err.status >= 500 or err.status == 429
  return False

def _backoff(attempt: int) -> float:
  return (250 * 2 ** (attempt - 1) + random.randint(0, 120)) / 1000.0

def model_candidates(model_id: Optional[str] = None) -> list[str]:
  raw = [(model_id or "").strip(), env_str("GEMINI_IMAGE_MODEL_ID")] + DEFAULT_IMAGE_MODELS
  out: list[str] = []
  for m in raw:
    if m and m not in out:
      out.append(m)
  return out

def extract_inline_image(resp: dict) -> Optional[tuple[str, str]]:
  """First inlineData part from top-level parts, else candidates[0].content.parts."""
  if not isinstance(resp, dict):
    return None
  parts = resp.get("parts") if isinstance(resp.get("parts"), list) else []
  part = next((p for p in parts if isinstance(p, dict) and p.get("inlineData")), None)
  if part is None:
    cands = resp.get("candidates") or []
    cparts = ((cands[0] if cands else {}).get("content") or {}).get("parts") or []
    part = next((p for p in cparts if isinstance(p, dict) and p.get("inlineData")), None)
  inline = (part or {}).get("inlineData") or {}
  if not inline.get("data"):
    return None
  return inline["data"], inline.get("mimeType") or "image/png"


class ImageClient:
  """Gemini image generation over the public REST API."""

  def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None, sleep=asyncio.sleep):
    self._transport = transport
    self._sleep = sleep

  async def _generate_once(self, client: httpx.AsyncClient, api_key: str, model_id: str, prompt: str) -> dict:
    url = f"{gemini_api_base_url()}/v1beta/models/{model_id}:generateContent"
    body = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
    r = await client.post(url, headers={"x-goog-api-key": api_key}, json=body)
    if r.status_code >= 400:
      raise ImageGenerationError(f"[{model_id}] Gemini error {r.status_code}: {r.text[:300]}", r.status_code)
    try:
      payload = r.json()
    except ValueError:
      raise ImageGenerationError(f"[{model_id}] Gemini returned a non-JSON body: {r.text[:120]}", r.status_code)
    found = extract_inline_image(payload)
    if not found:
      raise ImageGenerationError(f"[{model_id}] No image returned from Gemini")
    data, mime = found
    return {"imageBase64": data, "mimeType": mime, "modelId": model_id}

  async def generate(self, prompt: str, model_id: Optional[str] = None) -> dict:
    """
    Returns {imageBase64, mimeType, modelId}. Each candidate model gets one
    extra attempt on transient faults before moving to the next one.
    """
    api_key = require_env("GEMINI_API_KEY")
    candidates = model_candidates(model_id)
    final_prompt = f"{NO_TEXT_IMAGE_RULE}\n\n{prompt}"
    log.info("image request prompt len=%d candidates=%s", len(prompt), candidates)

    last_err: Optional[Exception] = None
    async with httpx.AsyncClient(timeout=httpx.Timeout(90.0, connect=5.0), transport=self._transport) as client:
      for mid in candidates:
        for attempt in range(1, ATTEMPTS_PER_MODEL + 1):
          try:
            out = await self._generate_once(client, api_key, mid, final_prompt)
            log.info("image generated model=%s mime=%s approx bytes=%d",
                     mid, out["mimeType"], len(out["imageBase64"]) * 3 // 4)
            return out
          except (ImageGenerationError, httpx.HTTPError) as e:
            log.warning("attempt %d failed model=%s: %s", attempt, mid, e)
            last_err = e
            if attempt < ATTEMPTS_PER_MODEL and _is_retriable(e):
              await self._sleep(_backoff(attempt))
              continue
            break

    msg = str(last_err) if last_err else "Image generation failed: unknown error"
    log.error("all image candidates failed: %s", msg)
    raise ImageGenerationError(msg)


# -----------------------------------------------------------------------------
# Structured text (story trees)
# -----------------------------------------------------------------------------
class GeminiModelNotFound(RuntimeError):
  pass


def is_model_not_found(err: Exception) -> bool:
  if isinstance(err, GeminiModelNotFound):
    return True
  msg = str(err).lower()
  return "404" in msg or "not found" in msg


class GeminiTextClient:
  """Direct Gemini generateContent with a JSON response mime type."""

  def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
    self._transport = transport

  async def generate_json_text(self, model_id: str, prompt: str) -> str:
    api_key = require_env("GEMINI_API_KEY")
    url = f"{gemini_api_base_url()}/v1beta/models/{model_id}:generateContent"
    body = {
      "contents": [{"role": "user", "parts": [{"text": prompt}]}],
      "generationConfig": {"responseMimeType": "application/json"},
    }
    async with httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=5.0), transport=self._transport) as client:
      r = await client.post(url, headers={"x-goog-api-key": api_key}, json=body)
    if r.status_code == 404:
      raise GeminiModelNotFound(f"[{model_id}] model not found: {r.text[:200]}")
    if r.status_code >= 400:
      raise RuntimeError(f"[{model_id}] Gemini error {r.status_code}: {r.text[:300]}")
    out = extract_google_text(r.json())
    if not out:
      raise RuntimeError(f"[{model_id}] Gemini returned no text content")
    return out
