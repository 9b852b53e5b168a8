# storybook/cloudflare_client.py
import asyncio
import json
import logging
from typing import Optional

import httpx

from storybook.config import DEFAULT_CLOUDFLARE_MODEL, LOG_LEVEL, ConfigError, env_str
from storybook.gateway_client import RETRY_PAUSE_SEC, is_transient, safe_read_text

log = logging.getLogger("cloudflare")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[CF] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

STORY_SYSTEM_PROMPT = (
  "You are an expert narrative design AI. "
  "Always answer with strict JSON that conforms to the provided schema."
)


class CloudflareAiError(RuntimeError):
  pass


class CloudflareAiClient:
  """Workers AI `ai/run/<model>` endpoint, used for whole story trees."""

  def __init__(
      self,
      account_id: str,
      api_token: str,
      model: str = DEFAULT_CLOUDFLARE_MODEL,
      *,
      max_output_tokens: int = 2048,
      temperature: float = 0.3,
      transport: Optional[httpx.AsyncBaseTransport] = None,
  ):
    self.endpoint = f"https://api.cloudflare.com/client/v4/accounts/{account_id}/ai/run/{model}"
    self.model = model
    self._token = api_token
    self._max_output_tokens = max_output_tokens
    self._temperature = temperature
    self._transport = transport

  @classmethod
  def from_env(cls, **kw) -> "CloudflareAiClient":
    account = env_str("CLOUDFLARE_ACCOUNT_ID")
    token = env_str("CLOUDFLARE_API_TOKEN")
    if not account or not token:
      raise ConfigError("Cloudflare AI configuration missing. Set CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_API_TOKEN.")
    model = env_str("CLOUDFLARE_MODEL", DEFAULT_CLOUDFLARE_MODEL)
    log.info("Cloudflare AI client model=%s", model)
    return cls(account, token, model, **kw)

  async def generate_story_tree(self, prompt: str) -> dict:
    body = {
      "messages": [
        {"role": "system", "content": STORY_SYSTEM_PROMPT},
        {"role": "user", "content": prompt},
      ],
      "stream": False,
      "max_output_tokens": self._max_output_tokens,
      "temperature": self._temperature,
    }
    headers = {"Authorization": f"Bearer {self._token}", "Content-Type": "application/json"}

    async with httpx.AsyncClient(timeout=httpx.Timeout(120.0, connect=5.0), transport=self._transport) as client:
      r = await client.post(self.endpoint, headers=headers, json=body)
      if is_transient(r.status_code):
        await asyncio.sleep(RETRY_PAUSE_SEC)
        r = await client.post(self.endpoint, headers=headers, json=body)
      if r.status_code >= 400:
        diag = await safe_read_text(r)
        raise CloudflareAiError(f"Cloudflare AI request failed with status {r.status_code}: {diag}")
      payload = r.json()

    result = (payload or {}).get("result") or {}
    raw = result.get("response") or result.get("output_text")
    if not isinstance(raw, str) or not raw.strip():
      raise CloudflareAiError(
        "Cloudflare AI response missing textual payload. Ensure the target model supports text output."
      )
    try:
      return json.loads(raw)
    except ValueError as e:
      raise CloudflareAiError(f"Cloudflare AI returned invalid JSON payload. {e}") from e
