# storybook/speech_client.py
import logging
from typing import AsyncIterator, Optional

import httpx

from storybook.config import LOG_LEVEL, ConfigError, env_str, require_env

log = logging.getLogger("speech")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[TTS] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

# ElevenLabs voices per genre
GENRE_VOICES = {
  "adventure": "JBFqnCBsd6RMkjVDRZzb",   # George, warm narration
  "fantasy": "N2lVS1w4EtoT3dr4eOWO",     # Callum, intense
  "scifi": "cjVigY5qzO86Huf0OWal",       # Daniel, authoritative
  "horror": "pqHfZKP75CvOlQylNhV4",      # Bill, old narration
  "mystery": "pqHfZKP75CvOlQylNhV4",
  "romance": "EXAVITQu4vr4xnSDxMaL",     # Sarah, soft
  "comedy": "9BWtsMINqrJLrRacOk9x",      # Aria, expressive
  "drama": "SAz9YHcvj6GT2YYXdXww",       # Matilda, friendly
  "action": "N2lVS1w4EtoT3dr4eOWO",
  "historical": "JBFqnCBsd6RMkjVDRZzb",
}
DEFAULT_VOICE_ID = "JBFqnCBsd6RMkjVDRZzb"
TTS_MODEL_ID = "eleven_multilingual_v2"
OUTPUT_FORMAT = "mp3_44100_128"


class SpeechError(RuntimeError):
  def __init__(self, message: str, status: int = 500, body: str = ""):
    super().__init__(message)
    self.status = status
    self.body = body


def voice_for_genre(genre: Optional[str]) -> str:
  return GENRE_VOICES.get((genre or "").strip().lower(), DEFAULT_VOICE_ID)

def speech_url(voice_id: str) -> str:
  account = env_str("CLOUDFLARE_ACCOUNT_ID")
  gateway = env_str("AI_GATEWAY_ID") or env_str("CLOUDFLARE_AI_GATEWAY_ID")
  if not account or not gateway:
    raise ConfigError("CLOUDFLARE_ACCOUNT_ID and CLOUDFLARE_AI_GATEWAY_ID are required for speech.")
  return (f"https://gateway.ai.cloudflare.com/v1/{account}/{gateway}"
          f"/elevenlabs/v1/text-to-speech/{voice_id}?output_format={OUTPUT_FORMAT}")


class SpeechClient:
  """ElevenLabs text-to-speech routed through the Cloudflare AI Gateway."""

  def __init__(self, *, transport: Optional[httpx.AsyncBaseTransport] = None):
    self._transport = transport

  async def stream(self, text: str, genre: Optional[str] = None) -> tuple[str, AsyncIterator[bytes]]:
    """
    Opens the upstream request and returns (content_type, byte iterator).
    Upstream errors raise SpeechError before any byte is yielded.
    """
    token = require_env("ELEVENLABS_TOKEN")
    voice = voice_for_genre(genre)
    url = speech_url(voice)
    body = {"text": text, "model_id": TTS_MODEL_ID}
    headers = {"Content-Type": "application/json", "xi-api-key": token}

    client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=5.0), transport=self._transport)
    try:
      resp = await client.send(client.build_request("POST", url, headers=headers, json=body), stream=True)
    except Exception:
      await client.aclose()
      raise

    if resp.status_code >= 400:
      try:
        await resp.aread()
        err = resp.text
      finally:
        await resp.aclose()
        await client.aclose()
      log.error("ElevenLabs error %d: %s", resp.status_code, err[:200])
      raise SpeechError(f"ElevenLabs API Error: {err}", resp.status_code or 500, err)

    log.info("speech stream voice=%s text len=%d", voice, len(text))

    async def _chunks() -> AsyncIterator[bytes]:
      try:
        async for chunk in resp.aiter_bytes():
          yield chunk
      finally:
        await resp.aclose()
        await client.aclose()

    return "audio/mpeg", _chunks()
