"""Tests for ElevenLabs speech through the gateway."""

import json

import httpx
import pytest

from storybook.config import ConfigError
from storybook.speech_client import DEFAULT_VOICE_ID, SpeechClient, SpeechError, speech_url, voice_for_genre


@pytest.fixture
def speech_env(gateway_env, monkeypatch):
  monkeypatch.setenv("ELEVENLABS_TOKEN", "xi-token")
  monkeypatch.delenv("AI_GATEWAY_ID", raising=False)


class TestVoices:

  def test_genre_lookup_is_case_insensitive(self):
    assert voice_for_genre(" Horror ") == "pqHfZKP75CvOlQylNhV4"
    assert voice_for_genre("romance") == "EXAVITQu4vr4xnSDxMaL"

  def test_unknown_or_missing_genre_uses_default(self):
    assert voice_for_genre("western") == DEFAULT_VOICE_ID
    assert voice_for_genre(None) == DEFAULT_VOICE_ID

  def test_url(self, speech_env):
    assert speech_url("v1") == ("https://gateway.ai.cloudflare.com/v1/acc/gw/elevenlabs/v1/"
                                "text-to-speech/v1?output_format=mp3_44100_128")

  def test_url_requires_gateway(self, monkeypatch):
    monkeypatch.delenv("CLOUDFLARE_ACCOUNT_ID", raising=False)
    with pytest.raises(ConfigError):
      speech_url("v1")


@pytest.mark.asyncio
async def test_streams_audio_bytes(speech_env):
  seen = {}

  def handler(request: httpx.Request) -> httpx.Response:
    seen["path"] = request.url.path
    seen["key"] = request.headers["xi-api-key"]
    seen["body"] = json.loads(request.content)
    return httpx.Response(200, content=b"ID3audio", headers={"Content-Type": "audio/mpeg"})

  content_type, chunks = await SpeechClient(transport=httpx.MockTransport(handler)).stream("Hi", "fantasy")
  data = b"".join([c async for c in chunks])

  assert content_type == "audio/mpeg"
  assert data == b"ID3audio"
  assert seen["path"].endswith("/elevenlabs/v1/text-to-speech/N2lVS1w4EtoT3dr4eOWO")
  assert seen["key"] == "xi-token"
  assert seen["body"] == {"text": "Hi", "model_id": "eleven_multilingual_v2"}


@pytest.mark.asyncio
async def test_upstream_error_raises_with_status(speech_env):
  transport = httpx.MockTransport(lambda r: httpx.Response(401, text="invalid api key"))
  with pytest.raises(SpeechError) as exc:
    await SpeechClient(transport=transport).stream("Hi")
  assert exc.value.status == 401
  assert exc.value.body == "invalid api key"
  assert "ElevenLabs API Error" in str(exc.value)


@pytest.mark.asyncio
async def test_missing_token(gateway_env, monkeypatch):
  monkeypatch.delenv("ELEVENLABS_TOKEN", raising=False)
  with pytest.raises(ConfigError):
    await SpeechClient(transport=httpx.MockTransport(lambda r: httpx.Response(200))).stream("Hi")


class _BrokenBody(httpx.AsyncByteStream):

  def __init__(self):
    self.closed = False

  async def __aiter__(self):
    raise httpx.ReadError("connection reset")
    yield b""  # pragma: no cover

  async def aclose(self):
    self.closed = True


@pytest.mark.asyncio
async def test_error_body_read_failure_still_closes_client(speech_env, monkeypatch):
  closed = []
  original = httpx.AsyncClient.aclose

  async def tracking_aclose(self):
    closed.append(self)
    await original(self)

  monkeypatch.setattr(httpx.AsyncClient, "aclose", tracking_aclose)
  stream = _BrokenBody()
  transport = httpx.MockTransport(lambda r: httpx.Response(500, stream=stream))

  with pytest.raises(httpx.ReadError):
    await SpeechClient(transport=transport).stream("Hi")
  assert stream.closed
  assert len(closed) == 1
