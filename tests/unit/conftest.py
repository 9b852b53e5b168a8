"""Shared fixtures for unit tests."""

from __future__ import annotations

import pytest


class FakeClock:
  """Manually advanced clock in seconds."""

  def __init__(self, start: float = 1000.0):
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


@pytest.fixture
def clock():
  return FakeClock()


@pytest.fixture
def gateway_env(monkeypatch):
  """Minimal environment for the gateway and Gemini clients."""
  monkeypatch.setenv("GEMINI_API_KEY", "goog-key")
  monkeypatch.setenv("CLOUDFLARE_API_KEY", "cf-token")
  monkeypatch.setenv("CLOUDFLARE_ACCOUNT_ID", "acc")
  monkeypatch.setenv("CLOUDFLARE_AI_GATEWAY_ID", "gw")
  monkeypatch.delenv("CLOUDFLARE_AI_GATEWAY_BASE_URL", raising=False)
  monkeypatch.delenv("GEMINI_IMAGE_MODEL_ID", raising=False)
  monkeypatch.delenv("GEMINI_MODEL_ID", raising=False)
  monkeypatch.delenv("GEMINI_API_BASE_URL", raising=False)
  monkeypatch.delenv("TEXT_AGENT_DEFAULT_API_VERSION", raising=False)
  monkeypatch.delenv("CLOUDFLARE_AI_GATEWAY_PROVIDER", raising=False)
