# storybook/config.py
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# project-root .env first, then whatever sits in the working directory
PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")
load_dotenv()


class ConfigError(RuntimeError):
  """A required environment setting is missing."""


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# ----------------------------
# Image cache
# ----------------------------
DEFAULT_IMAGE_CACHE_CAPACITY = 200
DEFAULT_IMAGE_CACHE_TTL_MS = 6 * 60 * 60 * 1000  # 6 hours

def _positive_int(raw: Optional[str], fallback: int) -> int:
  try:
    v = int((raw or "").strip())
  except ValueError:
    return fallback
  return v if v > 0 else fallback

def image_cache_capacity() -> int:
  return _positive_int(os.getenv("IMAGE_CACHE_CAPACITY"), DEFAULT_IMAGE_CACHE_CAPACITY)

def image_cache_ttl_seconds() -> float:
  return _positive_int(os.getenv("IMAGE_CACHE_TTL_MS"), DEFAULT_IMAGE_CACHE_TTL_MS) / 1000.0

# ----------------------------
# Providers
# ----------------------------
GEMINI_API_BASE_URL = "https://generativelanguage.googleapis.com"
DEFAULT_TEXT_MODEL_ID = "gemini-2.5-flash"
DEFAULT_IMAGE_MODELS = ["gemini-2.5-flash-image", "imagen-3.0-generate-001"]
DEFAULT_CLOUDFLARE_MODEL = "@cf/meta/llama-3.1-70b-instruct"

# Gemini story-tree fallbacks, after GEMINI_MODEL_ID
FALLBACK_MODEL_CHAIN = [
  "gemini-1.5-pro-latest",
  "gemini-1.5-flash-latest",
  "gemini-2.0-flash",
]

MODEL_ALIASES = {
  "gemini-pro": "gemini-1.5-flash-latest",
  "gemini-pro-latest": "gemini-1.5-flash-latest",
  "gemini-1.5-pro": "gemini-1.5-pro-latest",
  "gemini-1.5-pro-exp": "gemini-1.5-pro-latest",
  "gemini-1.5-flash": "gemini-1.5-flash-latest",
  "gemini-1.0-pro": "gemini-1.5-pro-latest",
  "gemini-pro-vision": "gemini-1.5-pro-latest",
}


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
  """Stripped env value; blank counts as unset."""
  v = (os.getenv(name) or "").strip()
  return v or default

def require_env(name: str) -> str:
  v = env_str(name)
  if not v:
    raise ConfigError(f"{name} not set in environment")
  return v

def env_flag(name: str, default: bool = False) -> bool:
  v = env_str(name)
  if v is None:
    return default
  return v.lower() in ("1", "true", "yes", "on")


def ai_provider() -> str:
  return "cloudflare" if (env_str("AI_PROVIDER", "gemini") or "").lower() == "cloudflare" else "gemini"

def text_model_id() -> str:
  return env_str("GEMINI_MODEL_ID", DEFAULT_TEXT_MODEL_ID)

def text_api_version() -> str:
  return env_str("TEXT_AGENT_DEFAULT_API_VERSION", "v1")

def gemini_api_base_url() -> str:
  return env_str("GEMINI_API_BASE_URL", GEMINI_API_BASE_URL).rstrip("/")


def normalise_model_id(raw: Optional[str]) -> Optional[str]:
  s = (raw or "").strip()
  if not s:
    return None
  return MODEL_ALIASES.get(s.lower(), s)

def gemini_model_candidates() -> list[str]:
  """GEMINI_MODEL_ID (aliased) followed by the fallback chain, deduplicated."""
  out: list[str] = []
  preferred = normalise_model_id(os.getenv("GEMINI_MODEL_ID"))
  for m in ([preferred] if preferred else []) + FALLBACK_MODEL_CHAIN:
    if m not in out:
      out.append(m)
  return out
