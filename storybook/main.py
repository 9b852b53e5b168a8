# storybook/main.py
import logging
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse

from storybook.config import LOG_LEVEL, image_cache_capacity, image_cache_ttl_seconds
from storybook.gemini_client import ImageClient
from storybook.routes.agents import router as agents_router
from storybook.routes.story import router as story_router
from storybook.speech_client import SpeechClient
from storybook.util.image_cache import BoundedTTLCache

log = logging.getLogger("startup")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[Startup] %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)


def create_app(
    *,
    image_cache: Optional[BoundedTTLCache] = None,
    image_client: Optional[ImageClient] = None,
    speech_client: Optional[SpeechClient] = None,
) -> FastAPI:
  app = FastAPI(title="AI Story Engine")
  app.add_middleware(CORSMiddleware, allow_origin_regex=".*", allow_credentials=True,
                     allow_methods=["*"], allow_headers=["*"])

  # one cache per process, owned by the app
  if image_cache is None:
    image_cache = BoundedTTLCache(image_cache_capacity(), image_cache_ttl_seconds())
  app.state.image_cache = image_cache
  app.state.image_client = image_client if image_client is not None else ImageClient()
  app.state.speech_client = speech_client if speech_client is not None else SpeechClient()
  log.info("image cache capacity=%d ttl=%.0fs", app.state.image_cache.capacity, app.state.image_cache.ttl)

  #health check
  @app.get("/", response_class=PlainTextResponse)
  async def health():
    return "AI Story Engine Backend Running"

  app.include_router(story_router)
  app.include_router(agents_router)
  return app


app = create_app()
