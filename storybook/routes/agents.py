# storybook/routes/agents.py
import json
import logging
import time
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Response
from fastapi.responses import JSONResponse, StreamingResponse

from storybook.config import LOG_LEVEL
from storybook.deps import get_image_cache, get_image_client, get_speech_client, get_text_agent
from storybook.gemini_client import ImageClient
from storybook.models import (
  AudioGenerateRequest,
  ImageGenerateRequest,
  ImageGenerateResponse,
  TextGenerateRequest,
  TextGenerateResponse,
)
from storybook.services.story_gen import TextAgent
from storybook.speech_client import SpeechClient, SpeechError
from storybook.util.image_cache import BoundedTTLCache, compute_key

router = APIRouter(prefix="/api/agents", tags=["agents"])

log = logging.getLogger("agents")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[AG] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)


def _stringify(v) -> str:
  return v if isinstance(v, str) else json.dumps(v, ensure_ascii=False)


# ----------------------------
# Text
# ----------------------------
@router.post("/text/generate", response_model=TextGenerateResponse)
async def generate_text(body: TextGenerateRequest, agent: TextAgent = Depends(get_text_agent)):
  if not isinstance(body.inputs, dict):
    raise HTTPException(400, "Request body must include an 'inputs' object.")

  try:
    text, prompt = await agent.text_from_hashes(body.inputs, body.instructions)
  except Exception as e:
    log.error("text generation failed: %s", e)
    return JSONResponse(status_code=500, content={
      "error": "Failed to generate text from hash inputs.",
      "detail": str(e) or "Unknown error",
    })

  return TextGenerateResponse(
    text=text,
    prompt=prompt,
    provider=agent.provider,
    modelId=agent.model_id,
    inputs={k: _stringify(v) for k, v in body.inputs.items()},
    jobId=body.jobId,
    createdAt=datetime.now(timezone.utc).isoformat(),
  )


# ----------------------------
# Image (cached)
# ----------------------------
@router.post("/image/generate", response_model=ImageGenerateResponse)
async def generate_image(
    body: ImageGenerateRequest,
    response: Response,
    cache: BoundedTTLCache = Depends(get_image_cache),
    images: ImageClient = Depends(get_image_client),
):
  prompt = body.prompt
  if not isinstance(prompt, str) or not prompt.strip():
    raise HTTPException(400, "Invalid payload. 'prompt' must be a non-empty string.")

  key = compute_key(body.modelId, prompt)
  hit = cache.get(key)
  if hit is not None:
    log.debug("cache hit %s", key[:12])
    response.headers["X-Cache"] = "HIT"
    return ImageGenerateResponse(
      modelId=hit.model_id or body.modelId or "",
      elapsedMs=0,
      mimeType=hit.content_type,
      imageBase64=hit.payload,
    )

  # concurrent misses on one key each call the provider; the last set() wins
  started = time.perf_counter()
  model_id = (body.modelId or "").strip() or None
  try:
    result = await images.generate(prompt, model_id)
  except Exception as e:
    log.error("image generation failed: %s", e)
    raise HTTPException(502, str(e) or "Unknown image generation error.")
  elapsed_ms = round((time.perf_counter() - started) * 1000)

  cache.set(key, result["imageBase64"], result["mimeType"], body.modelId or "")
  response.headers["X-Cache"] = "MISS"
  return ImageGenerateResponse(
    modelId=result["modelId"],
    elapsedMs=elapsed_ms,
    mimeType=result["mimeType"],
    imageBase64=result["imageBase64"],
  )


# ----------------------------
# Audio
# ----------------------------
@router.post("/audio/generate")
async def generate_audio(body: AudioGenerateRequest, speech: SpeechClient = Depends(get_speech_client)):
  if not isinstance(body.text, str) or not body.text.strip():
    raise HTTPException(400, "Invalid payload. 'text' must be a non-empty string.")

  try:
    content_type, chunks = await speech.stream(body.text, body.genre)
  except SpeechError as e:
    return JSONResponse(status_code=e.status, content={"error": e.body or str(e)})
  except Exception as e:
    log.error("speech generation failed: %s", e)
    raise HTTPException(502, str(e) or "Unknown speech generation error.")

  return StreamingResponse(chunks, media_type=content_type)
