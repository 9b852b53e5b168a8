# storybook/routes/story.py
import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError

from storybook.config import LOG_LEVEL
from storybook.deps import get_story_tree_generator, get_text_agent
from storybook.models import StartRequest, StoryConfiguration, StoryNode, StoryPageRequest, SummaryRequest
from storybook.services.story_gen import (
  TextAgent,
  generate_back_cover_summary,
  generate_next_story_page,
  generate_story_definition,
)
from storybook.services.story_tree import StoryTreeGenerator

router = APIRouter(prefix="/api/story", tags=["story"])

log = logging.getLogger("story_routes")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[SR] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)


@router.post("/define")
async def define_story(payload: Dict[str, Any], agent: TextAgent = Depends(get_text_agent)):
  try:
    cfg = StoryConfiguration.model_validate(payload or {})
  except ValidationError:
    raise HTTPException(400, "Invalid StoryConfiguration. Expect { length, density, description }.")

  try:
    return await generate_story_definition(agent, cfg.model_dump())
  except Exception as e:
    log.error("StoryDefinition generation failed: %s", e)
    raise HTTPException(502, "Failed to generate StoryDefinition.")


@router.post("/page")
async def next_page(body: StoryPageRequest, agent: TextAgent = Depends(get_text_agent)):
  try:
    return await generate_next_story_page(
      agent,
      body.definition,
      body.stepIndex,
      body.previousOption.model_dump() if body.previousOption else None,
      body.configuration.model_dump() if body.configuration else None,
    )
  except Exception as e:
    log.error("StoryPage generation failed (step %d): %s", body.stepIndex, e)
    raise HTTPException(502, "Failed to generate StoryPage.")


@router.post("/summary")
async def back_cover_summary(body: SummaryRequest, agent: TextAgent = Depends(get_text_agent)):
  try:
    return await generate_back_cover_summary(
      agent,
      body.definition,
      [p.model_dump() for p in body.pages or []],
      body.configuration.model_dump() if body.configuration else None,
    )
  except Exception as e:
    log.error("summary generation failed: %s", e)
    raise HTTPException(502, "Failed to generate back cover summary.")


@router.post("/start", response_model=StoryNode, response_model_exclude_none=True)
async def start_story(body: StartRequest, generator: StoryTreeGenerator = Depends(get_story_tree_generator)):
  genre = (body.genre or "").strip()
  if not genre:
    raise HTTPException(400, "Genre is required to start a story.")
  return await generator.generate(genre)
