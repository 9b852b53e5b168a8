# storybook/deps.py
# Request-scoped accessors for the collaborators create_app() puts on app.state.
from fastapi import Request

from storybook.gemini_client import ImageClient
from storybook.services.story_gen import TextAgent
from storybook.services.story_tree import StoryTreeGenerator
from storybook.speech_client import SpeechClient
from storybook.util.image_cache import BoundedTTLCache


def get_image_cache(request: Request) -> BoundedTTLCache:
  return request.app.state.image_cache

def get_image_client(request: Request) -> ImageClient:
  return request.app.state.image_client

def get_speech_client(request: Request) -> SpeechClient:
  return request.app.state.speech_client

def get_text_agent() -> TextAgent:
  return TextAgent()

def get_story_tree_generator() -> StoryTreeGenerator:
  return StoryTreeGenerator()
