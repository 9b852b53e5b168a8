from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, StrictBool, StrictStr, field_validator

StoryLength = Literal["short", "medium", "long"]
StoryDensity = Literal["short", "medium", "dense"]


class StoryConfiguration(BaseModel):
  length: StoryLength
  density: StoryDensity
  description: str


class ImageObject(BaseModel):
  url: Optional[str] = None
  alt: Optional[str] = None
  prompt: Optional[str] = None


class OptionObject(BaseModel):
  id: str
  text: str
  # {"type": "goToNextPage"} or {"type": "branch", "text": ..., "options": [...]}
  action: Dict[str, Any] = Field(default_factory=lambda: {"type": "goToNextPage"})


class StoryPage(BaseModel):
  id: str
  text: str
  image: Optional[ImageObject] = None
  options: List[OptionObject] = []


# ----------------------------
# Branching story tree
# ----------------------------
class StoryChoice(BaseModel):
  id: str
  text: str
  nextNodeId: Optional[str] = None


class StoryNode(BaseModel):
  id: StrictStr = Field(min_length=1)
  text: StrictStr
  is_ending: StrictBool
  choices: List[StoryChoice]
  children: Optional[List["StoryNode"]] = None
  imageUrl: Optional[str] = None
  audioUrl: Optional[str] = None

  @field_validator("text")
  @classmethod
  def _text_not_blank(cls, v: str) -> str:
    if not v.strip():
      raise ValueError("must be a non-empty string")
    return v

StoryNode.model_rebuild()


# ----------------------------
# Request / response bodies
# ----------------------------
class ImageGenerateRequest(BaseModel):
  prompt: Optional[Any] = None
  modelId: Optional[str] = None


class ImageGenerateResponse(BaseModel):
  modelId: str
  elapsedMs: int
  mimeType: str
  imageBase64: str


class AudioGenerateRequest(BaseModel):
  text: Optional[Any] = None
  genre: Optional[str] = None


class TextGenerateRequest(BaseModel):
  inputs: Optional[Any] = None
  instructions: Optional[str] = None
  jobId: Optional[str] = None


class TextGenerateResponse(BaseModel):
  text: str
  prompt: str
  provider: str
  modelId: str
  inputs: Dict[str, str]
  jobId: Optional[str] = None
  createdAt: str


class StoryPageRequest(BaseModel):
  definition: Dict[str, Any]
  stepIndex: int = Field(0, ge=0)
  previousOption: Optional[OptionObject] = None
  configuration: Optional[StoryConfiguration] = None


class SummaryRequest(BaseModel):
  definition: Dict[str, Any]
  pages: Optional[List[StoryPage]] = None
  configuration: Optional[StoryConfiguration] = None


class StartRequest(BaseModel):
  genre: Optional[str] = None
