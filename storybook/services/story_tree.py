# storybook/services/story_tree.py
import json
import logging
import time
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from storybook.config import LOG_LEVEL, ai_provider, env_flag, env_str, gemini_model_candidates
from storybook.cloudflare_client import CloudflareAiClient
from storybook.gemini_client import GeminiTextClient, is_model_not_found
from storybook.models import StoryNode
from storybook.services.story_gen import TextAgent

log = logging.getLogger("story_tree")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[TREE] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

_ROOT_KEYS = ("root", "story", "node", "data")
_ID_KEYS = ("id", "nodeId", "node_id", "identifier")
_ENDING_KEYS = ("is_ending", "isEnding", "ending")
_TEXT_KEYS = ("text", "story", "content", "narrative", "body", "description", "passage", "scene")
_PARAGRAPH_KEYS = ("paragraphs", "lines", "segments")
_SUMMARY_KEYS = ("summary", "overview", "synopsis")


def build_story_prompt(genre: str) -> str:
  return (
    "You are the master orchestrator for a branching narrative game.\n"
    f"Create a complete, three-level branching narrative for a **{genre}** story.\n\n"
    "Structure:\n"
    "1. Root node (id 'root') with an introduction, 3 choices (C1, C2, C3) and a 'children' array.\n"
    "2. Its 3 children (ids N2_A, N2_B, N2_C) each have 2 choices and a 'children' array.\n"
    "3. Six ending nodes (E1..E6), two under each level-2 node, with is_ending: true and choices: [].\n\n"
    "Every choice's 'nextNodeId' must point to the id of its immediate child.\n"
    "Node fields: id, text, is_ending, choices [{id, text, nextNodeId}], children.\n"
    "Return the complete tree as a single JSON object."
  )


# ----------------------------
# Normalisation
# ----------------------------
def _first_str(record: Dict[str, Any], keys) -> Optional[str]:
  for k in keys:
    v = record.get(k)
    if isinstance(v, str) and v.strip():
      return v.strip()
  return None

def _derive_is_ending(record: Dict[str, Any]) -> bool:
  for k in _ENDING_KEYS:
    v = record.get(k)
    if isinstance(v, bool):
      return v
    if isinstance(v, str) and v.strip().lower() in ("true", "false"):
      return v.strip().lower() == "true"
  # no explicit flag: a leaf is an ending
  return not record.get("choices") and not record.get("children")

def _derive_text(record: Dict[str, Any], node_id: str) -> str:
  txt = _first_str(record, _TEXT_KEYS)
  if txt:
    return txt
  for k in _PARAGRAPH_KEYS:
    v = record.get(k)
    if isinstance(v, list):
      joined = "\n\n".join(p.strip() for p in v if isinstance(p, str) and p.strip())
      if joined:
        return joined
  txt = _first_str(record, _SUMMARY_KEYS)
  if txt:
    return txt
  log.warning("node %s has no narrative text, using placeholder", node_id)
  return (f'Scene placeholder: the model omitted narrative text for node "{node_id}". '
          "Please regenerate this branch if richer prose is required.")

def _normalise_choice(raw: Any, parent_id: str, index: int) -> Dict[str, Any]:
  fallback_id = f"{parent_id}_choice_{index + 1}"
  if not isinstance(raw, dict):
    return {"id": fallback_id, "text": f"Choice {index + 1}"}
  out = {
    "id": _first_str(raw, ("id",)) or fallback_id,
    "text": raw["text"] if isinstance(raw.get("text"), str) and raw["text"].strip() else f"Choice {index + 1}",
  }
  nxt = _first_str(raw, ("nextNodeId", "next_node_id"))
  if nxt:
    out["nextNodeId"] = nxt
  return out

def _normalise_node(raw: Any, seen: set, fallback_id: str) -> Dict[str, Any]:
  if not isinstance(raw, dict):
    raise ValueError("story response invalid: expected an object for story node")
  if id(raw) in seen:
    raise ValueError("story response invalid: cyclic reference detected in story graph")
  seen.add(id(raw))

  node_id = _first_str(raw, _ID_KEYS) or fallback_id
  raw_choices = raw.get("choices") if isinstance(raw.get("choices"), list) else []
  node: Dict[str, Any] = {
    "id": node_id,
    "text": _derive_text(raw, node_id),
    "is_ending": _derive_is_ending(raw),
    "choices": [_normalise_choice(c, node_id, i) for i, c in enumerate(raw_choices)],
  }
  children = raw.get("children") if isinstance(raw.get("children"), list) else []
  if children:
    node["children"] = [_normalise_node(c, seen, f"{node_id}_child_{i + 1}") for i, c in enumerate(children)]
  img = _first_str(raw, ("imageUrl", "image_url"))
  if img:
    node["imageUrl"] = img
  audio = _first_str(raw, ("audioUrl", "audio_url"))
  if audio:
    node["audioUrl"] = audio
  return node

def _root_candidate(raw: Any) -> Any:
  if isinstance(raw, list):
    return raw[0] if raw else None
  if isinstance(raw, dict):
    for k in _ROOT_KEYS:
      if isinstance(raw.get(k), dict):
        return raw[k]
  return raw

def normalise_story_payload(raw: Any) -> Dict[str, Any]:
  return _normalise_node(_root_candidate(raw), set(), "root")

def validate_story_node(node: Any) -> Dict[str, Any]:
  if not isinstance(node, dict):
    raise ValueError("StoryNode validation failed: node is undefined or not an object.")
  try:
    StoryNode.model_validate(node)
  except ValidationError as e:
    first = e.errors()[0]
    where = ".".join(str(p) for p in first["loc"])
    raise ValueError(f"StoryNode validation failed: '{where}' {first['msg']}") from e
  return node


# ----------------------------
# Generation
# ----------------------------
class StoryTreeGenerator:
  """
  Whole-tree generation. Provider comes from AI_PROVIDER; failures are
  folded into an ending node so the route always has something to render.
  """

  def __init__(
      self,
      *,
      provider: Optional[str] = None,
      gemini: Optional[GeminiTextClient] = None,
      cloudflare: Optional[CloudflareAiClient] = None,
      text_agent: Optional[TextAgent] = None,
      hybrid_enrich: Optional[bool] = None,
  ):
    self.provider = provider or ai_provider()
    self._gemini = gemini
    self._cloudflare = cloudflare
    self._text_agent = text_agent
    self._hybrid = env_flag("ENABLE_HYBRID_ENRICH") if hybrid_enrich is None else hybrid_enrich

  async def _with_gemini(self, genre: str) -> Dict[str, Any]:
    client = self._gemini or GeminiTextClient()
    prompt = build_story_prompt(genre)
    attempts: List[str] = []
    for model_id in gemini_model_candidates():
      try:
        log.info("trying Gemini model %s", model_id)
        raw = await client.generate_json_text(model_id, prompt)
        return normalise_story_payload(json.loads(raw))
      except Exception as e:
        attempts.append(f'"{model_id}" -> {e}')
        if is_model_not_found(e):
          log.warning("model %s unavailable, advancing to next fallback", model_id)
          continue
        raise
    raise RuntimeError("No Gemini model in the preference chain could generate story JSON. Attempts: "
                       + ("; ".join(attempts) or "none"))

  async def _with_cloudflare(self, genre: str) -> Dict[str, Any]:
    client = self._cloudflare or CloudflareAiClient.from_env()
    t0 = time.perf_counter()
    story = await client.generate_story_tree(build_story_prompt(genre))
    log.info("Cloudflare AI latency %.0fms", (time.perf_counter() - t0) * 1000)
    return normalise_story_payload(story)

  async def _enrich(self, node: Dict[str, Any], genre: str, depth: int, path: List[str]) -> None:
    text, _ = await self._text_agent.text_from_hashes(
      {"genre": genre, "depth": depth, "parentPath": path, "nodeId": node["id"], "draft": node["text"]},
      "Rewrite the draft as vivid second-person narrative for this node of a branching story. "
      "Keep the events and choices intact.",
    )
    if text.strip():
      node["text"] = text.strip()
    for child in node.get("children") or []:
      await self._enrich(child, genre, depth + 1, path + [node["id"]])

  async def generate(self, genre: str) -> Dict[str, Any]:
    try:
      log.info("[%s] generating story tree genre=%s", self.provider, genre)
      if self.provider == "cloudflare":
        story = await self._with_cloudflare(genre)
        if self._hybrid and env_str("GEMINI_API_KEY"):
          if self._text_agent is None:
            self._text_agent = TextAgent()
          await self._enrich(story, genre, 0, [])
      else:
        story = await self._with_gemini(genre)
      return validate_story_node(story)
    except Exception as e:
      log.error("[%s] failed to generate story JSON: %s", self.provider, e)
      return {
        "id": "root",
        "text": f"Error: Failed to generate story structure. {str(e) or 'Unknown error'}",
        "is_ending": True,
        "choices": [],
      }
