# storybook/services/story_gen.py
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from storybook.config import LOG_LEVEL, text_model_id
from storybook.gateway_client import GatewayClient, strip_non_json_wrappers

log = logging.getLogger("story_gen")
if not log.handlers:
  h = logging.StreamHandler()
  h.setFormatter(logging.Formatter("[STORY] %(levelname)s: %(message)s"))
  log.addHandler(h)
  log.setLevel(LOG_LEVEL)

PROVIDER_SLUG = "google-ai-studio"

# ----------------------------
# Page policy
# ----------------------------
PAGE_RANGES = {
  "short": (3, 5),
  "medium": (6, 10),
  "long": (10, 16),
}

DENSITY_GUIDANCE = {
  "short": [
    "- STRICT: Write 1-4 sentences in a SINGLE paragraph.",
    "- Do NOT include blank lines.",
    "- Do NOT exceed 4 sentences.",
  ],
  "medium": [
    "- STRICT: Write 1-2 paragraphs.",
    "- Separate paragraphs with exactly ONE blank line.",
    "- Keep each paragraph concise (2-5 sentences).",
    "- Do NOT exceed 2 paragraphs.",
  ],
  "dense": [
    "- STRICT: Write 2-4 paragraphs.",
    "- Separate paragraphs with exactly ONE blank line.",
    "- Keep each paragraph concise (2-5 sentences).",
    "- Do NOT exceed 4 paragraphs.",
  ],
}

def page_policy(length: Optional[str], step_index: int) -> Dict[str, Any]:
  lo, hi = PAGE_RANGES.get(length or "medium", PAGE_RANGES["medium"])
  return {"minPages": lo, "maxPages": hi, "isFinalPage": step_index >= hi - 1}


# ----------------------------
# Prompt builders
# ----------------------------
def build_strict_json_prompt(inputs: Dict[str, Any], instructions: str) -> str:
  return "\n".join([
    instructions.strip(),
    "",
    "Input:",
    json.dumps(inputs, indent=2, ensure_ascii=False),
    "",
    "Respond with a single JSON object ONLY.",
    "- No markdown, no code fences, no commentary, no prose.",
    "- Output must be valid UTF-8 JSON, parseable by a strict JSON parser.",
  ])

def build_prompt_from_hashes(inputs: Dict[str, Any], instructions: Optional[str] = None) -> str:
  lines: List[str] = []
  if instructions and instructions.strip():
    lines += [f"Instructions: {instructions.strip()}", ""]
  lines += [
    "Input Hashes (JSON):",
    json.dumps({k: inputs[k] for k in sorted(inputs)}, indent=2, ensure_ascii=False),
    "",
    "Return a single coherent text response synthesizing the hashes. Do not include JSON in the answer.",
  ]
  return "\n".join(lines)


class TextAgent:
  """Gemini text through the Cloudflare gateway's Google AI Studio route."""

  provider = "cloudflare-gateway"

  def __init__(self, *, model_id: Optional[str] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
    self.model_id = (model_id or "").strip() or text_model_id()
    self._transport = transport

  async def _call(self, prompt: str) -> str:
    async with GatewayClient(transport=self._transport) as gw:
      return await gw.google_direct(self.model_id, prompt, provider_slug=PROVIDER_SLUG)

  async def json_from_inputs(self, inputs: Dict[str, Any], instructions: str) -> Tuple[Any, str]:
    """Returns (parsed json, raw text). Unparseable output raises ValueError."""
    raw = (await self._call(build_strict_json_prompt(inputs, instructions))).strip()
    return json.loads(strip_non_json_wrappers(raw)), raw

  async def text_from_hashes(self, inputs: Dict[str, Any], instructions: Optional[str] = None) -> Tuple[str, str]:
    """Returns (text, prompt)."""
    prompt = build_prompt_from_hashes(inputs, instructions)
    return await self._call(prompt), prompt


# ----------------------------
# Generators
# ----------------------------
_DEFINITION_INSTRUCTIONS = "\n".join([
  "You are a story generator for an AI generated game.",
  "Use this input to create the StoryDefinition JSON object with exactly these fields:",
  "",
  "title, genre, theme, tagline: string",
  "image?: { alt?: string, prompt?: string }",
  "overview, plot, conflict, resolution, startHook: string",
  "endingOptions: [{ id, title, description, isCanonical? }]",
  "protagonist: { id, name, role, description?, motivation?, backstory? }",
  "antagonist?: same shape as protagonist",
  "supportingCast?: list of the same shape",
  "location, worldDescription, timePeriod: string",
  "",
  "Constraints:",
  "- Base your choices on the provided configuration (length, density, description).",
  "- Produce compelling, concise fields consistent with the specified length and density.",
  "- endingOptions should include 3-5 diverse endings; mark one as canonical if appropriate.",
])

async def generate_story_definition(agent: TextAgent, configuration: Dict[str, Any]) -> Dict[str, Any]:
  definition, _ = await agent.json_from_inputs({"configuration": configuration}, _DEFINITION_INSTRUCTIONS)
  if not isinstance(definition, dict):
    raise ValueError("StoryDefinition response was not a JSON object")
  return definition


def _page_instructions(density: str, policy: Dict[str, Any]) -> str:
  final = policy["isFinalPage"]
  return "\n".join([
    "You are an interactive fiction engine that outputs strict JSON.",
    "Use the provided StoryDefinition to guide tone, plot, and characters.",
    "",
    "Return a StoryPage JSON object:",
    "{ id: string, text: string, image?: { alt?: string, prompt?: string }, options: OptionObject[] }",
    "OptionObject is { id: string, text: string, action: OptionAction }",
    "OptionAction is { type: 'goToNextPage' } or { type: 'branch', text: string, options: OptionObject[] }",
    "",
    "Guidance:",
    "- `stepIndex` is the zero-based page number; pace the narrative with it.",
    "- Total pages by StoryConfiguration.length: short 3-5, medium 6-10, long 10-16.",
    "- If previousOption is missing and stepIndex === 0, open with definition.startHook.",
    "- Most options use { type: 'goToNextPage' }; use 'branch' for a short nested interaction, one level deep.",
    "- Density rules based on StoryConfiguration.density:",
    *DENSITY_GUIDANCE.get(density, DENSITY_GUIDANCE["dense"]),
    "- Write natural narrative prose only, no bullet lists or headings.",
    "- Use short, unique, URL-safe ids.",
    "- image.prompt is an optional short illustration prompt; image.alt is human-friendly.",
    "",
    "Ending:",
    ("- This is the final page. Conclude decisively using one of StoryDefinition.endingOptions; no cliffhanger."
     if final else "- Do not end the story yet; leave meaningful directions for the next page."),
    ("- Present a single clear option to finish (e.g., 'Finish') with { type: 'goToNextPage' }."
     if final else "- Present 2-3 options for the next decision."),
    "",
    "Hard Constraints:",
    f"- Never exceed maxPages={policy['maxPages']}; if stepIndex >= maxPages-1 you MUST end now.",
    "- Enforce the density constraints exactly.",
  ])

async def generate_next_story_page(
    agent: TextAgent,
    definition: Dict[str, Any],
    step_index: int,
    previous_option: Optional[Dict[str, Any]] = None,
    configuration: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
  length = (configuration or {}).get("length") or "medium"
  density = (configuration or {}).get("density") or "medium"
  policy = page_policy(length, step_index)
  page, _ = await agent.json_from_inputs(
    {
      "definition": definition,
      "stepIndex": step_index,
      "previousOption": previous_option,
      "configuration": configuration,
      "pagePolicy": policy,
    },
    _page_instructions(density, policy),
  )
  if not isinstance(page, dict):
    raise ValueError("StoryPage response was not a JSON object")
  return page


_SUMMARY_INSTRUCTIONS = "\n".join([
  "You are a book blurb writer. Produce a concise, engaging, and spoiler-light back cover summary.",
  'Return STRICT JSON matching: { "summary": string }',
  "",
  "Guidance:",
  "- 1 short paragraph (3-6 sentences).",
  "- Convey tone, genre, conflict, stakes, and hook.",
  "- Avoid explicit spoilers of the ending; tease resolution.",
  "- Reflect the protagonist, setting, and theme from the definition.",
  "- If pages are provided, ground the summary in their events without enumerating them.",
])

async def generate_back_cover_summary(
    agent: TextAgent,
    definition: Dict[str, Any],
    pages: Optional[List[Dict[str, Any]]] = None,
    configuration: Optional[Dict[str, Any]] = None,
) -> Dict[str, str]:
  out, _ = await agent.json_from_inputs(
    {
      "definition": definition,
      "pages": [{"id": p.get("id"), "text": p.get("text")} for p in (pages or [])],
      "configuration": configuration,
    },
    _SUMMARY_INSTRUCTIONS,
  )
  summary = (out or {}).get("summary") if isinstance(out, dict) else None
  if not isinstance(summary, str) or not summary.strip():
    raise ValueError("summary missing from model response")
  return {"summary": summary.strip()}
