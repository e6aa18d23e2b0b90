"""Shared utilities for parsing LLM responses."""

from __future__ import annotations

import json
import re

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```", re.IGNORECASE)


def strip_code_fence(raw: str) -> str:
    """Return the JSON body of a markdown code fence, or the stripped input.

    Models frequently wrap JSON in ```json fences despite being told not to.
    Preamble text outside a fence is dropped along with the fence.
    """
    text = (raw or "").strip()
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1)
    if text.startswith("```"):
        lines = [line for line in text.split("\n") if not line.strip().startswith("```")]
        text = "\n".join(lines).strip()
    return text


def parse_llm_json(raw: str) -> str:
    """Locate the JSON object in an LLM response, handling code fences and preamble text.

    Returns JSON text ready for a pydantic ``model_validate_json`` call.
    Tries in order:
    1. Strip markdown code fences; use the result if it parses
    2. Substring between first '{' and last '}', if it parses
    3. Return the fence-stripped text unchanged so validation reports it
    """
    text = strip_code_fence(raw)
    if _is_json(text):
        return text

    start = text.find("{")
    end = text.rfind("}") + 1
    if start >= 0 and end > start and _is_json(text[start:end]):
        return text[start:end]

    return text


def _is_json(text: str) -> bool:
    try:
        json.loads(text)
    except ValueError:
        return False
    return True
