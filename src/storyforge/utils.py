"""Utility functions for StoryForge."""

import io
import json
import re
from pathlib import Path
from typing import Any

from PIL import Image, UnidentifiedImageError


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace into single spaces and trim."""
    return re.sub(r"\s+", " ", text or "").strip()


def truncate_text(text: str, max_length: int) -> str:
    """Truncate text to maximum length, preserving word boundaries."""
    if len(text) <= max_length:
        return text

    truncated = text[:max_length]
    last_space = truncated.rfind(' ')

    if last_space > max_length * 0.8:  # If we can preserve most of the text
        return truncated[:last_space] + "..."
    else:
        return truncated + "..."


def prompt_preview(prompt: str, limit: int = 500) -> str:
    """Single-line prompt excerpt used in logs and diagnostics."""
    return collapse_whitespace(prompt)[:limit]


def clean_story_text(text: str) -> str:
    """Strip markdown artifacts and smart quotes that models leave in story text."""
    s = text or ""

    # Longest markers first so no orphaned asterisks remain
    s = re.sub(r"\*{3}(.+?)\*{3}", r"\1", s)
    s = re.sub(r"\*{2}(.+?)\*{2}", r"\1", s)
    s = re.sub(r"(?:(?<=\s)|^)\*(?=\S)(.+?)(?<=\S)\*(?=\s|$|[.,!?])", r"\1", s)
    s = re.sub(r"__(.+?)__", r"\1", s)
    s = re.sub(r"(?:(?<=\s)|^)_(?=\S)(.+?)(?<=\S)_(?=\s|$|[.,!?])", r"\1", s)
    s = re.sub(r"(?m)^#{1,6}\s+", "", s)

    s = s.replace("“", '"').replace("”", '"')
    s = s.replace("‘", "'").replace("’", "'")

    if s.startswith('"') and s.endswith('"') and len(s) > 2:
        s = s[1:-1]

    return re.sub(r"\s{2,}", " ", s).strip()


def get_output_directory(title: str, base: Path | None = None) -> Path:
    """Get the output directory for a book."""
    safe_title = "".join(c for c in title if c.isalnum() or c in (' ', '-', '_')).rstrip()
    safe_title = safe_title.replace(' ', '_') or "storybook"

    output_dir = (base or Path("storyforge_output")) / safe_title
    output_dir.mkdir(parents=True, exist_ok=True)

    return output_dir


def decode_image_bytes(data: bytes) -> Image.Image:
    """Decode raw image bytes into a loaded PIL image.

    Raises ValueError when the bytes are not a readable image.
    """
    if not data:
        raise ValueError("Empty image payload")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Could not decode image data: {e}") from e
    return image


def image_to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format='PNG')
    return buffer.getvalue()


# -----------------------
# LLM JSON parsing helpers
# -----------------------

def extract_json_from_text(text: str) -> str | None:
    """Extract the first JSON object or array from arbitrary LLM text.

    Handles common cases like code fences and leading/trailing prose.
    """
    if not text:
        return None

    s = text.strip()

    # Strip code fences if present
    if s.startswith("```"):
        s = re.sub(r"^```(json|JSON)?\s*", "", s)
        s = re.sub(r"\s*```\s*$", "", s)

    if s.startswith("{") or s.startswith("["):
        return s

    # Fallback: search for the first {..} or [..] block
    obj_match = re.search(r"\{[\s\S]*\}", s)
    arr_match = re.search(r"\[[\s\S]*\]", s)

    candidates = []
    if obj_match:
        candidates.append((obj_match.start(), obj_match.group(0)))
    if arr_match:
        candidates.append((arr_match.start(), arr_match.group(0)))

    if not candidates:
        # Truncated output may have an opening brace and nothing closing it
        start = s.find("{")
        return s[start:] if start >= 0 else None

    candidates.sort(key=lambda x: x[0])
    return candidates[0][1]


def repair_truncated_json(text: str) -> str | None:
    """Close strings, arrays and objects left open by a model that ran out of tokens."""
    s = (text or "").strip()
    if not (s.startswith("{") or s.startswith("[")):
        return None

    while s.endswith(","):
        s = s[:-1].rstrip()

    closers = []
    in_string = False
    escaped = False
    for char in s:
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            closers.append("}")
        elif char == "[":
            closers.append("]")
        elif char in "}]" and closers:
            closers.pop()

    if in_string:
        s += '"'
    s = s.rstrip()
    # A dangling key or separator cannot be closed into valid JSON
    if closers and closers[-1] == "}":
        s = re.sub(r'([{,])\s*"(?:[^"\\]|\\.)*"\s*:?\s*$', r"\1", s)
    s = re.sub(r'[,:]\s*$', "", s)
    return s + "".join(reversed(closers))


def parse_llm_json(text: str) -> Any:
    """Parse JSON from LLM output robustly.

    Returns Python object or raises ValueError on failure.
    """
    candidate = extract_json_from_text(text)
    if candidate is None:
        raise ValueError("No JSON found in LLM output")

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        # Strategy 1: Remove trailing ellipses or stray characters
        try:
            cleaned = candidate.strip().rstrip('.').rstrip()
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

        # Strategy 2: Close whatever the model left open
        repaired = repair_truncated_json(candidate)
        if repaired is not None:
            try:
                return json.loads(repaired)
            except json.JSONDecodeError:
                pass

        # Strategy 3: Salvage the prefix before the error point
        truncated = repair_truncated_json(candidate[:e.pos])
        if truncated is not None:
            try:
                return json.loads(truncated)
            except json.JSONDecodeError:
                pass

        raise ValueError(f"Failed to parse JSON after cleanup attempts: {e}")


def extract_text_content(payload: Any) -> str | None:
    """Pull the text body out of a chat-style or enveloped JSON response."""
    if not isinstance(payload, dict):
        return None

    content = payload.get("content")
    if isinstance(content, str):
        return content

    story = payload.get("story")
    if isinstance(story, dict):
        return json.dumps(story)

    choices = payload.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        message = choices[0].get("message") or {}
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            parts = [
                item.get("text") or item.get("output_text")
                for item in content
                if isinstance(item, dict) and (item.get("text") or item.get("output_text"))
            ]
            if parts:
                return "\n".join(parts)

    return None
