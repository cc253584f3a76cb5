"""
Cleaning of streamed answer chunks.

The relay and the client both run every chunk through `normalize`. A chunk
comes in one of two shapes:

  - plain text, forwarded as-is
  - a JSON envelope `{"text": "..."}` some SDK paths emit instead of text

After unwrapping, serialized `\\n` / `\\t` escapes become real newlines/tabs
and markdown bold markers are dropped (`**bold**` -> `bold`).
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Union

ENVELOPE_RE = re.compile(r'^\s*\{\s*"text"\s*:')
BOLD_RE = re.compile(r"\*\*(.*?)\*\*")


@dataclass(frozen=True)
class PlainChunk:
    text: str


@dataclass(frozen=True)
class EnvelopeChunk:
    text: str


Chunk = Union[PlainChunk, EnvelopeChunk]


def decode_chunk(raw: str) -> Chunk:
    """Classify a chunk once; look-alikes that fail to parse stay plain."""
    if not ENVELOPE_RE.match(raw):
        return PlainChunk(raw)
    try:
        parsed = json.loads(raw)
    except ValueError:
        return PlainChunk(raw)
    if isinstance(parsed, dict) and isinstance(parsed.get("text"), str):
        return EnvelopeChunk(parsed["text"])
    return PlainChunk(raw)


def extract_text(chunk: Any) -> str:
    """
    Pull the text out of whatever the upstream handed us:
    str, bytes, {"text": ...}, or an SDK message chunk whose `content`
    is a string or a list of parts.
    """
    if chunk is None:
        return ""
    if isinstance(chunk, str):
        return chunk
    if isinstance(chunk, bytes):
        return chunk.decode("utf-8", errors="replace")
    if isinstance(chunk, dict):
        text = chunk.get("text")
        return text if isinstance(text, str) else ""

    content = getattr(chunk, "content", None)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and isinstance(part.get("text"), str):
                parts.append(part["text"])
        return "".join(parts)

    text = getattr(chunk, "text", None)
    return text if isinstance(text, str) else ""


def _clean_once(text: str) -> str:
    text = decode_chunk(text).text
    text = text.replace("\\n", "\n").replace("\\t", "\t")
    return BOLD_RE.sub(r"\1", text)


def normalize(raw: Any) -> str:
    text = extract_text(raw)
    # every pass that changes the text shortens it, so this terminates
    while text:
        cleaned = _clean_once(text)
        if cleaned == text:
            break
        text = cleaned
    return text
