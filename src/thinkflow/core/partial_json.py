"""best-effort extraction from a json document that is still streaming in.

the model's output only becomes valid json at the very end, so while it
streams we pull out the pieces that are already complete with regexes. the
final json.loads on the full buffer stays authoritative.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Optional


_STRING = r'"((?:[^"\\]|\\.)*)"'

FENCE_OPEN_RE = re.compile(r"^\s*```[a-zA-Z]*\s*")
FENCE_CLOSE_RE = re.compile(r"\s*```\s*$")
OVERVIEW_RE = re.compile(r'"overview"\s*:\s*' + _STRING)
NODE_RE = re.compile(
    r'\{\s*"text"\s*:\s*' + _STRING + r'\s*,\s*"description"\s*:\s*' + _STRING + r"\s*\}"
)


def strip_code_fence(buffer: str) -> str:
    """drop a ```json ... ``` wrapper, even if the closing fence hasn't arrived yet."""
    return FENCE_CLOSE_RE.sub("", FENCE_OPEN_RE.sub("", buffer, count=1), count=1)


def _unescape(raw: str) -> str:
    try:
        return json.loads(f'"{raw}"')
    except json.JSONDecodeError:
        return raw


def try_extract_overview(buffer: str) -> Optional[str]:
    """the overview string, once its closing quote has streamed in."""
    match = OVERVIEW_RE.search(strip_code_fence(buffer))
    if match is None:
        return None
    return _unescape(match.group(1))


def try_extract_nodes(buffer: str) -> list[dict]:
    """every complete {"text": ..., "description": ...} object so far, in order."""
    return [
        {"text": _unescape(text), "description": _unescape(description)}
        for text, description in NODE_RE.findall(strip_code_fence(buffer))
    ]


def parse_json_object(buffer: str) -> dict:
    """authoritative parse of a finished response.

    raises ValueError when the text is not a json object.
    """
    text = strip_code_fence(buffer.strip())
    parsed = json.loads(text)
    if not isinstance(parsed, dict):
        raise ValueError("expected a json object")
    return parsed


@dataclass
class ExtractionUpdate:
    """what a single chunk newly revealed."""

    overview: Optional[str] = None
    new_nodes: list[dict] = field(default_factory=list)
    first_index: int = 0  # index of new_nodes[0] among all nodes


class IncrementalExtractor:
    """accumulates stream chunks and reports newly completed pieces."""

    def __init__(self) -> None:
        self.buffer = ""
        self.overview_found = False
        self.nodes_seen = 0

    def feed(self, chunk: str) -> ExtractionUpdate:
        self.buffer += chunk
        update = ExtractionUpdate(first_index=self.nodes_seen)

        if not self.overview_found:
            overview = try_extract_overview(self.buffer)
            if overview is not None:
                self.overview_found = True
                update.overview = overview

        nodes = try_extract_nodes(self.buffer)
        if len(nodes) > self.nodes_seen:
            update.new_nodes = nodes[self.nodes_seen:]
            self.nodes_seen = len(nodes)
        return update

    def finish(self) -> dict:
        return parse_json_object(self.buffer)
