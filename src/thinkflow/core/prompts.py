"""prompt text for every ai call the pipeline makes.

each builder returns an openai-style message list. the response shapes asked
for here are exactly what the pipeline parses.
"""

from __future__ import annotations

import json
from typing import Optional


EXPANSION_SYSTEM_PROMPT = '''
You are a brainstorming partner that grows an idea into a mind map.

Output ONLY a raw JSON object. No markdown. No code fences. No explanation.

SCHEMA:
{
  "overview": "2-3 sentences framing the core idea",
  "nodes": [
    {"text": "short concept title, max 8 words", "description": "1 sentence on why it matters"}
  ]
}

RULES:
1. "overview" comes first, then "nodes".
2. 4 to 6 nodes, each a distinct direction worth exploring.
3. Plain text values only, no markdown.
'''

ANSWER_SYSTEM_PROMPT = '''
You answer questions about one concept inside a larger mind map.

Respond with a JSON object of the form:
{"answer": "the full answer as markdown", "summary": "one sentence summary"}
If you cannot produce JSON, respond with the plain markdown answer instead.
'''

QUESTIONS_PROMPT = '''
Given this concept and its explanation, suggest follow-up questions a curious
reader would ask next.

Concept: {topic}
Explanation:
{content}

Output ONLY a raw JSON object: {{"questions": ["question 1", "question 2", "question 3"]}}
'''

IMAGE_PROMPT = (
    "A clean conceptual illustration of \"{topic}\". {detail} "
    "Context: {context}. Minimal, no text in the image."
)

SUMMARY_PROMPT = '''
Summarize this mind map in a few short paragraphs. Name the main themes, the
strongest ideas and any open questions.

Nodes:
{nodes}
'''

ROOT_DESCRIPTION = "core idea"
CONTINUE_REQUIREMENT = "continue expanding this idea with new directions"


def root_messages(text: str) -> list[dict]:
    return [
        {"role": "system", "content": EXPANSION_SYSTEM_PROMPT},
        {"role": "user", "content": f"Core idea: {text}"},
    ]


def expand_messages(path: list[str], label: str, requirement: Optional[str] = None) -> list[dict]:
    """re-expansion of an existing node, with the root→node path as context."""
    user = (
        f"[context path]: {' -> '.join(path)}\n"
        f"[selected node]: {label}\n"
        f"[new requirement]: {requirement or CONTINUE_REQUIREMENT}"
    )
    return [
        {"role": "system", "content": EXPANSION_SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def answer_messages(root_topic: str, path: list[str], topic: str, detail: str, question: Optional[str] = None) -> list[dict]:
    """follow-up question or deep dive on one node."""
    lines = [
        f"Mind map topic: {root_topic}",
        f"Path: {' -> '.join(path)}",
        f"Concept: {topic}",
    ]
    if detail:
        lines.append(f"Concept detail: {detail}")
    lines.append(f"Question: {question}" if question else "Explain this concept in depth.")
    return [
        {"role": "system", "content": ANSWER_SYSTEM_PROMPT},
        {"role": "user", "content": "\n".join(lines)},
    ]


def questions_messages(topic: str, content: str) -> list[dict]:
    return [{"role": "user", "content": QUESTIONS_PROMPT.format(topic=topic, content=content)}]


def image_prompt(topic: str, detail: str, path: list[str]) -> str:
    # long paths get trimmed to the last few steps
    context = f"... -> {' -> '.join(path[-4:])}" if len(path) > 5 else " -> ".join(path)
    return IMAGE_PROMPT.format(topic=topic, detail=detail, context=context)


def summary_messages(nodes: list[dict]) -> list[dict]:
    return [{"role": "user", "content": SUMMARY_PROMPT.format(nodes=json.dumps(nodes, indent=2, ensure_ascii=False))}]
