"""
Parsing helpers for member output.

Only the declared fields are extracted: a vote's position, confidence,
optional ranking and veto flag, and JSON objects returned by the planner.
Free-text understanding beyond that is intentionally out of reach.
"""

from __future__ import annotations

import json
import re
from typing import Any

from llm_consensus.protocol.types import CouncilMember, Vote

DEFAULT_VOTE_CONFIDENCE = 0.7
MAX_POSITION_LENGTH = 200

_FIELD_TEMPLATE = r"^[\s*#>_-]*{name}[ \t*_]*:[ \t*_]*(?P<value>.*?)[ \t*_]*$"
_POSITION_RE = re.compile(_FIELD_TEMPLATE.format(name="position"), re.IGNORECASE | re.MULTILINE)
_CONFIDENCE_RE = re.compile(
    _FIELD_TEMPLATE.format(name="confidence"), re.IGNORECASE | re.MULTILINE
)
_RANKING_RE = re.compile(
    _FIELD_TEMPLATE.format(name="rank(?:ing)?"), re.IGNORECASE | re.MULTILINE
)
_VETO_RE = re.compile(_FIELD_TEMPLATE.format(name="veto"), re.IGNORECASE | re.MULTILINE)
_REASONING_RE = re.compile(
    r"^[\s*#>_-]*reasoning[\s*_]*:[\s*_]*(?P<value>.*)\Z", re.IGNORECASE | re.MULTILINE | re.DOTALL
)
_NUMBER_RE = re.compile(r"(?P<number>\d+(?:\.\d+)?)\s*(?P<percent>%)?")
_RANK_SPLIT_RE = re.compile(r"\s*(?:,|;|>|\|)\s*")
_TRUTHY = {"yes", "y", "true", "1", "veto"}


def parse_confidence(value: str | None) -> float | None:
    """Parse "0.8", "80%" or "80" into a value in [0, 1].

    Returns None when no usable number is present.
    """
    if not value:
        return None
    match = _NUMBER_RE.search(value)
    if not match:
        return None
    number = float(match.group("number"))
    if match.group("percent") or number > 1.0:
        if number > 100.0:
            return None
        number /= 100.0
    return max(0.0, min(1.0, number))


def extract_confidence(text: str) -> float | None:
    """Find a self-reported "Confidence: x" anywhere in a reply."""
    match = _CONFIDENCE_RE.search(text or "")
    return parse_confidence(match.group("value")) if match else None


def _clean_label(raw: str) -> str:
    label = raw.strip().strip("\"'`").rstrip(".").strip()
    return label[:MAX_POSITION_LENGTH]


def parse_vote(
    text: str,
    member: CouncilMember,
    *,
    fallback_confidence: float | None = None,
) -> Vote | None:
    """Parse a structured vote reply.

    Expected shape (case-insensitive, markdown decoration tolerated)::

        POSITION: <short label>
        CONFIDENCE: <0.0-1.0 or percentage>
        RANKING: <label>, <label>, ...
        VETO: yes|no
        REASONING: <text>

    Args:
        text: Raw member reply.
        member: The member that produced it.
        fallback_confidence: Used when no CONFIDENCE line is present
            (typically the adapter-reported confidence).

    Returns:
        A Vote, or None when the reply has no usable POSITION line.
    """
    position_match = _POSITION_RE.search(text or "")
    if not position_match:
        return None
    position = _clean_label(position_match.group("value"))
    if not position:
        return None

    confidence_match = _CONFIDENCE_RE.search(text)
    confidence = parse_confidence(confidence_match.group("value")) if confidence_match else None
    if confidence is None:
        confidence = (
            fallback_confidence if fallback_confidence is not None else DEFAULT_VOTE_CONFIDENCE
        )

    rank: list[str] | None = None
    ranking_match = _RANKING_RE.search(text)
    if ranking_match:
        parts = _RANK_SPLIT_RE.split(ranking_match.group("value"))
        rank = [label for label in (_clean_label(p) for p in parts) if label] or None

    veto_match = _VETO_RE.search(text)
    veto = bool(veto_match) and veto_match.group("value").strip().lower() in _TRUTHY

    reasoning_match = _REASONING_RE.search(text)
    reasoning = reasoning_match.group("value").strip() if reasoning_match else ""

    return Vote(
        member_id=member.id,
        member_name=member.name,
        position=position,
        confidence=confidence,
        reasoning=reasoning,
        rank=rank,
        veto=veto,
    )


def extract_json(text: str) -> dict[str, Any] | None:
    """Extract the first JSON object from a response string.

    Handles markdown code fences and commentary around the object by
    falling back to balanced brace matching.
    """
    cleaned = (text or "").strip()

    if cleaned.startswith("```"):
        end_fence = cleaned.rfind("```")
        cleaned = cleaned[3:end_fence].strip() if end_fence > 3 else cleaned.strip("`")
        if cleaned.startswith("json"):
            cleaned = cleaned[4:].strip()

    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    extracted = _extract_balanced_json(cleaned)
    if extracted:
        try:
            parsed = json.loads(extracted)
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    return None


def _extract_balanced_json(text: str) -> str | None:
    """Return the first balanced {...} block, ignoring braces inside strings."""
    start = text.find("{")
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(text[start:], start=start):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]

    return None


__all__ = [
    "DEFAULT_VOTE_CONFIDENCE",
    "extract_confidence",
    "extract_json",
    "parse_confidence",
    "parse_vote",
]
