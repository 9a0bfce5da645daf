"""
Decision Parser

Deserializes the oracle's per-turn verdict into a validated Decision.
Layers are tried in order and every layer validates through the same
pydantic model:

1. strict JSON (the whole response, or a fenced ```json block)
2. inline JSON recovered from surrounding prose by brace matching
3. labelled plain-text lines ("Decision:", "Reasoning:", ...)

The result is tagged: DecisionParsed(decision, method) or
DecisionParseFailed(reason). A missing next query is not a parse failure;
the orchestrator handles it as "no valid next action".
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from pydantic import ValidationError

from .models import Decision

logger = logging.getLogger("iterative_rag.decision_parser")

FENCED_BLOCK = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>", re.IGNORECASE)
DECISION_TOKEN = re.compile(r"\b(ANSWER|SEARCH[_ ]AGAIN|SEARCH[_ ]WEB)\b", re.IGNORECASE)

LABELS = {
    "decision": "decision",
    "reasoning": "reasoning",
    "reason": "reasoning",
    "next codebase search query": "next_codebase_query",
    "next codebase query": "next_codebase_query",
    "next web search query": "next_web_query",
    "next web query": "next_web_query",
    "confidence": "confidence_score",
    "confidence score": "confidence_score",
    "quality": "quality_score",
    "quality score": "quality_score",
}
LABEL_LINE = re.compile(
    r"^\s*[*_#>\-\s]*(" + "|".join(sorted((re.escape(l) for l in LABELS), key=len, reverse=True))
    + r")\s*[*_]*\s*:\s*[*_]*\s*(.*)$",
    re.IGNORECASE,
)

# JSON keys the oracle tends to use instead of the field names
KEY_SYNONYMS = {
    "next_codebase_search_query": "next_codebase_query",
    "next_web_search_query": "next_web_query",
    "confidence": "confidence_score",
    "quality": "quality_score",
    "reason": "reasoning",
}


@dataclass
class DecisionParsed:
    decision: Decision
    method: str  # "json" | "inline_json" | "plain_text"


@dataclass
class DecisionParseFailed:
    reason: str
    raw: str = ""


DecisionParseResult = Union[DecisionParsed, DecisionParseFailed]


_OBJECT_DECODER = json.JSONDecoder()


def find_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    First JSON object embedded in oracle prose, decoded.

    Models often wrap the verdict in commentary ("Here is my decision:
    {...} Thanks!") or mention braces before the real object, so every '{'
    is tried as a start position until one decodes to an object. The
    decoder tracks string literals itself, so braces inside reasoning text
    do not end the object early.
    """
    position = text.find("{")
    while position != -1:
        try:
            return _OBJECT_DECODER.raw_decode(text, position)[0]
        except json.JSONDecodeError:
            position = text.find("{", position + 1)
    return None


def parse_json_payload(raw: Optional[str]) -> Optional[Any]:
    """
    Best-effort JSON recovery for auxiliary oracle outputs (plans, reflections,
    query lists). Returns None when nothing parseable is found.
    """
    if not raw or not raw.strip():
        return None
    text = THINK_BLOCK.sub("", raw).strip()
    fenced = FENCED_BLOCK.search(text)
    candidate = (fenced.group(1) if fenced else text).strip()
    try:
        return json.loads(candidate)
    except json.JSONDecodeError:
        pass

    inline = find_json_object(candidate)
    if inline is not None:
        return inline

    start, end = candidate.find("["), candidate.rfind("]")
    if start != -1 and end > start:
        try:
            return json.loads(candidate[start:end + 1])
        except json.JSONDecodeError:
            pass
    return None


def _snake(key: str) -> str:
    key = re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key.strip())
    return re.sub(r"[\s\-]+", "_", key).lower()


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    normalized = {}
    for key, value in data.items():
        name = _snake(str(key))
        normalized[KEY_SYNONYMS.get(name, name)] = value
    return normalized


def _validate(data: Any) -> Decision:
    if not isinstance(data, dict):
        raise ValueError("decision payload is not an object")
    return Decision.model_validate(_normalize_keys(data))


def _parse_score(value: str) -> Optional[float]:
    match = re.search(r"-?\d+(?:\.\d+)?", value)
    if not match:
        return None
    score = float(match.group(0))
    return score if 0.0 <= score <= 1.0 else None


def _parse_labelled_lines(text: str) -> Optional[Dict[str, Any]]:
    fields: Dict[str, str] = {}
    current: Optional[str] = None

    for line in text.splitlines():
        match = LABEL_LINE.match(line)
        if match:
            current = LABELS[match.group(1).lower()]
            if current in fields:
                # first occurrence wins
                current = None
                continue
            fields[current] = match.group(2).strip()
        elif current == "reasoning" and line.strip() and not line.strip().startswith("---"):
            fields["reasoning"] = f"{fields['reasoning']} {line.strip()}".strip()
        elif line.strip().startswith("---"):
            current = None

    if "decision" not in fields:
        return None

    token = DECISION_TOKEN.search(fields["decision"])
    data: Dict[str, Any] = {
        "decision": token.group(1) if token else fields["decision"],
        "reasoning": fields.get("reasoning", ""),
        "next_codebase_query": fields.get("next_codebase_query"),
        "next_web_query": fields.get("next_web_query"),
    }
    for score_field in ("confidence_score", "quality_score"):
        if score_field in fields:
            data[score_field] = _parse_score(fields[score_field])
    return data


def parse_decision(raw: Optional[str]) -> DecisionParseResult:
    """Parse an oracle response into a Decision, trying each layer in turn"""
    if raw is None or not raw.strip():
        return DecisionParseFailed("empty oracle response", raw or "")

    text = THINK_BLOCK.sub("", raw).strip()
    errors = []

    # 1. Strict JSON
    fenced = FENCED_BLOCK.search(text)
    candidate = (fenced.group(1) if fenced else text).strip()
    strict_data = None
    try:
        strict_data = json.loads(candidate)
        return DecisionParsed(_validate(strict_data), "json")
    except (json.JSONDecodeError, ValueError, ValidationError) as e:
        errors.append(f"json: {e.__class__.__name__}")

    # 2. Inline JSON recovery
    inline = find_json_object(text)
    if inline is not None and inline != strict_data:
        try:
            return DecisionParsed(_validate(inline), "inline_json")
        except (ValueError, ValidationError) as e:
            errors.append(f"inline_json: {e.__class__.__name__}")

    # 3. Labelled plain-text lines
    labelled = _parse_labelled_lines(text)
    if labelled is None:
        errors.append("plain_text: no Decision line")
    else:
        try:
            return DecisionParsed(Decision.model_validate(labelled), "plain_text")
        except ValidationError as e:
            errors.append(f"plain_text: invalid decision {labelled.get('decision')!r}")
            logger.debug(f"Plain-text decision rejected: {e}")

    return DecisionParseFailed("; ".join(errors), raw)
