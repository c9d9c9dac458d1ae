"""
Response Parsing Helpers

Models wrap their answers in prose, code fences or both. These helpers
pull out the structured part, and raise MalformedResponseError when
there isn't one. A parse failure is NEVER turned into a default verdict.
"""

import json
import re
from typing import Any, Optional

from pydantic import ValidationError

from recurwatch.ai.interface import MalformedResponseError
from recurwatch.models.alert import DuplicateAnalysis, ServiceFeature
from recurwatch.models.subscription import SubscriptionClassification


def _truncate(text: str, limit: int = 200) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


def extract_json(text: str) -> dict[str, Any]:
    """
    Extract the outermost JSON object from a model response.

    Raises:
        MalformedResponseError: No object found, or it doesn't parse
    """
    text = (text or "").strip()
    start = text.find("{")
    end = text.rfind("}") + 1

    if start < 0 or end <= start:
        raise MalformedResponseError(
            f"No JSON found in AI response | Raw: {_truncate(text)}"
        )

    json_str = text[start:end]
    try:
        data = json.loads(json_str)
    except json.JSONDecodeError as e:
        raise MalformedResponseError(
            f"Invalid JSON from AI: {e} | Raw: {_truncate(json_str)}"
        ) from e

    if not isinstance(data, dict):
        raise MalformedResponseError("AI response JSON is not an object")
    return data


def parse_subscription_classification(text: str) -> SubscriptionClassification:
    """Parse {"is_subscription", "confidence", "reason", "category"}."""
    data = extract_json(text)

    if "is_subscription" not in data or "confidence" not in data:
        raise MalformedResponseError(
            "Subscription classification is missing is_subscription or confidence"
        )
    if not isinstance(data["is_subscription"], bool):
        raise MalformedResponseError("is_subscription must be a boolean")

    category = data.get("category")
    if isinstance(category, str):
        category = category.strip() or None
    else:
        category = None

    try:
        return SubscriptionClassification(
            is_subscription=data["is_subscription"],
            confidence=float(data["confidence"]),
            reason=str(data.get("reason") or "")[:1000],
            category=category,
        )
    except (TypeError, ValueError, ValidationError) as e:
        raise MalformedResponseError(f"Invalid subscription classification: {e}") from e


def parse_duplicate_analysis(text: str, services: list[str]) -> DuplicateAnalysis:
    """
    Parse a duplicate-service analysis.

    Accepts either JSON ({"overlap": ..., "unique_features": [...]}) or
    the line format:

        OVERLAP: <what they share>
        SERVICE: <name>
        UNIQUE: <what only it offers>
    """
    text = (text or "").strip()
    if not text:
        raise MalformedResponseError("Empty duplicate analysis response")

    if text.find("{") >= 0:
        try:
            data = extract_json(text)
            return DuplicateAnalysis(**data)
        except (MalformedResponseError, TypeError, ValidationError):
            pass

    overlap = ""
    features: list[ServiceFeature] = []
    current_service: Optional[str] = None

    for line in text.splitlines():
        line = line.strip()
        if line.upper().startswith("OVERLAP:"):
            overlap = line[len("OVERLAP:"):].strip()
        elif line.upper().startswith("SERVICE:"):
            current_service = line[len("SERVICE:"):].strip()
        elif line.upper().startswith("UNIQUE:") and current_service:
            features.append(ServiceFeature(
                service=current_service,
                unique=line[len("UNIQUE:"):].strip(),
            ))
            current_service = None

    if not overlap:
        # Fall back to the first sentence of free text
        first_sentence = re.split(r"[.!?]", text, maxsplit=1)[0].strip()
        overlap = _truncate(first_sentence)
        if not overlap:
            raise MalformedResponseError("Duplicate analysis has no overlap description")
        if not features:
            features = [
                ServiceFeature(service=service, unique="See full analysis for details")
                for service in services
            ]

    return DuplicateAnalysis(overlap=overlap, unique_features=features)


def parse_tool_call(text: str) -> Optional[tuple[str, dict[str, Any]]]:
    """
    Find a tool request of the form {"tool": "<name>", "arguments": {...}}.

    Returns:
        (name, arguments), or None if the text is not a tool request
    """
    if text.find("{") < 0 or '"tool"' not in text:
        return None

    try:
        data = extract_json(text)
    except MalformedResponseError:
        return None

    name = data.get("tool")
    if not isinstance(name, str) or not name:
        return None

    arguments = data.get("arguments") or {}
    if not isinstance(arguments, dict):
        raise MalformedResponseError(f"Arguments for tool {name} must be an object")
    return name, arguments


def parse_verdict(text: str) -> tuple[Optional[bool], str]:
    """
    Parse the orchestrator's final answer.

        VERDICT: CONFIRMED | REJECTED | UNCERTAIN
        EXPLANATION: <free text, may continue on following lines>

    Missing markers mean the whole text is the explanation and the
    verdict is undecided.

    Raises:
        MalformedResponseError: The answer is empty
    """
    text = (text or "").strip()
    if not text:
        raise MalformedResponseError("Empty verification answer")

    corroborated: Optional[bool] = None
    explanation_lines: list[str] = []
    in_explanation = False

    for line in text.splitlines():
        stripped = line.strip()
        upper = stripped.upper()
        if upper.startswith("VERDICT:"):
            value = upper[len("VERDICT:"):].strip()
            if value.startswith("CONFIRM"):
                corroborated = True
            elif value.startswith("REJECT"):
                corroborated = False
            in_explanation = False
        elif upper.startswith("EXPLANATION:"):
            explanation_lines.append(stripped[len("EXPLANATION:"):].strip())
            in_explanation = True
        elif in_explanation and stripped:
            explanation_lines.append(stripped)

    explanation = " ".join(part for part in explanation_lines if part).strip()
    if not explanation:
        explanation = text
    return corroborated, explanation
