"""
Verdict parsing - turn classifier output into a ClassificationVerdict

The classification service answers in loosely structured JSON: labels come
back in several spellings, evidence may sit under "context" instead of
"evidence", and the JSON is sometimes wrapped in markdown fences or prose.
Everything here degrades to ClassificationVerdict.no_detection() instead of
raising, so a bad response is recorded as data and never crashes the worker.
"""

import json
import logging
import re
from typing import Any

from stacksignal.models import (
    BOTH,
    EVIDENCE_MAX_LENGTH,
    NO_TOOL,
    OUTREACH,
    SALESLOFT,
    ClassificationVerdict,
    SignalType,
    ToolName,
)

logger = logging.getLogger(__name__)

# Keys are compared after lower-casing and collapsing separators to single spaces
TOOL_SYNONYMS: dict[str, ToolName] = {
    "outreach": OUTREACH,
    "outreach.io": OUTREACH,
    "outreach io": OUTREACH,
    "outreachio": OUTREACH,
    "salesloft": SALESLOFT,
    "sales loft": SALESLOFT,
    "salesloft.com": SALESLOFT,
    "both": BOTH,
    "outreach.io and salesloft": BOTH,
    "outreach and salesloft": BOTH,
    "salesloft and outreach": BOTH,
    "salesloft and outreach.io": BOTH,
    "outreach.io salesloft": BOTH,
    "outreach salesloft": BOTH,
    "none": NO_TOOL,
    "no": NO_TOOL,
    "neither": NO_TOOL,
    "n/a": NO_TOOL,
    "null": NO_TOOL,
    "": NO_TOOL,
}

SIGNAL_SYNONYMS: dict[str, SignalType] = {
    "required": "required",
    "requirement": "required",
    "explicit mention": "required",
    "integration requirement": "required",
    "must have": "required",
    "preferred": "preferred",
    "nice to have": "preferred",
    "bonus": "preferred",
    "plus": "preferred",
    "stack mention": "stack_mention",
    "tool mention": "stack_mention",
    "process indicator": "stack_mention",
    "mentioned": "stack_mention",
    "none": "none",
    "": "none",
}

_SEPARATORS = re.compile(r"[\s_\-/&+,]+")


def _label_key(value: str) -> str:
    # "n/a" keeps its slash; everything else collapses separators
    lowered = value.strip().lower()
    if lowered == "n/a":
        return lowered
    return _SEPARATORS.sub(" ", lowered).strip()


def canonical_tool(value: Any) -> ToolName | None:
    """Map a tool label to the fixed vocabulary, None if unrecognized"""
    if value is None:
        return NO_TOOL
    if not isinstance(value, str):
        return None
    return TOOL_SYNONYMS.get(_label_key(value))


def canonical_signal(value: Any) -> SignalType | None:
    """Map a signal label to the fixed vocabulary, None if unrecognized"""
    if value is None:
        return "none"
    if not isinstance(value, str):
        return None
    return SIGNAL_SYNONYMS.get(_label_key(value))


def truncate_evidence(text: Any, limit: int = EVIDENCE_MAX_LENGTH) -> str:
    """Collapse whitespace and clip evidence to limit characters"""
    if not isinstance(text, str):
        return ""
    collapsed = " ".join(text.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3].rstrip() + "..."


def _coerce_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes", "1"):
            return True
        if lowered in ("false", "no", "0", ""):
            return False
    if isinstance(value, int):
        return bool(value)
    return None


def extract_json_object(content: str) -> dict | None:
    """
    Pull a JSON object out of raw model output

    Handles ```json fences and a JSON object embedded in surrounding prose.
    """
    cleaned = content.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    if cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    cleaned = cleaned.strip()

    try:
        data = json.loads(cleaned)
    except json.JSONDecodeError:
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            data = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None

    return data if isinstance(data, dict) else None


def _verdict_from_dict(data: dict) -> ClassificationVerdict:
    tool = canonical_tool(data.get("tool_detected"))
    if tool is None:
        logger.debug(f"Unrecognized tool label: {data.get('tool_detected')!r}")
        return ClassificationVerdict.no_detection()

    signal = canonical_signal(data.get("signal_type"))
    if signal is None:
        logger.debug(f"Unrecognized signal label: {data.get('signal_type')!r}")
        return ClassificationVerdict.no_detection()

    uses_tool = _coerce_bool(data.get("uses_tool"))
    if uses_tool is None:
        # Missing flag: infer it from the tool label
        uses_tool = tool != NO_TOOL

    # uses_tool must agree with tool_detected
    if uses_tool != (tool != NO_TOOL) or not uses_tool:
        return ClassificationVerdict.no_detection()

    evidence = data.get("evidence")
    if not evidence:
        evidence = data.get("context")

    return ClassificationVerdict(
        uses_tool=True,
        tool_detected=tool,
        signal_type=signal,
        evidence=truncate_evidence(evidence),
    )


def parse_verdict(raw: Any) -> ClassificationVerdict:
    """
    Parse a classifier response into a ClassificationVerdict

    Args:
        raw: Response text, an already-decoded dict, or None

    Returns:
        A validated verdict. Empty, malformed or inconsistent responses all
        yield ClassificationVerdict.no_detection().
    """
    try:
        if raw is None:
            return ClassificationVerdict.no_detection()
        if isinstance(raw, dict):
            data = raw
        elif isinstance(raw, str):
            if not raw.strip():
                return ClassificationVerdict.no_detection()
            data = extract_json_object(raw)
            if data is None:
                logger.debug(f"Unparseable classifier response: {raw[:200]!r}")
                return ClassificationVerdict.no_detection()
        else:
            return ClassificationVerdict.no_detection()

        return _verdict_from_dict(data)

    except Exception as e:
        logger.warning(f"Verdict parsing failed, treating as no detection: {e}")
        return ClassificationVerdict.no_detection()
