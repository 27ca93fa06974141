"""Best-effort extraction of analysis JSON from raw model output.

Models wrap JSON in markdown fences, prepend prose, drop commas or get cut
off mid-object. `extract_analysis_payload` walks a fixed ladder of parse
strategies and records which one succeeded; whatever it recovers is coerced
into the canonical item/quality-analysis shape. Nothing in this module raises
on malformed input.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping

from src.models.analysis_contract import AnalysisPayload

LOG = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"^```(?:json|JSON)?\s*", re.DOTALL)
_ZERO_WIDTH = ("\ufeff", "\u200b", "\u200c", "\u200d", "\u2060")
_ITEMS_KEY_RE = re.compile(r'"items"\s*:\s*\[')
_QA_KEY_RE = re.compile(r'"quality_analysis"\s*:\s*\{')


class RepairStage(str, Enum):
    """Which strategy produced the payload, from cleanest to most lossy."""

    DIRECT = "direct"
    PROSE_REMOVED = "prose_removed"
    REPAIRED = "repaired"
    PARTIAL = "partial"
    EMPTY = "empty"


@dataclass(slots=True)
class RepairResult:
    payload: Dict[str, Any]
    stage: RepairStage
    notes: list[str] = field(default_factory=list)

    @property
    def repaired(self) -> bool:
        return self.stage is not RepairStage.DIRECT


def clean_unicode(text: str) -> str:
    for marker in _ZERO_WIDTH:
        text = text.replace(marker, "")
    return text


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # Truncated responses can open a fence and never close it.
    return _OPEN_FENCE_RE.sub("", text, count=1).strip()


def remove_prose(text: str) -> str:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1:
        return text
    if last <= first:
        return text[first:]
    return text[first : last + 1]


def fix_trailing_commas(text: str) -> str:
    return re.sub(r",(\s*[}\]])", r"\1", text)


def fix_missing_commas(text: str) -> str:
    text = re.sub(r"}\s*{", "},{", text)
    text = re.sub(r"\]\s*\[", "],[", text)
    text = re.sub(r'"\s*\n(\s*)"', r'",\n\1"', text)
    return text


def fix_quotes(text: str) -> str:
    text = re.sub(r"'(\w+)'\s*:", r'"\1":', text)
    text = re.sub(r":\s*'([^'\"\\]*)'", r': "\1"', text)
    return text


def rebalance_brackets(text: str) -> str:
    """Drop unmatched closers and close whatever is still open, string-aware."""
    stack: list[str] = []
    out: list[str] = []
    in_string = False
    escape = False
    pairs = {"}": "{", "]": "["}
    for char in text:
        if in_string:
            out.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            stack.append(char)
        elif char in "}]":
            if not stack or stack[-1] != pairs[char]:
                continue
            stack.pop()
        out.append(char)
    if in_string:
        out.append('"')
    fixed = "".join(out).rstrip()
    # A value cut off after its key cannot be recovered; drop the dangling key.
    fixed = re.sub(r',?\s*"[^"]*"\s*:\s*$', "", fixed)
    fixed = fixed.rstrip().rstrip(",")
    for opener in reversed(stack):
        fixed += "}" if opener == "{" else "]"
    return fix_trailing_commas(fixed)


def _loads(text: str) -> Any:
    try:
        return json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None


def _loads_lenient(text: str) -> Any:
    parsed = _loads(text)
    if parsed is None:
        parsed = _loads(fix_quotes(fix_trailing_commas(text)))
    return parsed


def _as_object(parsed: Any) -> Dict[str, Any] | None:
    if isinstance(parsed, dict):
        return parsed
    if isinstance(parsed, list) and all(isinstance(entry, dict) for entry in parsed):
        return {"items": parsed}
    return None


def _scan_objects_in_array(text: str, start: int) -> list[Dict[str, Any]]:
    """Collect every parseable top-level object of the array opened before ``start``."""
    objects: list[Dict[str, Any]] = []
    depth = 1
    brace_depth = 0
    obj_start = start
    in_string = False
    escape = False
    idx = start
    while idx < len(text) and depth > 0:
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            if brace_depth == 0:
                obj_start = idx
            brace_depth += 1
        elif char == "}":
            brace_depth -= 1
            if brace_depth == 0:
                parsed = _loads_lenient(text[obj_start : idx + 1])
                if isinstance(parsed, dict):
                    objects.append(parsed)
                else:
                    LOG.debug("schema_repair_item_skipped", extra={"offset": obj_start})
        elif char == "[":
            if brace_depth == 0:
                depth += 1
        elif char == "]":
            if brace_depth == 0:
                depth -= 1
        idx += 1
    return objects


def _scan_object(text: str, start: int) -> Dict[str, Any] | None:
    """Parse the object whose opening brace sits at ``start``; tolerate truncation."""
    depth = 0
    in_string = False
    escape = False
    for idx in range(start, len(text)):
        char = text[idx]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                parsed = _loads_lenient(text[start : idx + 1])
                return parsed if isinstance(parsed, dict) else None
    parsed = _loads(rebalance_brackets(text[start:]))
    return parsed if isinstance(parsed, dict) else None


def extract_items(text: str) -> list[Dict[str, Any]]:
    match = _ITEMS_KEY_RE.search(text)
    if not match:
        return []
    return _scan_objects_in_array(text, match.end())


def extract_quality_analysis(text: str) -> Dict[str, Any] | None:
    match = _QA_KEY_RE.search(text)
    if not match:
        return None
    return _scan_object(text, match.end() - 1)


def _first_list(*candidates: Any) -> list[Any]:
    for candidate in candidates:
        if isinstance(candidate, list) and candidate:
            return candidate
    return []


def _normalise_quality_shape(raw: Any, top_level: Mapping[str, Any]) -> Any:
    """Fold the richer completeness/risk_flags/audit_trail layout into the canonical keys."""
    if not isinstance(raw, Mapping):
        issues = top_level.get("issues")
        if isinstance(issues, list) and issues:
            return {"risks": issues}
        return raw
    shaped = dict(raw)
    completeness = raw.get("completeness") if isinstance(raw.get("completeness"), Mapping) else {}
    audit = raw.get("audit_trail") if isinstance(raw.get("audit_trail"), Mapping) else {}
    if not shaped.get("risks"):
        shaped["risks"] = _first_list(raw.get("risk_flags"), top_level.get("issues"))
    if not shaped.get("missing_info"):
        missing: list[Any] = []
        for key in ("missing_sheets", "missing_dimensions", "missing_details", "missing_disciplines"):
            value = completeness.get(key)
            if isinstance(value, list):
                missing.extend(value)
        shaped["missing_info"] = missing
    if not shaped.get("assumptions"):
        shaped["assumptions"] = _first_list(audit.get("assumptions_made"), audit.get("assumptions"))
    if not shaped.get("summary") and isinstance(completeness.get("notes"), str):
        shaped["summary"] = completeness["notes"]
    return shaped


def validate_analysis(payload: Any) -> Dict[str, Any]:
    """Coerce any parsed payload into the canonical shape with typed defaults."""
    if not isinstance(payload, Mapping):
        payload = {}
    shaped = dict(payload)
    shaped["quality_analysis"] = _normalise_quality_shape(payload.get("quality_analysis"), payload)
    return AnalysisPayload.from_mapping(shaped).to_dict()


def extract_analysis_payload(raw: str | bytes | None) -> RepairResult:
    """Recover the analysis payload from raw model output; never raises."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    notes: list[str] = []
    text = clean_unicode((raw or "").strip())
    text = strip_code_fences(text)

    parsed = _as_object(_loads(text))
    if parsed is not None:
        return RepairResult(validate_analysis(parsed), RepairStage.DIRECT, notes)
    notes.append("direct parse failed")

    text = remove_prose(text)
    parsed = _as_object(_loads(text))
    if parsed is not None:
        notes.append("prose removed")
        return RepairResult(validate_analysis(parsed), RepairStage.PROSE_REMOVED, notes)

    repaired_text = rebalance_brackets(fix_quotes(fix_missing_commas(fix_trailing_commas(text))))
    parsed = _as_object(_loads(repaired_text))
    if parsed is not None:
        notes.append("textual repairs applied")
        return RepairResult(validate_analysis(parsed), RepairStage.REPAIRED, notes)
    notes.append("parse after repairs failed")

    items = extract_items(text)
    quality = extract_quality_analysis(text)
    if items or quality is not None:
        notes.append("partial extraction")
        payload: Dict[str, Any] = {"items": items}
        if quality is not None:
            payload["quality_analysis"] = quality
        return RepairResult(validate_analysis(payload), RepairStage.PARTIAL, notes)

    notes.append("no recoverable structure")
    return RepairResult(validate_analysis({}), RepairStage.EMPTY, notes)


__all__ = [
    "RepairStage",
    "RepairResult",
    "extract_analysis_payload",
    "validate_analysis",
    "extract_items",
    "extract_quality_analysis",
    "rebalance_brackets",
    "strip_code_fences",
]
