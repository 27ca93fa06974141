"""Canonical analysis payload shared by the batch worker, merger and API.

Every batch result and every merged final result has the same shape: a list
of takeoff items and one quality-analysis block. `from_mapping` coerces
arbitrary model output into that shape with type-correct defaults.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Sequence

DEFAULT_UNIT = "EA"
DEFAULT_CATEGORY = "other"


def _as_number(value: Any, default: float = 0.0) -> float:
    if isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return default
    else:
        return default
    if math.isnan(number) or math.isinf(number):
        return default
    return number


def _as_text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    if isinstance(value, str):
        return value if value.strip() else default
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return default


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def _as_text_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, Sequence):
        return []
    out: list[str] = []
    for entry in value:
        if isinstance(entry, str):
            if entry.strip():
                out.append(entry)
        elif isinstance(entry, Mapping):
            text = _as_text(entry.get("description") or entry.get("text") or entry.get("title"))
            if text:
                out.append(text)
    return out


@dataclass(slots=True)
class BoundingBox:
    page: int = 0
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @classmethod
    def from_mapping(cls, payload: Any) -> "BoundingBox":
        if not isinstance(payload, Mapping):
            return cls()
        return cls(
            page=int(_as_number(payload.get("page"))),
            x=_as_number(payload.get("x")),
            y=_as_number(payload.get("y")),
            width=_as_number(payload.get("width")),
            height=_as_number(payload.get("height")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "page": self.page,
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
        }


@dataclass(slots=True)
class TakeoffItem:
    name: str = ""
    description: str = ""
    quantity: float = 0.0
    unit: str = DEFAULT_UNIT
    unit_cost: float = 0.0
    location: str = ""
    category: str = DEFAULT_CATEGORY
    subcategory: str = ""
    subcontractor: str = ""
    cost_code: str = ""
    cost_code_description: str = ""
    notes: str = ""
    dimensions: str = ""
    confidence: float = 0.0
    bounding_box: BoundingBox = field(default_factory=BoundingBox)

    @classmethod
    def from_mapping(cls, payload: Mapping[str, Any]) -> "TakeoffItem":
        return cls(
            name=_as_text(payload.get("name")),
            description=_as_text(payload.get("description")),
            quantity=_as_number(payload.get("quantity")),
            unit=_as_text(payload.get("unit"), DEFAULT_UNIT),
            unit_cost=_as_number(payload.get("unit_cost")),
            location=_as_text(payload.get("location")),
            category=_as_text(payload.get("category"), DEFAULT_CATEGORY),
            subcategory=_as_text(payload.get("subcategory")),
            subcontractor=_as_text(payload.get("subcontractor")),
            cost_code=_as_text(payload.get("cost_code")),
            cost_code_description=_as_text(payload.get("cost_code_description")),
            notes=_as_text(payload.get("notes")),
            dimensions=_as_text(payload.get("dimensions")),
            confidence=_clamp_unit(_as_number(payload.get("confidence"))),
            bounding_box=BoundingBox.from_mapping(payload.get("bounding_box")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "quantity": self.quantity,
            "unit": self.unit,
            "unit_cost": self.unit_cost,
            "location": self.location,
            "category": self.category,
            "subcategory": self.subcategory,
            "subcontractor": self.subcontractor,
            "cost_code": self.cost_code,
            "cost_code_description": self.cost_code_description,
            "notes": self.notes,
            "dimensions": self.dimensions,
            "confidence": self.confidence,
            "bounding_box": self.bounding_box.to_dict(),
        }


@dataclass(slots=True)
class QualityAnalysis:
    summary: str = ""
    risks: list[Any] = field(default_factory=list)
    missing_info: list[str] = field(default_factory=list)
    assumptions: list[str] = field(default_factory=list)
    code_refs: list[str] = field(default_factory=list)
    confidence: float = 0.0

    @classmethod
    def from_mapping(cls, payload: Any) -> "QualityAnalysis":
        if not isinstance(payload, Mapping):
            return cls()
        risks_raw = payload.get("risks")
        risks: list[Any] = []
        if isinstance(risks_raw, Sequence) and not isinstance(risks_raw, str):
            # Risks may be plain strings or structured objects; keep either.
            risks = [r for r in risks_raw if isinstance(r, (str, Mapping)) and r]
        return cls(
            summary=_as_text(payload.get("summary")),
            risks=risks,
            missing_info=_as_text_list(payload.get("missing_info")),
            assumptions=_as_text_list(payload.get("assumptions")),
            code_refs=_as_text_list(payload.get("code_refs")),
            confidence=_clamp_unit(_as_number(payload.get("confidence"))),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "summary": self.summary,
            "risks": [dict(r) if isinstance(r, Mapping) else r for r in self.risks],
            "missing_info": list(self.missing_info),
            "assumptions": list(self.assumptions),
            "code_refs": list(self.code_refs),
            "confidence": self.confidence,
        }


@dataclass(slots=True)
class AnalysisPayload:
    items: list[TakeoffItem] = field(default_factory=list)
    quality_analysis: QualityAnalysis = field(default_factory=QualityAnalysis)

    @classmethod
    def from_mapping(cls, payload: Any) -> "AnalysisPayload":
        if not isinstance(payload, Mapping):
            return cls()
        raw_items = payload.get("items")
        items: list[TakeoffItem] = []
        if isinstance(raw_items, Sequence) and not isinstance(raw_items, str):
            items = [TakeoffItem.from_mapping(entry) for entry in raw_items if isinstance(entry, Mapping)]
        return cls(
            items=items,
            quality_analysis=QualityAnalysis.from_mapping(payload.get("quality_analysis")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "quality_analysis": self.quality_analysis.to_dict(),
        }


def empty_payload() -> Dict[str, Any]:
    return AnalysisPayload().to_dict()


__all__ = [
    "BoundingBox",
    "TakeoffItem",
    "QualityAnalysis",
    "AnalysisPayload",
    "empty_payload",
    "DEFAULT_UNIT",
    "DEFAULT_CATEGORY",
]
