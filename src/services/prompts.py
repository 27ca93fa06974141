"""System and user prompts for batch takeoff / quality analysis."""

from __future__ import annotations

from src.models.takeoff import AnalysisMode

MAX_PROMPT_TEXT_CHARS = 8000

_RESPONSE_CONTRACT = """RESPONSE FORMAT:
Return ONLY a valid JSON object with this exact structure. Both "items" and
"quality_analysis" are required, even when one of them is sparse:
{
  "items": [
    {
      "name": "Specific item name",
      "description": "Detailed description",
      "quantity": 150.5,
      "unit": "LF|SF|CF|CY|EA|SQ",
      "unit_cost": 2.50,
      "location": "Specific location",
      "category": "structural|exterior|interior|mep|finishes|other",
      "subcategory": "Specific subcategory",
      "subcontractor": "Trade (Electrical, Plumbing, Framing, ...)",
      "cost_code": "Standardized cost code",
      "cost_code_description": "Cost code description",
      "notes": "Additional notes",
      "dimensions": "Original dimensions from plan",
      "bounding_box": {"page": 1, "x": 0.25, "y": 0.30, "width": 0.15, "height": 0.10},
      "confidence": 0.95
    }
  ],
  "quality_analysis": {
    "summary": "One paragraph overview of plan quality",
    "risks": [{"severity": "critical|warning|info", "description": "...", "page": 1}],
    "missing_info": ["Missing sheet, dimension or detail"],
    "assumptions": ["Assumption made while measuring"],
    "code_refs": ["Applicable code section"],
    "confidence": 0.8
  }
}
Bounding boxes are normalised to 0-1 relative to the page; "page" is the
absolute plan page number. Do not include any text outside the JSON object."""

_BASE = """You are an expert construction analyst with deep knowledge of construction
plans, building codes and material takeoffs for {job_type} projects.

INSTRUCTIONS:
- Analyze every provided page image thoroughly
- Give specific item names ("2x6 Top Plate", not "lumber")
- Use correct units: LF, SF, CF, CY, EA, SQ (100 SF of roofing)
- Record the dimensions used for every quantity
- Include a location and a bounding box for every item
- If a dimension is not visible, say so in notes and list it under missing_info
"""

_TAKEOFF_FOCUS = """FOCUS: QUANTITY TAKEOFF
Extract every measurable element: wall sections, openings, fixtures, flooring areas,
material layers, MEP components. A single sheet normally yields many items; include
uncertain items with confidence below 0.6 rather than omitting them. Keep the
quality_analysis block brief but present.
"""

_QUALITY_FOCUS = """FOCUS: QUALITY ANALYSIS
Assess completeness (missing sheets, dimensions, details), consistency (scale, unit
and schedule conflicts) and risks (safety, code, budget, schedule). Cite code sections
where relevant. Items may be empty if nothing needs quantifying.
"""

_BOTH_FOCUS = """FOCUS: COMPLETE TAKEOFF AND QUALITY ANALYSIS
Return a full quantity takeoff AND a full quality analysis. Neither section may be
skipped.
"""

_FOCUS = {
    AnalysisMode.TAKEOFF: _TAKEOFF_FOCUS,
    AnalysisMode.QUALITY_ANALYSIS: _QUALITY_FOCUS,
    AnalysisMode.BOTH: _BOTH_FOCUS,
}


def build_system_prompt(mode: AnalysisMode, job_type: str = "residential") -> str:
    return "\n".join(
        [
            _BASE.format(job_type=job_type or "residential"),
            _FOCUS[mode],
            _RESPONSE_CONTRACT,
        ]
    )


def build_user_prompt(
    image_count: int,
    page_start: int | None = None,
    page_end: int | None = None,
    extracted_text: str | None = None,
) -> str:
    plural = "s" if image_count != 1 else ""
    page_range = f" (pages {page_start}-{page_end})" if page_start and page_end else ""
    parts = [
        f"Analyze this construction plan excerpt: {image_count} page{plural}{page_range}.",
    ]
    if extracted_text:
        truncated = extracted_text[:MAX_PROMPT_TEXT_CHARS]
        if len(extracted_text) > MAX_PROMPT_TEXT_CHARS:
            truncated += "\n\n...(additional text truncated)"
        parts.append("=== EXTRACTED TEXT FROM PDF ===\n" + truncated)
        parts.append("=== VISUAL ANALYSIS ===")
    parts.append(
        "Use the page images as the primary source and the extracted text to confirm "
        "labels, schedules and notes. Respond with the JSON object only."
    )
    return "\n\n".join(parts)


__all__ = ["build_system_prompt", "build_user_prompt", "MAX_PROMPT_TEXT_CHARS"]
