from __future__ import annotations

import pytest

from src.models.takeoff import AnalysisMode
from src.services.prompts import MAX_PROMPT_TEXT_CHARS, build_system_prompt, build_user_prompt


@pytest.mark.parametrize(
    "mode,focus",
    [
        (AnalysisMode.TAKEOFF, "FOCUS: QUANTITY TAKEOFF"),
        (AnalysisMode.QUALITY_ANALYSIS, "FOCUS: QUALITY ANALYSIS"),
        (AnalysisMode.BOTH, "FOCUS: COMPLETE TAKEOFF AND QUALITY ANALYSIS"),
    ],
)
def test_system_prompt_focus_and_contract(mode, focus):
    prompt = build_system_prompt(mode, "commercial")

    assert focus in prompt
    assert "commercial projects" in prompt
    assert '"quality_analysis"' in prompt
    assert '"bounding_box"' in prompt


def test_system_prompt_defaults_job_type():
    assert "residential projects" in build_system_prompt(AnalysisMode.BOTH, "")


def test_user_prompt_page_range_and_plurals():
    assert "1 page (pages 4-4)." in build_user_prompt(1, 4, 4)
    assert "5 pages (pages 1-5)." in build_user_prompt(5, 1, 5)
    assert "(pages" not in build_user_prompt(2)
    assert "EXTRACTED TEXT" not in build_user_prompt(2, 1, 2)


def test_user_prompt_truncates_long_text():
    text = "x" * (MAX_PROMPT_TEXT_CHARS + 50)

    prompt = build_user_prompt(3, 1, 3, text)

    assert "=== EXTRACTED TEXT FROM PDF ===" in prompt
    assert "x" * MAX_PROMPT_TEXT_CHARS in prompt
    assert "x" * (MAX_PROMPT_TEXT_CHARS + 1) not in prompt
    assert "...(additional text truncated)" in prompt
