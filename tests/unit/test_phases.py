import pytest

from stepstream.errors import InvalidOutputError
from stepstream.models import StepType
from stepstream.phases import (
    PHASES,
    REFINEMENT,
    normalize_discovery_success,
    normalize_generic_success,
    normalize_refinement_success,
)


def test_phase_table_covers_streaming_steps():
    assert set(PHASES) == {StepType.CLARIFICATION, StepType.REFINEMENT, StepType.DISCOVERY}
    assert PHASES[StepType.REFINEMENT] is REFINEMENT
    assert REFINEMENT.requires_confirmation
    assert not PHASES[StepType.CLARIFICATION].requires_confirmation


def test_generic_success_splits_text_from_structured():
    assert normalize_generic_success({"text": "done", "score": 4}) == {
        "output_text": "done",
        "output_structured": {"score": 4},
    }
    assert normalize_generic_success({}) == {}


def test_refinement_requires_refined_text():
    assert normalize_refinement_success({"refinedText": "Better request"}) == {
        "output_text": "Better request"
    }
    with pytest.raises(InvalidOutputError, match="missing"):
        normalize_refinement_success({"text": "wrong field"})
    with pytest.raises(InvalidOutputError, match="empty"):
        normalize_refinement_success({"refinedText": "   "})


def test_discovery_counts_files():
    patch = normalize_discovery_success(
        {
            "discoveredFiles": [
                {
                    "action": "create",
                    "filePath": "app/dark.css",
                    "priority": "medium",
                    "relevanceExplanation": "new stylesheet",
                    "role": "style",
                }
            ],
            "summary": "One new file",
        }
    )
    structured = patch["output_structured"]
    assert structured["total_count"] == 1
    assert structured["discovered_files"][0]["file_path"] == "app/dark.css"
    assert structured["summary"] == "One new file"


def test_discovery_rejects_unknown_action():
    with pytest.raises(InvalidOutputError):
        normalize_discovery_success(
            {
                "discoveredFiles": [
                    {
                        "action": "rename",
                        "filePath": "a.py",
                        "priority": "low",
                        "relevanceExplanation": "x",
                        "role": "y",
                    }
                ]
            }
        )
