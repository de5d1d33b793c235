"""Parse fixed classifier narratives without any network call."""

import pytest

from hospital_intake.code_utils.narrative_parser import (
    canonical_specialty,
    extract_condition,
    extract_severity,
    extract_specialty,
    parse_narrative,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Severity: 7/10", 7),
        ("2. **Severity Rating:** 8/10 - serious", 8),
        ("severity rating: 3 / 10", 3),
        ("Severity: 4", 4),
        ("Severity: 15/10", 10),
        ("No score given here.", 0),
        ("", 0),
    ],
)
def test_extract_severity(text, expected):
    assert extract_severity(text) == expected


def test_extract_condition_from_numbered_heading():
    text = "1. Patient Condition: Acute bronchitis\n2. Severity Rating: 4/10"
    assert extract_condition(text) == "Acute bronchitis"


def test_extract_condition_with_markdown_emphasis():
    assert extract_condition("**Patient Condition:** Migraine with aura") == "Migraine with aura"


def test_extract_condition_missing():
    assert extract_condition("Severity: 2/10") is None


def test_extract_condition_is_length_bounded():
    text = "Condition: " + "x" * 400
    assert len(extract_condition(text)) == 255


def test_explicit_marker_beats_keywords():
    text = (
        "Patient reports a headache and a skin rash after a fall.\n"
        "Specialist Recommendation: Cardiology"
    )
    assert extract_specialty(text) == "Cardiology"


@pytest.mark.parametrize(
    "text, expected",
    [
        ("Complains of chest pain and a headache.", "Cardiology"),
        ("Persistent headache for three days.", "Neurology"),
        ("Suspected fracture of the left wrist.", "Orthopedics"),
        ("Infant with mild fever.", "Pediatrics"),
        ("Itchy RASH on forearm.", "Dermatology"),
        ("Blurred vision in one eye.", "Ophthalmology"),
        ("Reports ongoing anxiety.", "Psychiatry"),
        ("Critical bleeding, needs attention now.", "Emergency Medicine"),
        ("No notable findings.", "General Medicine"),
    ],
)
def test_keyword_fallback_in_listed_order(text, expected):
    assert extract_specialty(text) == expected


@pytest.mark.parametrize(
    "label, expected",
    [
        ("cardiology", "Cardiology"),
        ("Neurology and Psychiatry", "Neurology"),
        ("  emergency   medicine ", "Emergency Medicine"),
        ("General Practitioner", "General Medicine"),
        ("Orthopaedics", "Orthopedics"),
        ("Consult a cardiologist", "Cardiology"),
        ("Refer to pediatrician, then dermatology", "Pediatrics"),
        ("Non-urgent orthopedic review", "Orthopedics"),
        ("Oncology", "Oncology"),
    ],
)
def test_canonical_specialty(label, expected):
    assert canonical_specialty(label) == expected


def test_marker_with_a_sentence_is_canonicalised():
    text = "Severity: 6/10\nSpecialist Recommendation: Consult a cardiologist\n"
    assert extract_specialty(text) == "Cardiology"


def test_marker_with_unknown_label_is_kept_verbatim():
    assert extract_specialty("Specialist Recommendation: Oncology\n") == "Oncology"


def test_parse_full_narrative():
    text = """1. Patient Condition: Stable angina
2. Severity Rating: 7/10
3. Priority Level: High
4. Recommended Actions: ECG within the hour
6. Specialist Recommendation: Cardiology"""
    result = parse_narrative(text)
    assert result.condition == "Stable angina"
    assert result.severity == 7
    assert result.recommended_specialty == "Cardiology"
    assert result.narrative == text


@pytest.mark.parametrize("text", [None, "", "   \n  "])
def test_blank_narrative_degrades_to_defaults(text):
    result = parse_narrative(text)
    assert result.condition is None
    assert result.severity == 0
    assert result.recommended_specialty == "General Medicine"


def test_garbled_text_never_raises():
    result = parse_narrative("%%% ??? Severity: /10 ::: Specialist Recommendation: 42")
    assert result.severity == 0
    assert result.recommended_specialty == "General Medicine"
