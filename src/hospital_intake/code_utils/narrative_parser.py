import re
from typing import List, Optional, Tuple

from hospital_intake.code_utils.models import (
    DEFAULT_SPECIALTY,
    SPECIALTIES,
    ClassificationResult,
)

# Defensive parsing of the classifier's free-text answer.
# Nothing in this module raises on bad input: unusable text degrades to defaults.

_EMPHASIS = r"[\s*_#]*"

# Tried in order; first hit wins.
_SEVERITY_PATTERNS = [
    re.compile(r"severity(?:\s+rating)?" + _EMPHASIS + r":?" + _EMPHASIS + r"(\d+)\s*/\s*10", re.I),
    re.compile(r"severity(?:\s+rating)?" + _EMPHASIS + r":?" + _EMPHASIS + r"(\d+)", re.I),
]

_CONDITION_PATTERN = re.compile(
    r"^[\s\d.)*_#-]*(?:patient\s+)?condition" + _EMPHASIS + r":" + _EMPHASIS + r"(.+)$",
    re.I | re.M,
)

_SPECIALIST_PATTERN = re.compile(
    r"specialist\s+recommendation[\s*_:\-]*([A-Za-z][A-Za-z ]*)", re.I
)

# Labels the model tends to use that are not in the controlled vocabulary.
SPECIALTY_ALIASES = {
    "general practitioner": "General Medicine",
    "general practice": "General Medicine",
    "family medicine": "General Medicine",
    "internal medicine": "General Medicine",
    "cardiologist": "Cardiology",
    "neurologist": "Neurology",
    "orthopedic": "Orthopedics",
    "orthopaedics": "Orthopedics",
    "pediatrician": "Pediatrics",
    "dermatologist": "Dermatology",
    "ophthalmologist": "Ophthalmology",
    "psychiatrist": "Psychiatry",
    "emergency": "Emergency Medicine",
}

_SPECIALTY_NAMES: List[Tuple[str, str]] = [(s.lower(), s) for s in SPECIALTIES] + list(
    SPECIALTY_ALIASES.items()
)

# Keyword fallback, evaluated top to bottom; case-insensitive substring match.
SPECIALTY_KEYWORDS: List[Tuple[str, List[str]]] = [
    ("Cardiology", ["heart", "chest pain", "cardiac"]),
    ("Neurology", ["brain", "headache", "neural", "seizure", "stroke"]),
    ("Orthopedics", ["bone", "fracture", "joint", "sprain"]),
    ("Pediatrics", ["child", "infant", "pediatric"]),
    ("Dermatology", ["skin", "rash", "acne"]),
    ("Ophthalmology", ["eye", "vision", "sight"]),
    ("Psychiatry", ["mental", "anxiety", "depression"]),
    ("Emergency Medicine", ["emergency", "urgent", "critical"]),
]

MAX_CONDITION_LENGTH = 255


def extract_severity(text: str) -> int:
    """
    Find the "Severity: X/10" marker and return X clamped to [0, 10].

    Returns 0 (unscored) when no marker is present.
    """
    if not text:
        return 0
    for pattern in _SEVERITY_PATTERNS:
        match = pattern.search(text)
        if match:
            return max(0, min(10, int(match.group(1))))
    return 0


def extract_condition(text: str) -> Optional[str]:
    if not text:
        return None
    match = _CONDITION_PATTERN.search(text)
    if not match:
        return None
    condition = match.group(1).strip().strip("*_").strip()
    return condition[:MAX_CONDITION_LENGTH] or None


def canonical_specialty(label: str) -> str:
    """
    Map a free-text specialty label onto the controlled vocabulary.

    The earliest vocabulary name or alias found anywhere in the label wins:
    "cardiology" -> "Cardiology", "Neurology and Psychiatry" -> "Neurology",
    "Consult a cardiologist" -> "Cardiology". Unknown labels come back trimmed.
    """
    cleaned = " ".join(label.split())
    lowered = cleaned.lower()
    hits = []
    for name, specialty in _SPECIALTY_NAMES:
        match = re.search(r"\b" + re.escape(name), lowered)
        if match:
            # Earliest start first; at the same start the longer name wins.
            hits.append((match.start(), -len(name), specialty))
    if hits:
        return min(hits)[2]
    return cleaned


def specialty_from_keywords(text: str) -> str:
    lowered = text.lower()
    for specialty, keywords in SPECIALTY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return specialty
    return DEFAULT_SPECIALTY


def extract_specialty(text: str) -> str:
    """
    Two-tier specialty extraction.

    1) an explicit "Specialist Recommendation: X" marker wins
    2) otherwise the first matching row of SPECIALTY_KEYWORDS, else General Medicine
    """
    if not text or not text.strip():
        return DEFAULT_SPECIALTY
    match = _SPECIALIST_PATTERN.search(text)
    if match and match.group(1).strip():
        return canonical_specialty(match.group(1))
    return specialty_from_keywords(text)


def parse_narrative(text: Optional[str]) -> ClassificationResult:
    narrative = text or ""
    return ClassificationResult(
        condition=extract_condition(narrative),
        severity=extract_severity(narrative),
        recommended_specialty=extract_specialty(narrative),
        narrative=narrative,
    )
