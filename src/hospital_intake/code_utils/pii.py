import re
from typing import Dict, Tuple

# Redaction of identifiers that a scanned document (and therefore the
# classifier's narrative) may contain. Applied to trace payloads, never to
# the stored narrative itself.

_PATTERNS = [
    # Email addresses
    (re.compile(r"\b[A-Z0-9._%+-]+@[A-Z0-9.-]+\.[A-Z]{2,}\b", re.I), "[REDACTED_EMAIL]"),
    # US-style phone numbers: (555) 123-4567, 555-123-4567, +1 555 123 4567
    (
        re.compile(r"(?:\+?1[-.\s]?)?\(?\b\d{3}\)?[-.\s]?\d{3}[-.\s]?\d{4}\b"),
        "[REDACTED_PHONE]",
    ),
    # Social security numbers
    (re.compile(r"\b\d{3}-\d{2}-\d{4}\b"), "[REDACTED_SSN]"),
    # Dates of birth in MM/DD/YYYY or MM-DD-YYYY
    (re.compile(r"\b\d{1,2}[-/]\d{1,2}[-/]\d{4}\b"), "[REDACTED_DATE]"),
    # Medical record numbers
    (re.compile(r"\bMRN[:#\s]*\w+\b", re.I), "[REDACTED_MRN]"),
    # Explicit patient identifiers
    (re.compile(r"\bPatient\s*ID[:#\s]*\w+\b", re.I), "[REDACTED_PATIENT_ID]"),
]


def redact(text: str) -> Tuple[str, Dict[str, int]]:
    """
    Redact obvious PII from free text.

    Returns the redacted text and a count of replacements per token.
    """
    redacted = text
    counts: Dict[str, int] = {}
    for pattern, repl in _PATTERNS:
        redacted, n = pattern.subn(repl, redacted)
        if n:
            counts[repl] = counts.get(repl, 0) + n
    return redacted.strip(), counts
