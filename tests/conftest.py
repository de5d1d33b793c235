"""
Shared fixtures for the intake engine test suite.

- every test gets its own SQLite file under tmp_path
- `directory` seeds hospitals in two regions, doctors and patients
- classifiers are fakes; no test talks to the network
"""
import time
from dataclasses import replace
from types import SimpleNamespace

import pytest

from hospital_intake.code_utils.config import SETTINGS
from hospital_intake.code_utils.db import (
    connect,
    create_doctor,
    create_hospital,
    create_patient,
    init_db,
    now_iso,
)
from hospital_intake.code_utils.errors import ClassificationUnavailable
from hospital_intake.code_utils.models import IntakeEntry
from hospital_intake.code_utils.narrative_parser import parse_narrative
from hospital_intake.code_utils.queue_manager import PriorityQueueManager
from hospital_intake.intake_engine import IntakeEngine

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64

CARDIO_NARRATIVE = """1. Patient Condition: Stable angina
2. Severity Rating: 7/10
3. Priority Level: High
6. Specialist Recommendation: Cardiology"""


def narrative(severity: int, specialty: str = "Cardiology", condition: str = "Observed condition") -> str:
    return (
        f"Patient Condition: {condition}\n"
        f"Severity: {severity}/10\n"
        f"Specialist Recommendation: {specialty}"
    )


class FakeClassifier:
    """Parses canned narratives, one per call (the last one repeats)."""

    def __init__(self, *narratives: str) -> None:
        self.narratives = list(narratives) or [CARDIO_NARRATIVE]
        self.calls = 0

    def classify(self, document: bytes):
        text = self.narratives[min(self.calls, len(self.narratives) - 1)]
        self.calls += 1
        return parse_narrative(text)


class FailingClassifier:
    def __init__(self, exc: Exception | None = None) -> None:
        self.exc = exc or ClassificationUnavailable("Classifier returned HTTP 503")
        self.calls = 0

    def classify(self, document: bytes):
        self.calls += 1
        raise self.exc


class SlowClassifier:
    def __init__(self, delay: float) -> None:
        self.delay = delay

    def classify(self, document: bytes):
        time.sleep(self.delay)
        return parse_narrative(CARDIO_NARRATIVE)


@pytest.fixture
def settings(tmp_path):
    return replace(
        SETTINGS,
        db_path=str(tmp_path / "intake.db"),
        openai_api_key="test-key",
        classifier_timeout_seconds=5.0,
        doctor_load_threshold=5,
        queue_cache_ttl_seconds=30.0,
        storage_retry_attempts=2,
        storage_retry_delay_seconds=0.0,
        history_snapshot_size=5,
    )


@pytest.fixture
def directory(settings):
    """Hospitals in California and Texas, a few doctors, and patients."""
    init_db(settings.db_path)
    with connect(settings.db_path) as conn:
        alpha = create_hospital(conn, "Alpha Hospital", "California", "Los Angeles", "1 Main St", "90001")
        beta = create_hospital(conn, "Beta Clinic", "California", "Sacramento", "2 Oak Ave", "95814")
        texas = create_hospital(conn, "Lone Star Medical", "Texas", "Houston", "3 Elm Rd", "77002")

        cardio_a = create_doctor(conn, "Dr. Emily Chen", "Cardiology", alpha)
        cardio_b = create_doctor(conn, "Dr. James Wilson", "Cardiology", alpha)
        neuro = create_doctor(conn, "Dr. Sarah Johnson", "Neurology", alpha)
        general = create_doctor(conn, "Dr. John Davis", "General Medicine", alpha)
        beta_cardio = create_doctor(conn, "Dr. Kevin Miller", "Cardiology", beta)
        texas_cardio = create_doctor(conn, "Dr. Lisa Park", "Cardiology", texas)

        alice = create_patient(
            conn, "Alice Moreno", phone="555-0100", email="alice@example.com",
            state="California", city="Los Angeles", address="10 Pine St", pincode="90002",
            date_of_birth="1985-04-12", gender="female",
        )
        bob = create_patient(
            conn, "Bob Tran", email="bob@example.com", state="  california ", city="Sacramento",
        )
        carol = create_patient(conn, "Carol Diaz", phone="555-0300", state="Texas", city="Austin")
        dan = create_patient(conn, "Dan Roe", phone="555-0400", state=None)
        erin = create_patient(conn, "Erin Holt", phone="555-0500", state="Alaska")

    return SimpleNamespace(
        alpha=alpha,
        beta=beta,
        texas=texas,
        cardio_a=cardio_a,
        cardio_b=cardio_b,
        neuro=neuro,
        general=general,
        beta_cardio=beta_cardio,
        texas_cardio=texas_cardio,
        alice=alice,
        bob=bob,
        carol=carol,
        dan=dan,
        erin=erin,
    )


@pytest.fixture
def queue(settings, directory):
    return PriorityQueueManager(settings)


@pytest.fixture
def make_entry():
    def _make(patient_id: int, hospital_id: int, severity: int = 0, doctor_id: int | None = None) -> IntakeEntry:
        return IntakeEntry(
            patient_id=patient_id,
            hospital_id=hospital_id,
            document_ref="sha256:test",
            submitted_at=now_iso(),
            severity=severity,
            doctor_id=doctor_id,
        )

    return _make


@pytest.fixture
def make_engine(settings, directory, queue):
    def _make(classifier=None, **overrides) -> IntakeEngine:
        engine_settings = replace(settings, **overrides) if overrides else settings
        return IntakeEngine(
            settings=engine_settings,
            classifier=classifier or FakeClassifier(),
            queue=queue,
        )

    return _make


def queued_positions(db_path: str, hospital_id: int):
    with connect(db_path) as conn:
        rows = conn.execute(
            "SELECT queue_position FROM intake_entries WHERE hospital_id=? AND status='QUEUED' ORDER BY queue_position",
            (hospital_id,),
        ).fetchall()
    return [r["queue_position"] for r in rows]
