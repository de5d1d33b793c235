import pytest

from hospital_intake.code_utils.db import connect, create_appointment, create_hospital
from hospital_intake.code_utils.errors import (
    AlertNotFound,
    InvalidInput,
    MissingLocation,
    NoHospitalInRegion,
    RegionMismatch,
)
from hospital_intake.emergency_router import EmergencyAlertRouter

from conftest import queued_positions


@pytest.fixture
def router(settings, directory):
    return EmergencyAlertRouter(settings)


def _alert_count(db_path):
    with connect(db_path) as conn:
        return conn.execute("SELECT COUNT(*) AS n FROM emergency_alerts").fetchone()["n"]


def test_alert_to_named_hospital_in_region(router, directory):
    alert = router.send_alert(directory.alice, directory.beta)

    assert alert.status == "PENDING"
    assert alert.hospital_id == directory.beta
    assert alert.hospital_name == "Beta Clinic"
    assert alert.patient_info == {
        "name": "Alice Moreno",
        "contact": "555-0100",
        "address": "10 Pine St",
        "city": "Los Angeles",
        "state": "California",
        "pincode": "90002",
        "dateOfBirth": "1985-04-12",
        "gender": "female",
    }
    assert alert.medical_history == {"intake_entries": [], "appointments": []}
    assert alert.responded_at is None


def test_region_match_ignores_case_and_whitespace(router, directory):
    alert = router.send_alert(directory.bob, directory.alpha)
    assert alert.hospital_id == directory.alpha
    assert alert.patient_info["contact"] == "bob@example.com"


def test_region_mismatch_creates_nothing(router, settings, directory):
    with pytest.raises(RegionMismatch):
        router.send_alert(directory.alice, directory.texas)
    assert _alert_count(settings.db_path) == 0


def test_missing_location(router, settings, directory):
    with pytest.raises(MissingLocation):
        router.send_alert(directory.dan)
    assert _alert_count(settings.db_path) == 0


def test_no_hospital_in_region(router, directory):
    with pytest.raises(NoHospitalInRegion):
        router.send_alert(directory.erin)


def test_unknown_patient_or_hospital(router, directory):
    with pytest.raises(InvalidInput):
        router.send_alert(9999)
    with pytest.raises(InvalidInput):
        router.send_alert(directory.alice, 9999)


def test_default_hospital_is_first_by_name(router, settings, directory):
    with connect(settings.db_path) as conn:
        create_hospital(conn, "Aardvark Medical", "CALIFORNIA", "Fresno")

    alert = router.send_alert(directory.alice)

    assert alert.hospital_name == "Aardvark Medical"


def test_history_snapshot_is_capped_and_frozen(router, settings, directory, queue, make_entry):
    for severity in range(6):
        queue.enqueue(directory.alpha, make_entry(directory.alice, directory.alpha, severity=severity))
    with connect(settings.db_path) as conn:
        for i in range(6):
            create_appointment(conn, directory.alice, directory.alpha, f"symptom {i}", doctor_id=directory.general)

    alert = router.send_alert(directory.alice, directory.alpha)

    entries = alert.medical_history["intake_entries"]
    appointments = alert.medical_history["appointments"]
    assert len(entries) == 5
    assert len(appointments) == 5
    assert entries[0]["severity"] == 5
    assert appointments[0]["symptoms"] == "symptom 5"
    assert appointments[0]["doctor"] == "Dr. John Davis"

    # Later changes to the source records do not reach the alert.
    queue.enqueue(directory.alpha, make_entry(directory.alice, directory.alpha, severity=10))
    with connect(settings.db_path) as conn:
        conn.execute("UPDATE patients SET phone='555-9999' WHERE id=?", (directory.alice,))
    stored = router.list_alerts(directory.alpha)[0]
    assert stored.medical_history == alert.medical_history
    assert stored.patient_info["contact"] == "555-0100"


def test_alert_does_not_touch_the_queue(router, settings, directory, queue, make_entry):
    queue.enqueue(directory.alpha, make_entry(directory.bob, directory.alpha))
    before = queued_positions(settings.db_path, directory.alpha)

    router.send_alert(directory.alice, directory.alpha)

    assert queued_positions(settings.db_path, directory.alpha) == before


def test_list_alerts_is_per_hospital_newest_first(router, directory):
    first = router.send_alert(directory.alice, directory.alpha)
    second = router.send_alert(directory.bob, directory.alpha)
    router.send_alert(directory.alice, directory.beta)

    assert [a.id for a in router.list_alerts(directory.alpha)] == [second.id, first.id]


def test_status_moves_forward_only(router, directory):
    alert = router.send_alert(directory.alice, directory.alpha)

    acked = router.update_alert_status(alert.id, directory.alpha, "acknowledged")
    assert acked.status == "ACKNOWLEDGED"
    assert acked.responded_at is None

    responded = router.update_alert_status(alert.id, directory.alpha, "RESPONDED", notes="Ambulance dispatched")
    assert responded.responded_at is not None
    assert responded.notes == "Ambulance dispatched"

    with pytest.raises(InvalidInput):
        router.update_alert_status(alert.id, directory.alpha, "ACKNOWLEDGED")
    with pytest.raises(InvalidInput):
        router.update_alert_status(alert.id, directory.alpha, "RESPONDED")

    closed = router.update_alert_status(alert.id, directory.alpha, "CLOSED")
    assert closed.status == "CLOSED"
    assert closed.responded_at == responded.responded_at
    assert closed.notes == "Ambulance dispatched"


def test_skipping_ahead_stamps_responded_at(router, directory):
    alert = router.send_alert(directory.alice, directory.alpha)
    closed = router.update_alert_status(alert.id, directory.alpha, "CLOSED")
    assert closed.responded_at is not None


def test_status_update_checks_ownership_and_existence(router, directory):
    alert = router.send_alert(directory.alice, directory.alpha)

    with pytest.raises(InvalidInput):
        router.update_alert_status(alert.id, directory.beta, "ACKNOWLEDGED")
    with pytest.raises(InvalidInput):
        router.update_alert_status(alert.id, directory.alpha, "ESCALATED")
    with pytest.raises(AlertNotFound):
        router.update_alert_status(9999, directory.alpha, "ACKNOWLEDGED")
