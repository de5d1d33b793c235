import json
import sqlite3
from typing import Any, Dict, List, Optional

from hospital_intake.code_utils.config import SETTINGS, Settings
from hospital_intake.code_utils.db import (
    connect,
    get_alert,
    get_hospital,
    get_patient,
    init_db,
    insert_alert,
    list_alerts,
    list_patient_entries,
    now_iso,
    recent_appointments,
    update_alert,
    with_storage_retry,
)
from hospital_intake.code_utils.errors import (
    AlertNotFound,
    InvalidInput,
    MissingLocation,
    NoHospitalInRegion,
    RegionMismatch,
)
from hospital_intake.code_utils.logger import get_logger
from hospital_intake.code_utils.models import ALERT_STATUS_ORDER, EmergencyAlert

logger = get_logger(__name__)

# Reaching any of these stamps responded_at.
_RESPONDED_STATES = {"RESPONDED", "CLOSED"}


def normalize_region(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def first_hospital_in_region(conn: sqlite3.Connection, region: str):
    """Alphabetically first hospital whose state matches region (trimmed, case-insensitive)."""
    return conn.execute(
        "SELECT * FROM hospitals WHERE lower(trim(state)) = ? ORDER BY name ASC, id ASC LIMIT 1",
        (region,),
    ).fetchone()


def patient_snapshot(patient: sqlite3.Row) -> Dict[str, Any]:
    return {
        "name": patient["full_name"],
        "contact": patient["phone"] or patient["email"],
        "address": patient["address"],
        "city": patient["city"],
        "state": patient["state"],
        "pincode": patient["pincode"],
        "dateOfBirth": patient["date_of_birth"],
        "gender": patient["gender"],
    }


def history_snapshot(conn: sqlite3.Connection, patient_id: int, size: int) -> Dict[str, Any]:
    """Copy of the newest intake entries and appointments, frozen into the alert."""
    entries = [
        {
            "hospital": r["hospital_name"],
            "condition": r["condition"],
            "analysis": r["narrative"],
            "severity": r["severity"],
            "status": r["status"],
            "date": r["submitted_at"],
        }
        for r in list_patient_entries(conn, patient_id, size)
    ]
    appointments = [
        {
            "symptoms": r["symptoms"],
            "status": r["status"],
            "date": r["created_at"],
            "doctor": r["doctor_name"],
            "specialty": r["doctor_specialty"],
            "hospital": r["hospital_name"],
        }
        for r in recent_appointments(conn, patient_id, size)
    ]
    return {"intake_entries": entries, "appointments": appointments}


class EmergencyAlertRouter:
    """
    Out-of-band path from a patient to a hospital in the patient's region.

    Never reads or writes the intake queue. Alerts carry a snapshot of the
    patient's profile and recent history taken at creation time.
    """

    def __init__(self, settings: Settings = SETTINGS) -> None:
        self.settings = settings
        init_db(settings.db_path)

    @with_storage_retry
    def send_alert(self, patient_id: int, hospital_id: int | None = None) -> EmergencyAlert:
        """
        Create a PENDING alert.

        Raises MissingLocation when the patient has no state, RegionMismatch when
        the named hospital is in another state (nothing is written) and
        NoHospitalInRegion when no hospital was named and none exists locally.
        """
        with connect(self.settings.db_path, immediate=True) as conn:
            patient = get_patient(conn, patient_id)
            if patient is None:
                raise InvalidInput(f"Patient {patient_id} not found")
            region = normalize_region(patient["state"])
            if not region:
                raise MissingLocation(f"Patient {patient_id} has no state on file")

            if hospital_id is not None:
                hospital = get_hospital(conn, hospital_id)
                if hospital is None:
                    raise InvalidInput(f"Hospital {hospital_id} not found")
                if normalize_region(hospital["state"]) != region:
                    logger.warning(
                        "Rejected alert from patient %s to hospital %s outside region %r",
                        patient_id,
                        hospital_id,
                        patient["state"],
                    )
                    raise RegionMismatch(
                        f"Hospital {hospital_id} is in {hospital['state']!r}, patient is in {patient['state']!r}"
                    )
            else:
                hospital = first_hospital_in_region(conn, region)
                if hospital is None:
                    raise NoHospitalInRegion(f"No hospital in state {patient['state']!r}")

            alert_id = insert_alert(
                conn,
                patient_id=patient_id,
                hospital_id=int(hospital["id"]),
                patient_info_json=json.dumps(patient_snapshot(patient), ensure_ascii=False),
                medical_history_json=json.dumps(
                    history_snapshot(conn, patient_id, self.settings.history_snapshot_size),
                    ensure_ascii=False,
                ),
            )
            alert = EmergencyAlert.from_row(get_alert(conn, alert_id))

        logger.info(
            "Emergency alert %s sent by patient %s to hospital %s (%s)",
            alert.id,
            patient_id,
            alert.hospital_id,
            alert.hospital_name,
        )
        return alert

    @with_storage_retry
    def list_alerts(self, hospital_id: int) -> List[EmergencyAlert]:
        with connect(self.settings.db_path) as conn:
            return [EmergencyAlert.from_row(r) for r in list_alerts(conn, hospital_id)]

    @with_storage_retry
    def update_alert_status(
        self,
        alert_id: int,
        hospital_id: int,
        status: str,
        notes: str | None = None,
    ) -> EmergencyAlert:
        """Move an alert forward in its lifecycle on behalf of the owning hospital."""
        status = (status or "").strip().upper()
        if status not in ALERT_STATUS_ORDER:
            raise InvalidInput(f"Unknown alert status {status!r}")

        with connect(self.settings.db_path, immediate=True) as conn:
            row = get_alert(conn, alert_id)
            if row is None:
                raise AlertNotFound(f"Emergency alert {alert_id} not found")
            if int(row["hospital_id"]) != hospital_id:
                raise InvalidInput(f"Emergency alert {alert_id} belongs to another hospital")
            current = row["status"]
            if ALERT_STATUS_ORDER.index(status) <= ALERT_STATUS_ORDER.index(current):
                raise InvalidInput(f"Cannot move alert from {current} to {status}")
            responded_at = now_iso() if status in _RESPONDED_STATES else None
            update_alert(conn, alert_id, status, responded_at, notes)
            alert = EmergencyAlert.from_row(get_alert(conn, alert_id))

        logger.info("Emergency alert %s moved %s -> %s", alert_id, current, status)
        return alert
