import sqlite3
from typing import List, Optional

from hospital_intake.code_utils.db import log_audit
from hospital_intake.code_utils.models import Doctor

# Load = QUEUED intake entries assigned to a doctor at the doctor's hospital.
_LOAD_SQL = """
SELECT d.*, COUNT(e.id) AS load
FROM doctors d
LEFT JOIN intake_entries e
  ON e.doctor_id = d.id
 AND e.hospital_id = d.hospital_id
 AND e.status = 'QUEUED'
WHERE d.hospital_id = ?
"""


def doctor_load(conn: sqlite3.Connection, doctor_id: int) -> int:
    row = conn.execute(
        """SELECT COUNT(e.id) AS n
           FROM doctors d
           JOIN intake_entries e ON e.doctor_id = d.id AND e.hospital_id = d.hospital_id
           WHERE d.id = ? AND e.status = 'QUEUED'""",
        (doctor_id,),
    ).fetchone()
    return int(row["n"])


def select_doctor(
    conn: sqlite3.Connection,
    hospital_id: int,
    specialty: Optional[str],
    load_threshold: int,
) -> Optional[Doctor]:
    """
    Least-loaded doctor of a specialty at a hospital.

    Policy:
      - candidates: doctors at the hospital whose specialty label matches exactly
        (SQLite's default BINARY collation keeps the match case-sensitive)
      - a candidate whose load has reached load_threshold is unavailable
      - lowest load wins; ties keep store order

    Returns None when the specialty is missing, unknown at this hospital or
    every candidate is at capacity. Best effort only: nothing is reserved, so
    two concurrent intakes can pick the same doctor.
    """
    if not specialty:
        return None
    q = _LOAD_SQL + " AND d.specialty = ? GROUP BY d.id HAVING load < ? ORDER BY load ASC, d.id ASC"
    row = conn.execute(q, (hospital_id, specialty, load_threshold)).fetchone()
    return Doctor.from_row(row) if row else None


def doctor_roster(
    conn: sqlite3.Connection, hospital_id: int, load_threshold: int
) -> List[Doctor]:
    """
    All doctors of a hospital with current load and derived availability,
    busiest first (the staff dashboard view).
    """
    rows = conn.execute(_LOAD_SQL + " GROUP BY d.id ORDER BY d.specialty ASC", (hospital_id,)).fetchall()
    roster = []
    for row in rows:
        doctor = Doctor.from_row(row)
        doctor.available = doctor.load < load_threshold
        roster.append(doctor)
    roster.sort(key=lambda d: d.load, reverse=True)
    return roster


def refresh_availability(
    conn: sqlite3.Connection, doctor_id: int, load_threshold: int
) -> bool:
    """
    Recompute the persisted availability flag of one doctor from current load.

    Returns the new flag. The flag is a display signal; select_doctor always
    recomputes load itself.
    """
    available = doctor_load(conn, doctor_id) < load_threshold
    cur = conn.execute(
        "UPDATE doctors SET available=? WHERE id=? AND available<>?",
        (1 if available else 0, doctor_id, 1 if available else 0),
    )
    if cur.rowcount:
        log_audit(conn, "UPDATE", "doctor", doctor_id, f"available={available}")
    return available
