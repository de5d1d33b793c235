import functools
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from hospital_intake.code_utils.config import SETTINGS
from hospital_intake.code_utils.errors import StorageUnavailable
from hospital_intake.code_utils.logger import get_logger

logger = get_logger(__name__)

UTC = timezone.utc

# SQLite schema for the intake queue, doctor directory and emergency alerts.

SCHEMA_SQL = """
PRAGMA journal_mode=WAL;
PRAGMA foreign_keys=ON;

CREATE TABLE IF NOT EXISTS hospitals (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  address TEXT,
  city TEXT,
  state TEXT,
  pincode TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS doctors (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  name TEXT NOT NULL,
  specialty TEXT NOT NULL,
  hospital_id INTEGER NOT NULL,
  available INTEGER NOT NULL DEFAULT 1,
  FOREIGN KEY(hospital_id) REFERENCES hospitals(id)
);

CREATE TABLE IF NOT EXISTS patients (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  full_name TEXT NOT NULL,
  email TEXT,
  phone TEXT,
  address TEXT,
  city TEXT,
  state TEXT,
  pincode TEXT,
  date_of_birth TEXT,
  gender TEXT,
  created_at TEXT NOT NULL
);

-- Scheduled-care records, owned by the appointment feature; read here for alert snapshots.
CREATE TABLE IF NOT EXISTS appointments (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  patient_id INTEGER NOT NULL,
  hospital_id INTEGER NOT NULL,
  doctor_id INTEGER,
  symptoms TEXT,
  status TEXT NOT NULL, -- PENDING / CONFIRMED / CANCELLED / COMPLETED
  preferred_date TEXT,
  created_at TEXT NOT NULL,
  FOREIGN KEY(patient_id) REFERENCES patients(id),
  FOREIGN KEY(hospital_id) REFERENCES hospitals(id),
  FOREIGN KEY(doctor_id) REFERENCES doctors(id)
);

CREATE TABLE IF NOT EXISTS intake_entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  patient_id INTEGER NOT NULL,
  hospital_id INTEGER NOT NULL,
  doctor_id INTEGER,
  document_ref TEXT NOT NULL,
  submitted_at TEXT NOT NULL,
  processed_at TEXT,
  completed_at TEXT,
  condition TEXT,
  severity INTEGER NOT NULL DEFAULT 0,
  recommended_specialty TEXT,
  status TEXT NOT NULL, -- QUEUED / COMPLETED
  queue_position INTEGER,
  narrative TEXT,
  degraded INTEGER NOT NULL DEFAULT 0,
  FOREIGN KEY(patient_id) REFERENCES patients(id),
  FOREIGN KEY(hospital_id) REFERENCES hospitals(id),
  FOREIGN KEY(doctor_id) REFERENCES doctors(id) ON DELETE SET NULL
);

CREATE TABLE IF NOT EXISTS emergency_alerts (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  patient_id INTEGER NOT NULL,
  hospital_id INTEGER NOT NULL,
  status TEXT NOT NULL, -- PENDING / ACKNOWLEDGED / RESPONDED / CLOSED
  patient_info TEXT NOT NULL,
  medical_history TEXT NOT NULL,
  created_at TEXT NOT NULL,
  responded_at TEXT,
  notes TEXT,
  FOREIGN KEY(patient_id) REFERENCES patients(id),
  FOREIGN KEY(hospital_id) REFERENCES hospitals(id)
);

CREATE TABLE IF NOT EXISTS queue_versions (
  hospital_id INTEGER PRIMARY KEY,
  version INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS audit_log (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  action TEXT NOT NULL,
  entity TEXT NOT NULL,
  entity_id INTEGER,
  details TEXT,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_hospitals_state_name ON hospitals(state, name);
CREATE INDEX IF NOT EXISTS idx_doctors_hospital_specialty ON doctors(hospital_id, specialty);
CREATE INDEX IF NOT EXISTS idx_entries_hospital_status_pos ON intake_entries(hospital_id, status, queue_position);
CREATE INDEX IF NOT EXISTS idx_entries_doctor_status ON intake_entries(doctor_id, status);
CREATE INDEX IF NOT EXISTS idx_entries_patient ON intake_entries(patient_id, submitted_at);
CREATE INDEX IF NOT EXISTS idx_appts_patient ON appointments(patient_id, created_at);
CREATE INDEX IF NOT EXISTS idx_alerts_hospital_created ON emergency_alerts(hospital_id, created_at);
"""


@contextmanager
def connect(db_path: str, immediate: bool = False) -> Iterator[sqlite3.Connection]:
    """
    Open a connection, commit on success and roll back on any error.

    immediate=True takes the database write lock up front (BEGIN IMMEDIATE),
    so a read-then-write sequence cannot interleave with another writer.
    """
    conn = sqlite3.connect(db_path, timeout=5.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    try:
        if immediate:
            conn.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def init_db(db_path: str) -> None:
    directory = os.path.dirname(db_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with connect(db_path) as conn:
        conn.executescript(SCHEMA_SQL)


def iso_z(dt: datetime) -> str:
    return dt.astimezone(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def now_iso() -> str:
    return iso_z(datetime.now(tz=UTC))


def with_storage_retry(func):
    """
    Retry a storage operation on transient sqlite failures.

    Wraps methods of objects that expose a ``settings`` attribute. Each attempt
    re-runs the whole transaction; after the last attempt the sqlite error is
    surfaced as StorageUnavailable.
    """

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        settings = getattr(self, "settings", SETTINGS)
        attempts = max(1, settings.storage_retry_attempts)
        last_error: Optional[sqlite3.OperationalError] = None
        for attempt in range(1, attempts + 1):
            try:
                return func(self, *args, **kwargs)
            except sqlite3.OperationalError as exc:
                last_error = exc
                logger.warning(
                    "Storage error in %s (attempt %d/%d): %s",
                    func.__name__,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    time.sleep(settings.storage_retry_delay_seconds)
        raise StorageUnavailable(
            f"{func.__name__} failed after {attempts} attempts"
        ) from last_error

    return wrapper


def log_audit(
    conn: sqlite3.Connection,
    action: str,
    entity: str,
    entity_id: int | None,
    details: str | None,
) -> None:
    conn.execute(
        "INSERT INTO audit_log(action, entity, entity_id, details, created_at) VALUES (?,?,?,?,?)",
        (action, entity, entity_id, details, now_iso()),
    )


def list_audit(conn: sqlite3.Connection, entity: str, entity_id: int):
    return conn.execute(
        "SELECT * FROM audit_log WHERE entity=? AND entity_id=? ORDER BY id ASC",
        (entity, entity_id),
    ).fetchall()


# Directory helpers (hospitals, doctors, patients, appointments)


def create_hospital(
    conn: sqlite3.Connection,
    name: str,
    state: str | None,
    city: str | None = None,
    address: str | None = None,
    pincode: str | None = None,
) -> int:
    cur = conn.execute(
        "INSERT INTO hospitals(name, address, city, state, pincode, created_at) VALUES (?,?,?,?,?,?)",
        (name.strip(), address, city, state, pincode, now_iso()),
    )
    hid = int(cur.lastrowid)
    log_audit(conn, "CREATE", "hospital", hid, f"name={name} state={state}")
    return hid


def get_hospital(conn: sqlite3.Connection, hospital_id: int):
    return conn.execute("SELECT * FROM hospitals WHERE id=?", (hospital_id,)).fetchone()


def create_doctor(
    conn: sqlite3.Connection,
    name: str,
    specialty: str,
    hospital_id: int,
    available: bool = True,
) -> int:
    cur = conn.execute(
        "INSERT INTO doctors(name, specialty, hospital_id, available) VALUES (?,?,?,?)",
        (name.strip(), specialty, hospital_id, 1 if available else 0),
    )
    did = int(cur.lastrowid)
    log_audit(conn, "CREATE", "doctor", did, f"specialty={specialty} hospital={hospital_id}")
    return did


def get_doctor(conn: sqlite3.Connection, doctor_id: int):
    return conn.execute("SELECT * FROM doctors WHERE id=?", (doctor_id,)).fetchone()


def create_patient(
    conn: sqlite3.Connection,
    full_name: str,
    phone: str | None = None,
    email: str | None = None,
    state: str | None = None,
    city: str | None = None,
    address: str | None = None,
    pincode: str | None = None,
    date_of_birth: str | None = None,
    gender: str | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO patients(full_name, email, phone, address, city, state, pincode,
                                date_of_birth, gender, created_at)
           VALUES (?,?,?,?,?,?,?,?,?,?)""",
        (
            full_name.strip(),
            (email or "").strip() or None,
            (phone or "").strip() or None,
            address,
            city,
            state,
            pincode,
            date_of_birth,
            gender,
            now_iso(),
        ),
    )
    pid = int(cur.lastrowid)
    log_audit(conn, "CREATE", "patient", pid, f"name={full_name}")
    return pid


def get_patient(conn: sqlite3.Connection, patient_id: int):
    return conn.execute("SELECT * FROM patients WHERE id=?", (patient_id,)).fetchone()


def create_appointment(
    conn: sqlite3.Connection,
    patient_id: int,
    hospital_id: int,
    symptoms: str,
    status: str = "PENDING",
    doctor_id: int | None = None,
    preferred_date: str | None = None,
) -> int:
    cur = conn.execute(
        """INSERT INTO appointments(patient_id, hospital_id, doctor_id, symptoms, status,
                                    preferred_date, created_at)
           VALUES (?,?,?,?,?,?,?)""",
        (patient_id, hospital_id, doctor_id, symptoms, status, preferred_date, now_iso()),
    )
    appt_id = int(cur.lastrowid)
    log_audit(conn, "CREATE", "appointment", appt_id, f"status={status}")
    return appt_id


def recent_appointments(conn: sqlite3.Connection, patient_id: int, limit: int = 5):
    return conn.execute(
        """
        SELECT a.id, a.symptoms, a.status, a.created_at,
               d.name AS doctor_name, d.specialty AS doctor_specialty,
               h.name AS hospital_name
        FROM appointments a
        LEFT JOIN doctors d ON d.id = a.doctor_id
        LEFT JOIN hospitals h ON h.id = a.hospital_id
        WHERE a.patient_id = ?
        ORDER BY a.created_at DESC, a.id DESC
        LIMIT ?
        """,
        (patient_id, limit),
    ).fetchall()


# Intake entry helpers


def bump_queue_version(conn: sqlite3.Connection, hospital_id: int) -> None:
    """
    Advance the stored queue version of a hospital.

    Every write that changes a hospital's QUEUED set or its positions calls this
    inside the same transaction, so any process can tell a cached queue is stale.
    """
    conn.execute(
        """INSERT INTO queue_versions(hospital_id, version) VALUES (?, 1)
           ON CONFLICT(hospital_id) DO UPDATE SET version = version + 1""",
        (hospital_id,),
    )


def queue_version(conn: sqlite3.Connection, hospital_id: int) -> int:
    row = conn.execute(
        "SELECT version FROM queue_versions WHERE hospital_id=?", (hospital_id,)
    ).fetchone()
    return int(row["version"]) if row else 0


def insert_intake_entry(
    conn: sqlite3.Connection,
    patient_id: int,
    hospital_id: int,
    document_ref: str,
    submitted_at: str,
    severity: int,
    condition: str | None,
    narrative: str | None,
    recommended_specialty: str | None,
    doctor_id: int | None,
    processed_at: str | None,
    queue_position: int,
    degraded: bool,
) -> int:
    cur = conn.execute(
        """INSERT INTO intake_entries(
            patient_id, hospital_id, doctor_id, document_ref, submitted_at, processed_at,
            condition, severity, recommended_specialty, status, queue_position, narrative, degraded
        ) VALUES (?,?,?,?,?,?,?,?,?,'QUEUED',?,?,?)""",
        (
            patient_id,
            hospital_id,
            doctor_id,
            document_ref,
            submitted_at,
            processed_at,
            condition,
            severity,
            recommended_specialty,
            queue_position,
            narrative,
            1 if degraded else 0,
        ),
    )
    entry_id = int(cur.lastrowid)
    bump_queue_version(conn, hospital_id)
    log_audit(
        conn,
        "CREATE",
        "intake_entry",
        entry_id,
        f"status=QUEUED position={queue_position} severity={severity} degraded={degraded}",
    )
    return entry_id


def get_intake_entry(conn: sqlite3.Connection, entry_id: int):
    return conn.execute("SELECT * FROM intake_entries WHERE id=?", (entry_id,)).fetchone()


def count_queued(conn: sqlite3.Connection, hospital_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS n FROM intake_entries WHERE hospital_id=? AND status='QUEUED'",
        (hospital_id,),
    ).fetchone()
    return int(row["n"])


def queue_is_contiguous(conn: sqlite3.Connection, hospital_id: int) -> bool:
    """True when the QUEUED positions of a hospital are exactly 1..N."""
    row = conn.execute(
        """SELECT COUNT(*) AS n,
                  COUNT(DISTINCT queue_position) AS distinct_positions,
                  MIN(queue_position) AS lowest,
                  MAX(queue_position) AS highest
           FROM intake_entries WHERE hospital_id=? AND status='QUEUED'""",
        (hospital_id,),
    ).fetchone()
    n = int(row["n"])
    if n == 0:
        return True
    return (
        row["distinct_positions"] == n
        and row["lowest"] == 1
        and row["highest"] == n
    )


def list_queued(conn: sqlite3.Connection, hospital_id: int):
    """QUEUED entries of a hospital in persisted position order."""
    return conn.execute(
        """SELECT * FROM intake_entries
           WHERE hospital_id=? AND status='QUEUED'
           ORDER BY queue_position ASC, id ASC""",
        (hospital_id,),
    ).fetchall()


def mark_entry_completed(conn: sqlite3.Connection, entry_id: int) -> None:
    row = conn.execute("SELECT hospital_id FROM intake_entries WHERE id=?", (entry_id,)).fetchone()
    conn.execute(
        "UPDATE intake_entries SET status='COMPLETED', queue_position=NULL, completed_at=? WHERE id=?",
        (now_iso(), entry_id),
    )
    if row is not None:
        bump_queue_version(conn, row["hospital_id"])
    log_audit(conn, "UPDATE", "intake_entry", entry_id, "status=COMPLETED")


def shift_positions_after(conn: sqlite3.Connection, hospital_id: int, position: int) -> int:
    cur = conn.execute(
        """UPDATE intake_entries SET queue_position = queue_position - 1
           WHERE hospital_id=? AND status='QUEUED' AND queue_position > ?""",
        (hospital_id, position),
    )
    if cur.rowcount:
        bump_queue_version(conn, hospital_id)
    return cur.rowcount


def renumber_queue(conn: sqlite3.Connection, hospital_id: int) -> int:
    """
    Rewrite positions as 1..N by insertion order. Returns rows changed.
    """
    rows = conn.execute(
        "SELECT id, queue_position FROM intake_entries WHERE hospital_id=? AND status='QUEUED' ORDER BY id ASC",
        (hospital_id,),
    ).fetchall()
    changed = 0
    for rank, row in enumerate(rows, start=1):
        if row["queue_position"] != rank:
            conn.execute(
                "UPDATE intake_entries SET queue_position=? WHERE id=?", (rank, row["id"])
            )
            changed += 1
    if changed:
        bump_queue_version(conn, hospital_id)
        log_audit(conn, "REPAIR", "queue", hospital_id, f"renumbered={changed}")
    return changed


def list_patient_entries(conn: sqlite3.Connection, patient_id: int, limit: int | None = None):
    q = """SELECT e.*, h.name AS hospital_name
           FROM intake_entries e
           JOIN hospitals h ON h.id = e.hospital_id
           WHERE e.patient_id=?
           ORDER BY e.submitted_at DESC, e.id DESC"""
    params: list[Any] = [patient_id]
    if limit is not None:
        q += " LIMIT ?"
        params.append(limit)
    return conn.execute(q, params).fetchall()


# Emergency alert helpers


def insert_alert(
    conn: sqlite3.Connection,
    patient_id: int,
    hospital_id: int,
    patient_info_json: str,
    medical_history_json: str,
) -> int:
    cur = conn.execute(
        """INSERT INTO emergency_alerts(patient_id, hospital_id, status, patient_info,
                                        medical_history, created_at)
           VALUES (?,?,'PENDING',?,?,?)""",
        (patient_id, hospital_id, patient_info_json, medical_history_json, now_iso()),
    )
    alert_id = int(cur.lastrowid)
    log_audit(conn, "CREATE", "emergency_alert", alert_id, f"hospital={hospital_id}")
    return alert_id


def get_alert(conn: sqlite3.Connection, alert_id: int):
    return conn.execute(
        """SELECT a.*, h.name AS hospital_name FROM emergency_alerts a
           JOIN hospitals h ON h.id = a.hospital_id WHERE a.id=?""",
        (alert_id,),
    ).fetchone()


def list_alerts(conn: sqlite3.Connection, hospital_id: int):
    return conn.execute(
        """SELECT a.*, h.name AS hospital_name FROM emergency_alerts a
           JOIN hospitals h ON h.id = a.hospital_id
           WHERE a.hospital_id=? ORDER BY a.created_at DESC, a.id DESC""",
        (hospital_id,),
    ).fetchall()


def update_alert(
    conn: sqlite3.Connection,
    alert_id: int,
    status: str,
    responded_at: str | None,
    notes: str | None,
) -> None:
    conn.execute(
        """UPDATE emergency_alerts
           SET status=?, responded_at=COALESCE(responded_at, ?), notes=COALESCE(?, notes)
           WHERE id=?""",
        (status, responded_at, notes, alert_id),
    )
    log_audit(conn, "UPDATE", "emergency_alert", alert_id, f"status={status}")


def delete_hospital_records(conn: sqlite3.Connection, hospital_id: int) -> Dict[str, int]:
    """Hard-delete the patient-facing records of a hospital and free its doctors."""
    summary: Dict[str, int] = {}
    summary["appointments"] = conn.execute(
        "DELETE FROM appointments WHERE hospital_id=?", (hospital_id,)
    ).rowcount
    summary["intake_entries"] = conn.execute(
        "DELETE FROM intake_entries WHERE hospital_id=?", (hospital_id,)
    ).rowcount
    summary["emergency_alerts"] = conn.execute(
        "DELETE FROM emergency_alerts WHERE hospital_id=?", (hospital_id,)
    ).rowcount
    summary["doctors"] = conn.execute(
        "UPDATE doctors SET available=1 WHERE hospital_id=?", (hospital_id,)
    ).rowcount
    bump_queue_version(conn, hospital_id)
    log_audit(conn, "DELETE", "hospital_data", hospital_id, str(summary))
    return summary


def delete_patient_entries(conn: sqlite3.Connection, patient_id: int, hospital_id: int) -> int:
    count = conn.execute(
        "DELETE FROM intake_entries WHERE patient_id=? AND hospital_id=?",
        (patient_id, hospital_id),
    ).rowcount
    if count:
        bump_queue_version(conn, hospital_id)
    log_audit(conn, "DELETE", "intake_entry", None, f"patient={patient_id} hospital={hospital_id} count={count}")
    return count


def hospitals_with_patient_entries(conn: sqlite3.Connection, patient_id: int) -> List[int]:
    rows = conn.execute(
        "SELECT DISTINCT hospital_id FROM intake_entries WHERE patient_id=? ORDER BY hospital_id",
        (patient_id,),
    ).fetchall()
    return [int(r["hospital_id"]) for r in rows]
