import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

# Lifecycle of a queue unit:
# - QUEUED: waiting at the hospital, holds a 1-based queue_position
# - COMPLETED: seen by staff, queue_position cleared, row retained
EntryStatus = Literal["QUEUED", "COMPLETED"]

# Emergency alerts only move forward through these states.
AlertStatus = Literal["PENDING", "ACKNOWLEDGED", "RESPONDED", "CLOSED"]
ALERT_STATUS_ORDER: List[str] = ["PENDING", "ACKNOWLEDGED", "RESPONDED", "CLOSED"]

# Controlled vocabulary used both by the narrative parser and by doctor rows.
SPECIALTIES: List[str] = [
    "Cardiology",
    "Neurology",
    "Orthopedics",
    "Pediatrics",
    "Dermatology",
    "Ophthalmology",
    "Psychiatry",
    "Emergency Medicine",
    "General Medicine",
]
DEFAULT_SPECIALTY = "General Medicine"


@dataclass
class ClassificationResult:
    """
    Structured view of one AI narrative.

    The parser always produces one of these, even from empty or garbled text,
    so severity defaults to 0 and the other fields to None.
    """

    condition: Optional[str]  # Short condition label ("Patient Condition: ...").
    severity: int  # 0..10, 0 means unscored.
    recommended_specialty: Optional[str]  # Label from SPECIALTIES, or verbatim marker text.
    narrative: str  # Full free-text answer from the classifier.


@dataclass
class Hospital:
    id: int
    name: str
    state: Optional[str]
    city: Optional[str] = None
    address: Optional[str] = None
    pincode: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Hospital":
        return cls(
            id=row["id"],
            name=row["name"],
            state=row["state"],
            city=row["city"],
            address=row["address"],
            pincode=row["pincode"],
        )


@dataclass
class Doctor:
    id: int
    name: str
    specialty: str
    hospital_id: int
    available: bool = True
    load: int = 0  # QUEUED entries currently assigned (not persisted).

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Doctor":
        keys = row.keys()
        return cls(
            id=row["id"],
            name=row["name"],
            specialty=row["specialty"],
            hospital_id=row["hospital_id"],
            available=bool(row["available"]),
            load=int(row["load"]) if "load" in keys else 0,
        )


@dataclass
class Patient:
    id: int
    full_name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    pincode: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Patient":
        return cls(
            id=row["id"],
            full_name=row["full_name"],
            email=row["email"],
            phone=row["phone"],
            address=row["address"],
            city=row["city"],
            state=row["state"],
            pincode=row["pincode"],
            date_of_birth=row["date_of_birth"],
            gender=row["gender"],
        )


@dataclass
class IntakeEntry:
    """
    One patient's submission at one hospital.

    queue_position is only meaningful while status == "QUEUED".
    """

    patient_id: int
    hospital_id: int
    document_ref: str
    submitted_at: str
    status: EntryStatus = "QUEUED"
    severity: int = 0
    condition: Optional[str] = None
    narrative: Optional[str] = None
    recommended_specialty: Optional[str] = None
    doctor_id: Optional[int] = None
    processed_at: Optional[str] = None
    completed_at: Optional[str] = None
    queue_position: Optional[int] = None
    degraded: bool = False  # True when classification failed and defaults were used.
    id: Optional[int] = None
    hospital_name: Optional[str] = None  # Filled by joined history queries only.

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "IntakeEntry":
        keys = row.keys()
        return cls(
            id=row["id"],
            patient_id=row["patient_id"],
            hospital_id=row["hospital_id"],
            document_ref=row["document_ref"],
            submitted_at=row["submitted_at"],
            status=row["status"],
            severity=int(row["severity"] or 0),
            condition=row["condition"],
            narrative=row["narrative"],
            recommended_specialty=row["recommended_specialty"],
            doctor_id=row["doctor_id"],
            processed_at=row["processed_at"],
            completed_at=row["completed_at"],
            queue_position=row["queue_position"],
            degraded=bool(row["degraded"]),
            hospital_name=row["hospital_name"] if "hospital_name" in keys else None,
        )


@dataclass
class EmergencyAlert:
    """
    Out-of-band alert sent by a patient to a hospital in their region.

    patient_info and medical_history are copies taken at creation time and are
    never rewritten afterwards.
    """

    id: int
    patient_id: int
    hospital_id: int
    status: AlertStatus
    patient_info: Dict[str, Any]
    medical_history: Dict[str, Any]
    created_at: str
    responded_at: Optional[str] = None
    notes: Optional[str] = None
    hospital_name: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EmergencyAlert":
        keys = row.keys()
        return cls(
            id=row["id"],
            patient_id=row["patient_id"],
            hospital_id=row["hospital_id"],
            status=row["status"],
            patient_info=json.loads(row["patient_info"]),
            medical_history=json.loads(row["medical_history"]),
            created_at=row["created_at"],
            responded_at=row["responded_at"],
            notes=row["notes"],
            hospital_name=row["hospital_name"] if "hospital_name" in keys else None,
        )


@dataclass
class IntakeReceipt:
    """
    What a patient sees after submitting a document.

    degraded=True means the AI analysis was unavailable; the entry is still
    queued and warning explains what happened.
    """

    entry: IntakeEntry
    hospital_name: str
    doctor: Optional[Doctor] = None
    degraded: bool = False
    warning: Optional[str] = None
    traces: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def position(self) -> Optional[int]:
        return self.entry.queue_position

    @property
    def severity(self) -> int:
        return self.entry.severity

    @property
    def narrative(self) -> Optional[str]:
        return self.entry.narrative
