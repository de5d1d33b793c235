from __future__ import annotations

import hashlib
import json
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from hospital_intake.code_utils.classifier import ClassifierGateway, validate_document
from hospital_intake.code_utils.config import SETTINGS, Settings
from hospital_intake.code_utils.db import (
    connect,
    get_hospital,
    get_patient,
    now_iso,
    with_storage_retry,
)
from hospital_intake.code_utils.doctor_policy import doctor_roster, select_doctor
from hospital_intake.code_utils.errors import ClassificationUnavailable, InvalidInput
from hospital_intake.code_utils.logger import get_logger
from hospital_intake.code_utils.models import (
    ClassificationResult,
    Doctor,
    IntakeEntry,
    IntakeReceipt,
)
from hospital_intake.code_utils.pii import redact
from hospital_intake.code_utils.queue_manager import PriorityQueueManager

logger = get_logger(__name__)

# Finite states of one submission.
IntakeStatus = Literal["INIT", "CLASSIFY", "ASSIGN", "ENQUEUE", "DONE", "DEGRADED"]

ANALYSIS_UNAVAILABLE = "AI analysis unavailable; you have been queued without a severity score."


class IntakeState(BaseModel):
    """
    State container for one document submission.

    Keeps the step sequence and its traces together so the receipt can carry
    an audit-friendly record of what happened, including the degraded path.
    """

    # Inputs
    patient_id: int
    hospital_id: int
    document_size: int
    mime_type: Optional[str] = None

    # Outputs
    classification: Optional[Dict[str, Any]] = None
    doctor_id: Optional[int] = None
    position: Optional[int] = None

    # Control
    status: IntakeStatus = "INIT"
    degraded: bool = False

    # Telemetry / audit
    errors: List[str] = Field(default_factory=list)
    traces: List[Dict[str, Any]] = Field(default_factory=list)
    started_at_ms: int = Field(default_factory=lambda: int(time.time() * 1000))

    def add_trace(self, kind: str, payload: Dict[str, Any]) -> None:
        """Append a trace event (append-only audit trail)."""
        self.traces.append(
            {
                "ts_ms": int(time.time() * 1000),
                "status": self.status,
                "kind": kind,
                "payload": payload,
            }
        )


def content_digest(document: bytes) -> str:
    """Default document reference: a content address for the uploaded bytes."""
    return "sha256:" + hashlib.sha256(document).hexdigest()


def start_classification(classifier: Any, document: bytes) -> Future:
    """
    Run classifier.classify(document) on its own daemon thread.

    One thread per submission: the caller's timeout starts with the call itself,
    never with time spent waiting for a shared worker. A call that outlives the
    timeout is abandoned and finishes in the background.
    """
    future: Future = Future()

    def run() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            result = classifier.classify(document)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    threading.Thread(target=run, name="classifier", daemon=True).start()
    return future


class IntakeEngine:
    """
    End-to-end "submit document -> queue entry" pipeline.

    - validates hospital, patient and document before any external call
    - classifies under a hard timeout
    - falls back to a degraded intake when classification or doctor matching fails
    - always enqueues a valid submission

    Only InvalidInput (bad hospital/patient/document) and StorageUnavailable
    (the queue itself could not be written) fail a submission.
    """

    def __init__(
        self,
        settings: Settings = SETTINGS,
        classifier: Any = None,
        queue: PriorityQueueManager | None = None,
        store_document: Callable[[bytes], str] | None = None,
    ) -> None:
        self.settings = settings
        self.classifier = classifier or ClassifierGateway(settings)
        self.queue = queue or PriorityQueueManager(settings)
        self.store_document = store_document or content_digest

    @with_storage_retry
    def _load_target(self, patient_id: int, hospital_id: int):
        """Return the hospital row; InvalidInput if hospital or patient is unknown."""
        with connect(self.settings.db_path) as conn:
            hospital = get_hospital(conn, hospital_id)
            patient = get_patient(conn, patient_id)
        if hospital is None:
            raise InvalidInput(f"Hospital {hospital_id} not found")
        if patient is None:
            raise InvalidInput(f"Patient {patient_id} not found")
        return hospital

    def _classify(self, state: IntakeState, document: bytes) -> Optional[ClassificationResult]:
        """Run the classifier with a timeout. Returns None on any failure."""
        state.status = "CLASSIFY"
        state.add_trace("step_start", {"step": "classify", "mime_type": state.mime_type})
        timeout = self.settings.classifier_timeout_seconds
        future = start_classification(self.classifier, document)
        try:
            result = future.result(timeout=timeout)
        except FutureTimeout:
            reason = f"classification exceeded {timeout}s"
        except ClassificationUnavailable as exc:
            reason = exc.detail
        except Exception as exc:
            logger.exception("Classifier failed unexpectedly for patient %s", state.patient_id)
            reason = f"{type(exc).__name__}: {exc}"
        else:
            condition, redactions = redact(result.condition) if result.condition else (None, {})
            state.classification = safe_compact(
                {
                    "condition": condition,
                    "redactions": redactions,
                    "severity": result.severity,
                    "recommended_specialty": result.recommended_specialty,
                }
            )
            state.add_trace("classified", state.classification)
            return result

        state.degraded = True
        state.errors.append(reason)
        state.add_trace("classification_unavailable", {"reason": reason})
        logger.warning(
            "Degraded intake for patient %s at hospital %s: %s",
            state.patient_id,
            state.hospital_id,
            reason,
        )
        return None

    def _assign(self, state: IntakeState, specialty: Optional[str]) -> Optional[Doctor]:
        state.status = "ASSIGN"
        try:
            with connect(self.settings.db_path) as conn:
                doctor = select_doctor(
                    conn, state.hospital_id, specialty, self.settings.doctor_load_threshold
                )
        except Exception as exc:
            logger.exception("Doctor matching failed at hospital %s", state.hospital_id)
            state.errors.append(f"doctor matching failed: {exc}")
            state.add_trace("assign_failed", {"error": str(exc)})
            return None

        state.doctor_id = doctor.id if doctor else None
        state.add_trace("assigned", {"specialty": specialty, "doctor_id": state.doctor_id})
        if doctor:
            logger.info("Matched doctor %s (%s, load=%s)", doctor.id, doctor.specialty, doctor.load)
        else:
            logger.info("No %s doctor available at hospital %s", specialty, state.hospital_id)
        return doctor

    def submit(self, patient_id: int, document: bytes, hospital_id: int) -> IntakeReceipt:
        """
        Classify a medical document and queue the patient at a hospital.

        Strategy:
        1) Validate hospital, patient and document (InvalidInput, nothing queued)
        2) Classify; on timeout or failure continue with severity 0 and no doctor
        3) Match a doctor for the recommended specialty (best effort)
        4) Enqueue at the end of the hospital queue
        """
        hospital = self._load_target(patient_id, hospital_id)
        mime = validate_document(document, self.settings)
        document = bytes(document)
        state = IntakeState(
            patient_id=patient_id,
            hospital_id=hospital_id,
            document_size=len(document),
            mime_type=mime,
        )
        submitted_at = now_iso()
        logger.info(
            "Submission received: patient=%s hospital=%s type=%s size=%s",
            patient_id,
            hospital_id,
            mime,
            len(document),
        )

        result = self._classify(state, document)
        doctor = self._assign(state, result.recommended_specialty) if result else None

        entry = IntakeEntry(
            patient_id=patient_id,
            hospital_id=hospital_id,
            document_ref=self.store_document(document),
            submitted_at=submitted_at,
            severity=result.severity if result else 0,
            condition=result.condition if result else None,
            narrative=result.narrative if result else None,
            recommended_specialty=result.recommended_specialty if result else None,
            doctor_id=doctor.id if doctor else None,
            processed_at=now_iso() if result else None,
            degraded=state.degraded,
        )

        state.status = "ENQUEUE"
        state.position = self.queue.enqueue(hospital_id, entry)
        state.status = "DEGRADED" if state.degraded else "DONE"
        state.add_trace("done", {"position": state.position, "degraded": state.degraded})

        return IntakeReceipt(
            entry=entry,
            hospital_name=hospital["name"],
            doctor=doctor,
            degraded=state.degraded,
            warning=ANALYSIS_UNAVAILABLE if state.degraded else None,
            traces=state.traces,
        )

    def complete(self, entry_id: int) -> IntakeEntry:
        return self.queue.complete(entry_id)

    def current_queue(self, hospital_id: int) -> List[IntakeEntry]:
        return self.queue.current_queue(hospital_id)

    def history(self, patient_id: int, limit: int | None = None) -> List[IntakeEntry]:
        return self.queue.patient_entries(patient_id, limit)

    @with_storage_retry
    def doctor_roster(self, hospital_id: int) -> List[Doctor]:
        with connect(self.settings.db_path) as conn:
            return doctor_roster(conn, hospital_id, self.settings.doctor_load_threshold)

    @staticmethod
    def to_json(receipt: IntakeReceipt) -> str:
        return json.dumps(
            {
                "entry_id": receipt.entry.id,
                "hospital": receipt.hospital_name,
                "position": receipt.position,
                "severity": receipt.severity,
                "condition": receipt.entry.condition,
                "doctor": receipt.doctor.name if receipt.doctor else None,
                "degraded": receipt.degraded,
                "warning": receipt.warning,
            },
            ensure_ascii=False,
        )


def safe_compact(obj, max_len: int = 2000) -> Any:
    """
    Compact large objects before storing them in traces or logs.

    Keeps receipts small and keeps full narratives out of log output.
    """
    try:
        s = json.dumps(obj, ensure_ascii=False)
        if len(s) > max_len:
            return {"_truncated": True, "preview": s[:max_len]}
        return obj
    except (TypeError, ValueError):
        # Not JSON-serializable: keep minimal metadata only.
        return {"_nonserializable": True, "type": str(type(obj))}
