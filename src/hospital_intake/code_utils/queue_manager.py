import threading
from typing import Dict, List

from hospital_intake.code_utils.cache import QueueCache
from hospital_intake.code_utils.config import SETTINGS, Settings
from hospital_intake.code_utils.db import (
    connect,
    count_queued,
    delete_hospital_records,
    delete_patient_entries,
    get_hospital,
    get_intake_entry,
    hospitals_with_patient_entries,
    init_db,
    insert_intake_entry,
    list_patient_entries,
    list_queued,
    mark_entry_completed,
    queue_is_contiguous,
    queue_version,
    renumber_queue,
    shift_positions_after,
    with_storage_retry,
)
from hospital_intake.code_utils.doctor_policy import refresh_availability
from hospital_intake.code_utils.errors import EntryNotFound, InvalidInput, NotInQueueState
from hospital_intake.code_utils.logger import get_logger
from hospital_intake.code_utils.models import IntakeEntry

logger = get_logger(__name__)


class PriorityQueueManager:
    """
    Owner of every hospital's ordered queue of QUEUED intake entries.

    Invariant: for each hospital the QUEUED positions are exactly 1..N.

    Coordination:
    - writes for one hospital run under that hospital's in-process lock and
      inside a BEGIN IMMEDIATE transaction, which also serializes writers in
      other processes sharing the database file
    - hospitals never share a lock
    - transient sqlite failures re-run the whole transaction (with_storage_retry)

    Ordering is FIFO: a new entry always goes to the end. Severity is stored
    for display and never moves an entry.
    """

    def __init__(self, settings: Settings = SETTINGS, cache: QueueCache | None = None) -> None:
        self.settings = settings
        self.cache = cache or QueueCache(settings.queue_cache_ttl_seconds)
        self._locks: Dict[int, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        init_db(settings.db_path)

    def _hospital_lock(self, hospital_id: int) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(hospital_id)
            if lock is None:
                lock = self._locks[hospital_id] = threading.Lock()
            return lock

    @with_storage_retry
    def enqueue(self, hospital_id: int, entry: IntakeEntry) -> int:
        """
        Persist a new entry at the end of the hospital's queue.

        Sets entry.id, entry.status and entry.queue_position and returns the position.
        """
        with self._hospital_lock(hospital_id):
            with connect(self.settings.db_path, immediate=True) as conn:
                if not queue_is_contiguous(conn, hospital_id):
                    logger.warning("Queue of hospital %s drifted; renumbering before enqueue", hospital_id)
                    renumber_queue(conn, hospital_id)
                position = count_queued(conn, hospital_id) + 1
                entry_id = insert_intake_entry(
                    conn,
                    patient_id=entry.patient_id,
                    hospital_id=hospital_id,
                    document_ref=entry.document_ref,
                    submitted_at=entry.submitted_at,
                    severity=entry.severity,
                    condition=entry.condition,
                    narrative=entry.narrative,
                    recommended_specialty=entry.recommended_specialty,
                    doctor_id=entry.doctor_id,
                    processed_at=entry.processed_at,
                    queue_position=position,
                    degraded=entry.degraded,
                )
                if entry.doctor_id is not None:
                    refresh_availability(conn, entry.doctor_id, self.settings.doctor_load_threshold)
            self.cache.invalidate(hospital_id)

        entry.id = entry_id
        entry.hospital_id = hospital_id
        entry.status = "QUEUED"
        entry.queue_position = position
        logger.info(
            "Enqueued entry %s at hospital %s position %s (severity=%s)",
            entry_id,
            hospital_id,
            position,
            entry.severity,
        )
        return position

    @with_storage_retry
    def complete(self, entry_id: int) -> IntakeEntry:
        """
        Mark a QUEUED entry COMPLETED and close the gap it leaves.

        Every entry behind it moves up by exactly one. Raises EntryNotFound for
        an unknown id and NotInQueueState if the entry is already completed;
        neither case touches any position.
        """
        with connect(self.settings.db_path) as conn:
            row = get_intake_entry(conn, entry_id)
        if row is None:
            raise EntryNotFound(f"Intake entry {entry_id} not found")
        hospital_id = int(row["hospital_id"])

        with self._hospital_lock(hospital_id):
            with connect(self.settings.db_path, immediate=True) as conn:
                # Re-read under the lock; a concurrent complete may have won.
                row = get_intake_entry(conn, entry_id)
                if row is None:
                    raise EntryNotFound(f"Intake entry {entry_id} not found")
                if row["status"] != "QUEUED":
                    raise NotInQueueState(
                        f"Intake entry {entry_id} is {row['status']}, not QUEUED"
                    )
                position = row["queue_position"]
                mark_entry_completed(conn, entry_id)
                if position is None:
                    renumber_queue(conn, hospital_id)
                else:
                    shift_positions_after(conn, hospital_id, int(position))
                    if not queue_is_contiguous(conn, hospital_id):
                        logger.warning("Queue of hospital %s drifted; renumbering after completion", hospital_id)
                        renumber_queue(conn, hospital_id)
                if row["doctor_id"] is not None:
                    refresh_availability(conn, int(row["doctor_id"]), self.settings.doctor_load_threshold)
                completed = IntakeEntry.from_row(get_intake_entry(conn, entry_id))
            self.cache.invalidate(hospital_id)

        logger.info("Completed entry %s at hospital %s (was position %s)", entry_id, hospital_id, position)
        return completed

    @with_storage_retry
    def current_queue(self, hospital_id: int) -> List[IntakeEntry]:
        """
        QUEUED entries of a hospital, position ascending.

        Positions are re-derived on read as the 1-based rank in insertion order;
        if storage disagrees the stored numbering is repaired and the caller
        still gets a gap-free list.

        A cached answer is served only while the stored queue version is the
        one it was read under, so writes from other processes are seen at once.
        """
        generation = self.cache.generation(hospital_id)
        with connect(self.settings.db_path) as conn:
            # Version first: a write landing before list_queued only makes the
            # cached list newer than its tag, never older.
            version = queue_version(conn, hospital_id)
            cached = self.cache.get(hospital_id, version)
            if cached is not None:
                return cached
            rows = list_queued(conn, hospital_id)
        entries = sorted((IntakeEntry.from_row(r) for r in rows), key=lambda e: e.id)

        drifted = False
        for rank, entry in enumerate(entries, start=1):
            if entry.queue_position != rank:
                drifted = True
                entry.queue_position = rank

        if drifted:
            logger.warning("Queue of hospital %s had position gaps; repairing on read", hospital_id)
            self.repair(hospital_id)
            return entries

        self.cache.put(hospital_id, entries, generation, version)
        return entries

    @with_storage_retry
    def repair(self, hospital_id: int) -> int:
        """Renumber a hospital's queue to 1..N in insertion order. Returns rows changed."""
        with self._hospital_lock(hospital_id):
            with connect(self.settings.db_path, immediate=True) as conn:
                changed = renumber_queue(conn, hospital_id)
            self.cache.invalidate(hospital_id)
        return changed

    @with_storage_retry
    def patient_entries(self, patient_id: int, limit: int | None = None) -> List[IntakeEntry]:
        """A patient's entries across hospitals, newest first."""
        with connect(self.settings.db_path) as conn:
            rows = list_patient_entries(conn, patient_id, limit)
        return [IntakeEntry.from_row(r) for r in rows]

    @with_storage_retry
    def clear_hospital(self, hospital_id: int) -> Dict[str, int]:
        """
        Hard-delete every intake entry, alert and appointment of a hospital.

        Doctors of the hospital are reset to available. Returns per-table counts.
        """
        with self._hospital_lock(hospital_id):
            with connect(self.settings.db_path, immediate=True) as conn:
                if get_hospital(conn, hospital_id) is None:
                    raise InvalidInput(f"Hospital {hospital_id} not found")
                summary = delete_hospital_records(conn, hospital_id)
            self.cache.invalidate(hospital_id)
        logger.info("Cleared patient data for hospital %s: %s", hospital_id, summary)
        return summary

    @with_storage_retry
    def clear_patient_entries(self, patient_id: int) -> int:
        """
        Hard-delete a patient's intake entries everywhere.

        Each affected hospital is handled under its own lock and renumbered
        so its queue stays 1..N. Returns the number of deleted entries.
        """
        with connect(self.settings.db_path) as conn:
            hospital_ids = hospitals_with_patient_entries(conn, patient_id)

        deleted = 0
        for hospital_id in hospital_ids:
            with self._hospital_lock(hospital_id):
                with connect(self.settings.db_path, immediate=True) as conn:
                    deleted += delete_patient_entries(conn, patient_id, hospital_id)
                    renumber_queue(conn, hospital_id)
                    doctor_ids = [
                        int(r["id"])
                        for r in conn.execute(
                            "SELECT id FROM doctors WHERE hospital_id=?", (hospital_id,)
                        ).fetchall()
                    ]
                    for doctor_id in doctor_ids:
                        refresh_availability(conn, doctor_id, self.settings.doctor_load_threshold)
                self.cache.invalidate(hospital_id)
        logger.info("Cleared %s intake entries of patient %s", deleted, patient_id)
        return deleted
