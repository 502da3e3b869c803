"""Attendance recorder: at-most-once presence per (session, student)."""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Set

from qr_attendance.models.attendance import AttendanceStatus
from qr_attendance.services.session_store import SessionStore, StoreUnavailable
from qr_attendance.utils.clock import Clock, utcnow
from qr_attendance.utils.helpers import with_retries
from qr_attendance.utils.identity import Identity

logger = logging.getLogger(__name__)

class RecordOutcome(Enum):
    """Outcome of a record attempt."""
    RECORDED = 'recorded'
    ALREADY_RECORDED = 'already_recorded'
    PARTIAL_WRITE_FAILURE = 'partial_write_failure'
    STORE_UNAVAILABLE = 'store_unavailable'

@dataclass
class RecordResult:
    outcome: RecordOutcome
    message: str
    record: Optional[Dict[str, Any]] = None

    @property
    def success(self) -> bool:
        return self.outcome in (RecordOutcome.RECORDED, RecordOutcome.ALREADY_RECORDED)

class AttendanceRecorder:
    """
    Writes attendance records and keeps the session aggregate in step.

    The record key is derived from (session, student), so the insert itself
    fails for a duplicate: concurrent double submissions cannot both land.
    The aggregate (present student ids and count) is always recomputed from
    the records rather than incremented, under a per-session lock, so a
    failed or interleaved update is repaired by the next reconcile.
    """

    def __init__(
        self,
        store: SessionStore,
        clock: Clock = utcnow,
        late_grace_seconds: int = 20,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.1
    ):
        self._store = store
        self._clock = clock
        self.late_grace = timedelta(seconds=late_grace_seconds)
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

        self.pending_reconciliation: Set[str] = set()
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _retry(self, fn, description: str):
        return with_retries(
            fn,
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            retry_on=(StoreUnavailable,),
            description=description
        )

    def classify(self, session: Dict[str, Any], recorded_at: datetime) -> AttendanceStatus:
        """present within the grace window after session start, late afterwards."""
        if recorded_at > session['created_at'] + self.late_grace:
            return AttendanceStatus.LATE
        return AttendanceStatus.PRESENT

    def record(
        self,
        session: Dict[str, Any],
        student: Identity,
        rotation_index_at_scan: int,
        verification_ref: Optional[str] = None,
        device_info: Optional[str] = None
    ) -> RecordResult:
        """Record a student's presence for a session accepted by the validator."""
        session_id = session['id']
        recorded_at = self._clock()
        document = {
            'session_id': session_id,
            'student_id': student.subject,
            'student_name': student.name,
            'student_email': student.email,
            'recorded_at': recorded_at,
            'rotation_index': rotation_index_at_scan,
            'status': self.classify(session, recorded_at).value,
            'photo_url': verification_ref,
            'device_info': (device_info or '')[:512] or None,
        }

        attempts = []

        def _insert():
            attempts.append(1)
            return self._store.insert_record_if_absent(document)

        try:
            inserted = self._retry(_insert, f"insert attendance {session_id}/{student.subject}")
        except StoreUnavailable as e:
            logger.error(f"Attendance write failed for {student.subject} in {session_id}: {e}")
            # A timed out insert may still have committed
            self.pending_reconciliation.add(session_id)
            return RecordResult(
                RecordOutcome.STORE_UNAVAILABLE,
                "Attendance could not be saved. Please try again."
            )

        retried = len(attempts) > 1
        if not inserted and retried and self._is_own_record(document):
            logger.warning(
                f"Attendance insert for {student.subject} in {session_id} "
                f"committed after a failed attempt"
            )
            inserted = True

        if not inserted:
            logger.info(f"Duplicate attendance submission by {student.subject} for {session_id}")
            if retried or session_id in self.pending_reconciliation:
                self.reconcile(session_id)
            return RecordResult(
                RecordOutcome.ALREADY_RECORDED,
                "Attendance already marked for this session",
                self._existing_record(session_id, student.subject)
            )

        if not self.reconcile(session_id):
            self.pending_reconciliation.add(session_id)
            logger.error(
                f"Attendance for {student.subject} saved but session {session_id} "
                f"aggregate is stale; queued for reconciliation"
            )
            return RecordResult(
                RecordOutcome.PARTIAL_WRITE_FAILURE,
                "Attendance saved; session totals will be updated shortly",
                document
            )

        logger.info(f"Recorded {student.subject} as {document['status']} in {session_id}")
        return RecordResult(RecordOutcome.RECORDED, "Attendance marked successfully", document)

    def _existing_record(self, session_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self._store.get_record(session_id, student_id)
        except StoreUnavailable:
            return None

    def _is_own_record(self, document: Dict[str, Any]) -> bool:
        """True when the stored record is the one this call tried to write."""
        existing = self._existing_record(document['session_id'], document['student_id'])
        return existing is not None and \
            existing['recorded_at'] == document['recorded_at'] and \
            existing['rotation_index'] == document['rotation_index']

    def reconcile(self, session_id: str) -> bool:
        """Recompute the session aggregate from its records."""
        with self._lock_for(session_id):
            try:
                student_ids = self._retry(
                    lambda: self._store.present_student_ids(session_id),
                    f"read attendance of {session_id}"
                )
                unique_ids = list(dict.fromkeys(student_ids))
                self._retry(
                    lambda: self._store.update(session_id, {
                        'students_present': unique_ids,
                        'total_present': len(unique_ids),
                    }),
                    f"update aggregate of {session_id}"
                )
            except StoreUnavailable as e:
                logger.error(f"Reconciliation of {session_id} failed: {e}")
                return False

        self.pending_reconciliation.discard(session_id)
        logger.debug(f"Session {session_id} aggregate reconciled ({len(unique_ids)} present)")
        return True

    def reconcile_pending(self) -> int:
        """Retry every queued reconciliation. Returns how many succeeded."""
        return sum(1 for session_id in list(self.pending_reconciliation) if self.reconcile(session_id))
