"""
Session store adapter.

Exposes sessions and attendance records as plain documents (dicts). Every
call runs on a worker thread inside its own application context and waits
at most ``timeout`` seconds; database errors and timeouts surface as
StoreUnavailable so callers can retry or degrade.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from qr_attendance import db
from qr_attendance.models.attendance import AttendanceRecord
from qr_attendance.models.attendance_session import AttendanceSession, SessionStatus
from qr_attendance.utils.clock import utcnow

logger = logging.getLogger(__name__)

class StoreUnavailable(Exception):
    """The store did not answer in time or failed."""
    pass

class SessionStore:
    """Key-value style access to sessions and their attendance records."""

    def __init__(self, app, timeout_seconds: float = 2.0, max_workers: int = 8):
        self._app = app
        self.timeout = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix='session-store'
        )

    @classmethod
    def from_app(cls, app) -> 'SessionStore':
        return cls(
            app,
            timeout_seconds=app.config.get('STORE_TIMEOUT_SECONDS', 2.0),
            max_workers=app.config.get('STORE_MAX_WORKERS', 8)
        )

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)

    def _in_context(self, fn: Callable, *args):
        with self._app.app_context():
            try:
                return fn(*args)
            except Exception:
                db.session.rollback()
                raise

    def _run(self, fn: Callable, *args):
        future = self._executor.submit(self._in_context, fn, *args)
        try:
            return future.result(timeout=self.timeout)
        except FutureTimeout:
            raise StoreUnavailable(f"Session store timed out after {self.timeout}s")
        except SQLAlchemyError as e:
            raise StoreUnavailable(f"Session store error: {e}") from e

    # =================== SESSIONS ===================

    def create(self, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a new session document."""
        def _create():
            session = AttendanceSession(**document)
            db.session.add(session)
            db.session.commit()
            return session.to_document()
        return self._run(_create)

    def get(self, session_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a session document, or None if it does not exist."""
        def _get():
            session = db.session.get(AttendanceSession, session_id)
            return session.to_document() if session else None
        return self._run(_get)

    def update(self, session_id: str, fields: Dict[str, Any]) -> bool:
        """Last-write-wins update of the given fields."""
        def _update():
            values = dict(fields)
            values['updated_at'] = utcnow()
            updated = AttendanceSession.query.filter_by(id=session_id).update(
                values, synchronize_session=False
            )
            db.session.commit()
            return updated > 0
        return self._run(_update)

    def list_active(self, owner_id: str) -> List[Dict[str, Any]]:
        """Sessions created by owner_id that are still marked active."""
        def _list():
            sessions = AttendanceSession.query.filter_by(
                faculty_id=owner_id,
                status=SessionStatus.ACTIVE.value
            ).order_by(AttendanceSession.created_at.desc()).all()
            return [s.to_document() for s in sessions]
        return self._run(_list)

    def list_lapsed(self, now: datetime) -> List[Dict[str, Any]]:
        """Sessions still marked active whose expiration time has passed."""
        def _list():
            sessions = AttendanceSession.query.filter(
                AttendanceSession.status == SessionStatus.ACTIVE.value,
                AttendanceSession.expires_at <= now
            ).all()
            return [s.to_document() for s in sessions]
        return self._run(_list)

    # =================== RECORDS ===================

    def insert_record_if_absent(self, document: Dict[str, Any]) -> bool:
        """
        Insert an attendance record keyed by (session, student).

        Returns False when a record with the same key already exists. The
        primary key makes this atomic in the database; no prior read happens.
        Other integrity violations (unknown session, missing columns) are
        raised rather than reported as duplicates.
        """
        def _insert():
            key = AttendanceRecord.make_key(document['session_id'], document['student_id'])
            db.session.add(AttendanceRecord(id=key, **document))
            try:
                db.session.commit()
            except IntegrityError:
                db.session.rollback()
                if db.session.get(AttendanceRecord, key) is None:
                    raise
                return False
            return True
        return self._run(_insert)

    def get_record(self, session_id: str, student_id: str) -> Optional[Dict[str, Any]]:
        def _get():
            record = db.session.get(AttendanceRecord, AttendanceRecord.make_key(session_id, student_id))
            return record.to_document() if record else None
        return self._run(_get)

    def list_records(self, session_id: str) -> List[Dict[str, Any]]:
        def _list():
            records = AttendanceRecord.query.filter_by(session_id=session_id).order_by(
                AttendanceRecord.recorded_at.asc()
            ).all()
            return [r.to_document() for r in records]
        return self._run(_list)

    def present_student_ids(self, session_id: str) -> List[str]:
        """Distinct student ids recorded for a session, in recording order."""
        def _ids():
            rows = db.session.query(AttendanceRecord.student_id).filter_by(
                session_id=session_id
            ).order_by(AttendanceRecord.recorded_at.asc()).all()
            return [row[0] for row in rows]
        return self._run(_ids)
