"""
Session manager: the entry points used by the HTTP layer.

Owns one RotationEngine per session started in this process and wires the
token generator, session store, scan validator and attendance recorder
together.
"""
import logging
import threading
from typing import Any, Dict, List, Optional

from qr_attendance.models.attendance_session import AttendanceSession, ExpiredReason, SessionStatus
from qr_attendance.services.attendance_recorder import AttendanceRecorder, RecordResult
from qr_attendance.services.rotation_engine import RotationEngine
from qr_attendance.services.scan_validator import ScanResult, ScanValidator
from qr_attendance.services.session_store import SessionStore, StoreUnavailable
from qr_attendance.services.token_service import ScanPayload, TokenService
from qr_attendance.utils.clock import Clock, isoformat, utcnow
from qr_attendance.utils.helpers import with_retries
from qr_attendance.utils.identity import Identity

logger = logging.getLogger(__name__)

CONTEXT_FIELDS = ('school', 'batch', 'subject', 'periods')

class SessionNotFound(Exception):
    pass

class PermissionDenied(Exception):
    pass

class TooManyActiveSessions(Exception):
    pass

class InvalidSessionContext(ValueError):
    pass

class SessionManager:
    """Starts, serves, validates and closes QR attendance sessions."""

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        clock: Clock = utcnow,
        lifetime_seconds: int = 30,
        rotation_interval_seconds: int = 5,
        tick_seconds: float = 1.0,
        degraded_after: int = 3,
        max_active_per_faculty: int = 3,
        late_grace_seconds: int = 20,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 0.1,
        background_rotation: bool = True
    ):
        if lifetime_seconds <= 0 or rotation_interval_seconds <= 0:
            raise ValueError("Session lifetime and rotation interval must be positive")

        self.store = store
        self.tokens = tokens
        self._clock = clock
        self.lifetime_seconds = lifetime_seconds
        self.rotation_interval_seconds = rotation_interval_seconds
        self.tick_seconds = tick_seconds
        self.degraded_after = degraded_after
        self.max_active_per_faculty = max_active_per_faculty
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds
        self.background_rotation = background_rotation

        self.validator = ScanValidator(
            store, tokens, clock,
            retry_attempts=retry_attempts,
            retry_backoff_seconds=retry_backoff_seconds
        )
        self.recorder = AttendanceRecorder(
            store, clock,
            late_grace_seconds=late_grace_seconds,
            retry_attempts=retry_attempts,
            retry_backoff_seconds=retry_backoff_seconds
        )

        self._engines: Dict[str, RotationEngine] = {}
        self._lock = threading.Lock()
        self._faculty_locks: Dict[str, threading.Lock] = {}

    @classmethod
    def from_app(cls, app, clock: Clock = utcnow, store: SessionStore = None) -> 'SessionManager':
        config = app.config
        return cls(
            store=store or SessionStore.from_app(app),
            tokens=TokenService(
                config['SECRET_KEY'],
                checksum_length=config.get('QR_CHECKSUM_LENGTH', 16),
                nonce_bytes=config.get('QR_NONCE_BYTES', 12)
            ),
            clock=clock,
            lifetime_seconds=config.get('QR_SESSION_LIFETIME_SECONDS', 30),
            rotation_interval_seconds=config.get('QR_ROTATION_INTERVAL_SECONDS', 5),
            tick_seconds=config.get('QR_TICK_SECONDS', 1.0),
            degraded_after=config.get('QR_DEGRADED_AFTER_FAILURES', 3),
            max_active_per_faculty=config.get('QR_MAX_ACTIVE_SESSIONS_PER_FACULTY', 3),
            late_grace_seconds=config.get('ATTENDANCE_LATE_GRACE_SECONDS', 20),
            retry_attempts=config.get('STORE_RETRY_ATTEMPTS', 3),
            retry_backoff_seconds=config.get('STORE_RETRY_BACKOFF_SECONDS', 0.1),
            background_rotation=config.get('QR_BACKGROUND_ROTATION', True)
        )

    def _retry(self, fn, description: str):
        return with_retries(
            fn,
            attempts=self.retry_attempts,
            backoff_seconds=self.retry_backoff_seconds,
            retry_on=(StoreUnavailable,),
            description=description
        )

    def engine(self, session_id: str) -> Optional[RotationEngine]:
        with self._lock:
            return self._engines.get(session_id)

    def _on_engine_expired(self, engine: RotationEngine) -> None:
        with self._lock:
            self._engines.pop(engine.session_id, None)

    # =================== FACULTY SIDE ===================

    @staticmethod
    def _validate_context(context: Dict[str, Any]) -> Dict[str, Any]:
        if not isinstance(context, dict):
            raise InvalidSessionContext("Session context must be an object")

        missing = [f for f in CONTEXT_FIELDS if context.get(f) in (None, '')]
        if missing:
            raise InvalidSessionContext(f"Please fill in all required fields: {', '.join(missing)}")

        try:
            periods = int(context['periods'])
        except (TypeError, ValueError):
            raise InvalidSessionContext("periods must be a whole number")
        if periods < 1:
            raise InvalidSessionContext("periods must be at least 1")

        return {
            'school': str(context['school']).strip(),
            'batch': str(context['batch']).strip(),
            'subject': str(context['subject']).strip(),
            'periods': periods,
        }

    def _faculty_lock(self, faculty_id: str) -> threading.Lock:
        with self._lock:
            lock = self._faculty_locks.get(faculty_id)
            if lock is None:
                lock = self._faculty_locks[faculty_id] = threading.Lock()
            return lock

    def start_session(self, faculty: Identity, context: Dict[str, Any]) -> str:
        """Create a session, issue rotation 0 and start its rotation engine."""
        context = self._validate_context(context)

        # The limit check and the create must not interleave for one faculty
        with self._faculty_lock(faculty.subject):
            if len(self.list_active(faculty.subject)) >= self.max_active_per_faculty:
                raise TooManyActiveSessions(
                    f"At most {self.max_active_per_faculty} active sessions are allowed"
                )
            session, initial = self._create_session(faculty, context)

        session_id = session['id']
        engine = RotationEngine(
            session,
            initial,
            self.store,
            self.tokens,
            clock=self._clock,
            tick_seconds=self.tick_seconds,
            degraded_after=self.degraded_after,
            retry_attempts=self.retry_attempts,
            retry_backoff_seconds=self.retry_backoff_seconds,
            on_expired=self._on_engine_expired
        )
        with self._lock:
            self._engines[session_id] = engine

        if self.background_rotation:
            engine.start()

        logger.info(
            f"Session {session_id} started by {faculty.subject} for "
            f"{context['school']}/{context['batch']}/{context['subject']}"
        )
        return session_id

    def _create_session(self, faculty: Identity, context: Dict[str, Any]):
        now = self._clock()
        session_id = self.tokens.new_session_id()
        document = {
            'id': session_id,
            'faculty_id': faculty.subject,
            'faculty_name': faculty.name or None,
            'faculty_email': faculty.email or None,
            'created_at': now,
            'updated_at': now,
            'lifetime_seconds': self.lifetime_seconds,
            'rotation_interval_seconds': self.rotation_interval_seconds,
            'expires_at': AttendanceSession.compute_expires_at(now, self.lifetime_seconds),
            'rotation_index': 0,
            'status': SessionStatus.ACTIVE.value,
            'students_present': [],
            'total_present': 0,
            **context
        }

        initial = self.tokens.new_rotation_payload(document, 0, now)
        document.update({
            'rotation_nonce': initial.nonce,
            'rotation_checksum': initial.checksum,
            'rotation_issued_at': initial.issued_at,
        })

        session = self._retry(lambda: self.store.create(document), f"create session {session_id}")
        return session, initial

    def get_current_payload(self, session_id: str) -> Optional[ScanPayload]:
        """The payload to display right now, or None once the session is over."""
        engine = self.engine(session_id)
        if engine is not None:
            if self._clock() >= engine.expires_at:
                return None
            return engine.current_payload

        # Started by another worker: serve what the store holds
        session = self._retry(lambda: self.store.get(session_id), f"load session {session_id}")
        if session is None:
            raise SessionNotFound(session_id)
        if session['status'] != SessionStatus.ACTIVE.value or self._clock() >= session['expires_at']:
            return None

        return ScanPayload(
            session_id=session['id'],
            rotation_index=session['rotation_index'],
            nonce=session['rotation_nonce'],
            checksum=session['rotation_checksum'],
            issued_at=session['rotation_issued_at'],
            faculty_id=session['faculty_id'],
            school=session['school'],
            batch=session['batch'],
            subject=session['subject'],
            periods=session['periods'],
        )

    def deactivate(self, session_id: str, requester: Identity) -> bool:
        """Close a session early. Returns False if it was already over."""
        session = self._retry(lambda: self.store.get(session_id), f"load session {session_id}")
        if session is None:
            raise SessionNotFound(session_id)
        if session['faculty_id'] != requester.subject:
            raise PermissionDenied("You can only close your own sessions")

        engine = self.engine(session_id)
        if engine is not None:
            return engine.deactivate()

        if session['status'] == SessionStatus.EXPIRED.value:
            return False

        self._retry(lambda: self.store.update(session_id, {
            'status': SessionStatus.EXPIRED.value,
            'expired_reason': ExpiredReason.DEACTIVATED.value,
            'deactivated_at': self._clock(),
        }), f"deactivate {session_id}")
        logger.info(f"Session {session_id} deactivated by {requester.subject}")
        return True

    def list_active(self, owner_id: str) -> List[Dict[str, Any]]:
        """Active sessions of a faculty member; lapsed ones are marked expired on the way."""
        now = self._clock()
        active = []
        for session in self._retry(lambda: self.store.list_active(owner_id), f"list sessions of {owner_id}"):
            if now >= session['expires_at']:
                self._expire_lapsed_session(session)
            else:
                active.append(session)
        return active

    def expire_lapsed(self) -> int:
        """
        Mark every session past its deadline as expired. Returns the count.

        Aggregates queued after failed or timed out writes are retried too.
        """
        lapsed = self._retry(lambda: self.store.list_lapsed(self._clock()), "list lapsed sessions")
        for session in lapsed:
            self._expire_lapsed_session(session)
        self.recorder.reconcile_pending()
        return len(lapsed)

    def _expire_lapsed_session(self, session: Dict[str, Any]) -> None:
        engine = self.engine(session['id'])
        if engine is not None:
            engine.tick()
            return

        try:
            self._retry(lambda: self.store.update(session['id'], {
                'status': SessionStatus.EXPIRED.value,
                'expired_reason': ExpiredReason.LIFETIME.value,
            }), f"expire {session['id']}")
        except StoreUnavailable as e:
            logger.warning(f"Could not mark lapsed session {session['id']} expired: {e}")

    # =================== STUDENT SIDE ===================

    def scan(self, raw_payload, scanner: Identity) -> ScanResult:
        """Validate a scanned payload for the given student."""
        result = self.validator.validate(raw_payload)
        if result.accepted:
            logger.info(
                f"Scan accepted for {scanner.subject} on {result.session['id']} "
                f"rotation {result.rotation_index}"
            )
        else:
            logger.info(f"Scan rejected for {scanner.subject}: {result.reason.value}")
        return result

    def submit_attendance(
        self,
        session_id: str,
        student: Identity,
        verification_ref: Optional[str],
        rotation_index: Optional[int] = None,
        device_info: Optional[str] = None
    ) -> RecordResult:
        """Record attendance after a scan was accepted."""
        session = self._retry(lambda: self.store.get(session_id), f"load session {session_id}")
        if session is None:
            raise SessionNotFound(session_id)

        if rotation_index is None:
            rotation_index = session['rotation_index']

        return self.recorder.record(
            session,
            student,
            rotation_index,
            verification_ref=verification_ref,
            device_info=device_info
        )

    # =================== REPORTING ===================

    def get_session(self, session_id: str) -> Dict[str, Any]:
        session = self._retry(lambda: self.store.get(session_id), f"load session {session_id}")
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def session_status(self, session_id: str) -> Dict[str, Any]:
        """Engine status when the session rotates here, store state otherwise."""
        engine = self.engine(session_id)
        if engine is not None:
            return engine.status()

        session = self.get_session(session_id)
        expired = session['status'] == SessionStatus.EXPIRED.value or self._clock() >= session['expires_at']
        return {
            'session_id': session_id,
            'state': SessionStatus.EXPIRED.value if expired else SessionStatus.ACTIVE.value,
            'expired_reason': session.get('expired_reason'),
            'rotation_index': session['rotation_index'],
            'rotation_deadline': None,
            'expires_at': isoformat(session['expires_at']),
            'degraded': False,
            'consecutive_failures': 0,
            'last_error': None,
        }

    def list_records(self, session_id: str) -> List[Dict[str, Any]]:
        return self._retry(lambda: self.store.list_records(session_id), f"list records of {session_id}")

    def reconcile(self, session_id: str) -> bool:
        return self.recorder.reconcile(session_id)

    def shutdown(self) -> None:
        """Stop every rotation ticker and the store's worker pool."""
        with self._lock:
            engines = list(self._engines.values())
        for engine in engines:
            engine.stop()
        self.store.shutdown()
