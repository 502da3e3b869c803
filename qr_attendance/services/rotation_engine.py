"""QR rotation engine: one state machine per active session."""
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Optional

from qr_attendance.models.attendance_session import ExpiredReason, SessionStatus
from qr_attendance.services.session_store import SessionStore, StoreUnavailable
from qr_attendance.services.token_service import ScanPayload, TokenService
from qr_attendance.utils.clock import Clock, isoformat, utcnow
from qr_attendance.utils.helpers import with_retries

logger = logging.getLogger(__name__)

class EngineState(Enum):
    """Rotation engine states."""
    ACTIVE = 'active'
    EXPIRED = 'expired'

class RotationEngine:
    """
    Regenerates a session's scannable payload on a fixed cadence.

    States:
    - ACTIVE(rotation_index, rotation_deadline)
    - EXPIRED (terminal)

    tick() checks the hard session deadline before anything else, then
    rotates when the current rotation deadline has passed. A rotation only
    becomes current once it is persisted; on store failure the previous
    payload stays current and the failure is counted. A failed write is
    read back before giving up, since it may have committed after timing
    out, and the same payload is retried on the next tick. After
    ``degraded_after`` consecutive failures the engine reports itself as
    degraded until the next successful write.
    """

    def __init__(
        self,
        session: Dict[str, Any],
        initial_payload: ScanPayload,
        store: SessionStore,
        tokens: TokenService,
        clock: Clock = utcnow,
        tick_seconds: float = 1.0,
        degraded_after: int = 3,
        retry_attempts: int = 1,
        retry_backoff_seconds: float = 0.0,
        on_expired: Optional[Callable[['RotationEngine'], None]] = None
    ):
        self.session_id = session['id']
        self._session = session
        self._store = store
        self._tokens = tokens
        self._clock = clock
        self._on_expired = on_expired

        self.tick_seconds = tick_seconds
        self.degraded_after = max(1, degraded_after)
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

        self.rotation_interval = timedelta(seconds=session['rotation_interval_seconds'])
        self.expires_at: datetime = session['expires_at']

        self.state = EngineState.ACTIVE
        self.expired_reason: Optional[ExpiredReason] = None
        self.rotation_index = initial_payload.rotation_index
        self.rotation_deadline: datetime = session['created_at'] + self.rotation_interval
        self.current_payload: Optional[ScanPayload] = initial_payload
        self._pending_payload: Optional[ScanPayload] = None

        self.consecutive_failures = 0
        self.degraded = False
        self.last_error: Optional[str] = None

        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # =================== STATE MACHINE ===================

    @property
    def is_active(self) -> bool:
        return self.state is EngineState.ACTIVE

    def tick(self) -> bool:
        """Advance the state machine. Returns True when a new rotation was issued."""
        with self._lock:
            if self.state is EngineState.EXPIRED:
                return False

            now = self._clock()
            if now >= self.expires_at:
                self._expire(ExpiredReason.LIFETIME, now)
                return False

            if now < self.rotation_deadline:
                return False

            return self._rotate(now)

    def _rotate(self, now: datetime) -> bool:
        # An unconfirmed rotation is retried as is so an index never gets two nonces
        payload = self._pending_payload
        if payload is None:
            payload = self._tokens.new_rotation_payload(self._session, self.rotation_index + 1, now)
        next_index = payload.rotation_index

        try:
            with_retries(
                lambda: self._store.update(self.session_id, {
                    'rotation_index': payload.rotation_index,
                    'rotation_nonce': payload.nonce,
                    'rotation_checksum': payload.checksum,
                    'rotation_issued_at': payload.issued_at,
                }),
                attempts=self.retry_attempts,
                backoff_seconds=self.retry_backoff_seconds,
                retry_on=(StoreUnavailable,),
                description=f"rotation {next_index} of {self.session_id}"
            )
        except StoreUnavailable as e:
            if not self._is_persisted(payload):
                self._pending_payload = payload
                self._record_failure(e)
                return False
            logger.warning(
                f"Rotation {next_index} of {self.session_id} was stored despite error: {e}"
            )

        self._pending_payload = None
        self.current_payload = payload
        self.rotation_index = next_index
        self.rotation_deadline = now + self.rotation_interval
        if self.degraded:
            logger.info(f"Session {self.session_id} recovered from degraded rotation")
        self.consecutive_failures = 0
        self.degraded = False
        self.last_error = None

        logger.debug(f"Session {self.session_id} rotated to {next_index}")
        return True

    def _is_persisted(self, payload: ScanPayload) -> bool:
        """Whether a write reported as failed did land in the store."""
        try:
            stored = self._store.get(self.session_id)
        except StoreUnavailable:
            return False
        return stored is not None and \
            stored['rotation_index'] == payload.rotation_index and \
            stored['rotation_nonce'] == payload.nonce

    def _record_failure(self, error: Exception) -> None:
        self.consecutive_failures += 1
        self.last_error = str(error)
        logger.warning(
            f"Rotation persist failed for session {self.session_id} "
            f"({self.consecutive_failures} in a row); keeping rotation {self.rotation_index}: {error}"
        )
        if self.consecutive_failures >= self.degraded_after and not self.degraded:
            self.degraded = True
            logger.error(
                f"Session {self.session_id} is degraded after "
                f"{self.consecutive_failures} failed rotations"
            )

    def _expire(self, reason: ExpiredReason, now: datetime) -> None:
        """Enter the terminal state after the lifetime has elapsed."""
        self.state = EngineState.EXPIRED
        self.expired_reason = reason
        self.current_payload = None
        self._stop_event.set()

        try:
            with_retries(
                lambda: self._store.update(self.session_id, {
                    'status': SessionStatus.EXPIRED.value,
                    'expired_reason': reason.value,
                }),
                attempts=self.retry_attempts,
                backoff_seconds=self.retry_backoff_seconds,
                retry_on=(StoreUnavailable,),
                description=f"expire {self.session_id}"
            )
        except StoreUnavailable as e:
            # Scans are still refused: the validator checks expires_at itself
            self.last_error = str(e)
            logger.error(f"Could not mark session {self.session_id} expired in store: {e}")

        logger.info(f"Session {self.session_id} expired ({reason.value})")
        if self._on_expired:
            self._on_expired(self)

    def deactivate(self) -> bool:
        """
        Close the session on the creator's request.

        The store is updated first so that scans stop being accepted; if that
        write fails StoreUnavailable propagates and the engine stays active.
        Returns False if the engine had already expired.
        """
        with self._lock:
            if self.state is EngineState.EXPIRED:
                return False

            now = self._clock()
            with_retries(
                lambda: self._store.update(self.session_id, {
                    'status': SessionStatus.EXPIRED.value,
                    'expired_reason': ExpiredReason.DEACTIVATED.value,
                    'deactivated_at': now,
                }),
                attempts=self.retry_attempts,
                backoff_seconds=self.retry_backoff_seconds,
                retry_on=(StoreUnavailable,),
                description=f"deactivate {self.session_id}"
            )

            self.state = EngineState.EXPIRED
            self.expired_reason = ExpiredReason.DEACTIVATED
            self.current_payload = None
            self._stop_event.set()

        logger.info(f"Session {self.session_id} deactivated")
        self.stop()
        if self._on_expired:
            self._on_expired(self)
        return True

    # =================== SCHEDULING ===================

    def start(self) -> None:
        """Run tick() every tick_seconds on a background thread until expired."""
        with self._lock:
            if self._thread is not None or self.state is EngineState.EXPIRED:
                return

            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"rotation-{self.session_id}",
                daemon=True
            )
            self._thread.start()

    def _run_loop(self) -> None:
        while not self._stop_event.wait(self.tick_seconds):
            try:
                self.tick()
            except Exception as e:
                self.last_error = str(e)
                logger.exception(f"Unexpected error in rotation tick for {self.session_id}")
            if self.state is EngineState.EXPIRED:
                break

    def stop(self, timeout: float = 1.5) -> None:
        """Cancel the ticker thread."""
        self._stop_event.set()
        thread = self._thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    @property
    def is_ticking(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> Dict[str, Any]:
        """Snapshot of the engine for status reporting."""
        with self._lock:
            return {
                'session_id': self.session_id,
                'state': self.state.value,
                'expired_reason': self.expired_reason.value if self.expired_reason else None,
                'rotation_index': self.rotation_index,
                'rotation_deadline': isoformat(self.rotation_deadline) if self.is_active else None,
                'expires_at': isoformat(self.expires_at),
                'degraded': self.degraded,
                'consecutive_failures': self.consecutive_failures,
                'last_error': self.last_error,
            }
