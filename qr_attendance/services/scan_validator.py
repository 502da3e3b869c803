"""Scan validation: decides whether a scanned payload authorizes attendance."""
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from qr_attendance.models.attendance_session import SessionStatus
from qr_attendance.services.session_store import SessionStore, StoreUnavailable
from qr_attendance.services.token_service import MalformedPayload, ScanPayload, TokenService
from qr_attendance.utils.clock import Clock, utcnow
from qr_attendance.utils.helpers import with_retries

logger = logging.getLogger(__name__)

class ScanRejection(Enum):
    """Reasons a scan can be rejected."""
    MALFORMED_PAYLOAD = 'malformed_payload'
    TAMPERED_PAYLOAD = 'tampered_payload'
    UNKNOWN_SESSION = 'unknown_session'
    SESSION_EXPIRED = 'session_expired'
    STALE_PAYLOAD = 'stale_payload'
    INVALID_ROTATION = 'invalid_rotation'
    STORE_UNAVAILABLE = 'store_unavailable'

REJECTION_MESSAGES = {
    ScanRejection.MALFORMED_PAYLOAD: "Invalid QR code format",
    ScanRejection.TAMPERED_PAYLOAD: "Invalid QR code",
    ScanRejection.UNKNOWN_SESSION: "Attendance session not found",
    ScanRejection.SESSION_EXPIRED: "QR code has expired. Please ask your faculty to generate a new one.",
    ScanRejection.STALE_PAYLOAD: "This QR code has been replaced. Scan the code currently on screen.",
    ScanRejection.INVALID_ROTATION: "Invalid QR code rotation",
    ScanRejection.STORE_UNAVAILABLE: "Attendance service is temporarily unavailable",
}

@dataclass
class ScanResult:
    """Outcome of validating one scan."""
    accepted: bool
    reason: Optional[ScanRejection] = None
    message: str = ''
    session: Optional[Dict[str, Any]] = None
    payload: Optional[ScanPayload] = None

    @property
    def rotation_index(self) -> Optional[int]:
        return self.payload.rotation_index if self.payload else None

    @classmethod
    def accept(cls, session: Dict[str, Any], payload: ScanPayload) -> 'ScanResult':
        return cls(accepted=True, message="QR code is valid", session=session, payload=payload)

    @classmethod
    def reject(cls, reason: ScanRejection, payload: ScanPayload = None, detail: str = None) -> 'ScanResult':
        return cls(
            accepted=False,
            reason=reason,
            message=detail or REJECTION_MESSAGES[reason],
            payload=payload
        )

class ScanValidator:
    """
    Validates scanned payloads against the session store.

    Steps, first failure wins:
    1. parse                      -> MALFORMED_PAYLOAD
    2. checksum                   -> TAMPERED_PAYLOAD
    3. session lookup             -> UNKNOWN_SESSION
    4. expired or past deadline   -> SESSION_EXPIRED
    5. rotation index vs current  -> STALE_PAYLOAD / INVALID_ROTATION

    The payload's own timestamp is never consulted; the scanning device's
    clock is untrusted.
    """

    def __init__(
        self,
        store: SessionStore,
        tokens: TokenService,
        clock: Clock = utcnow,
        retry_attempts: int = 1,
        retry_backoff_seconds: float = 0.0
    ):
        self._store = store
        self._tokens = tokens
        self._clock = clock
        self.retry_attempts = retry_attempts
        self.retry_backoff_seconds = retry_backoff_seconds

    def validate(self, raw_payload, now: Optional[datetime] = None) -> ScanResult:
        now = now or self._clock()

        try:
            payload = ScanPayload.decode(raw_payload)
        except MalformedPayload as e:
            return ScanResult.reject(ScanRejection.MALFORMED_PAYLOAD, detail=str(e))

        if not self._tokens.verify_checksum(payload):
            logger.info(f"Rejected tampered payload for session {payload.session_id}")
            return ScanResult.reject(ScanRejection.TAMPERED_PAYLOAD, payload)

        try:
            session = with_retries(
                lambda: self._store.get(payload.session_id),
                attempts=self.retry_attempts,
                backoff_seconds=self.retry_backoff_seconds,
                retry_on=(StoreUnavailable,),
                description=f"load session {payload.session_id}"
            )
        except StoreUnavailable:
            return ScanResult.reject(ScanRejection.STORE_UNAVAILABLE, payload)

        if session is None:
            return ScanResult.reject(ScanRejection.UNKNOWN_SESSION, payload)

        if session['status'] == SessionStatus.EXPIRED.value or now >= session['expires_at']:
            return ScanResult.reject(ScanRejection.SESSION_EXPIRED, payload)

        current_index = session['rotation_index']
        if payload.rotation_index < current_index:
            return ScanResult.reject(ScanRejection.STALE_PAYLOAD, payload)
        if payload.rotation_index > current_index:
            return ScanResult.reject(ScanRejection.INVALID_ROTATION, payload)

        # Same index, different nonce: not the payload the engine issued
        if session.get('rotation_nonce') and payload.nonce != session['rotation_nonce']:
            return ScanResult.reject(ScanRejection.TAMPERED_PAYLOAD, payload)

        return ScanResult.accept(session, payload)
