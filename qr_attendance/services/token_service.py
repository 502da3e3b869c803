"""Session identifiers and rotating QR payloads."""
import hashlib
import hmac
import json
import secrets
import time
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Dict, Optional

from qr_attendance.utils.clock import isoformat, parse_iso

class MalformedPayload(ValueError):
    """Raised when scanned text is not a well-formed payload."""
    pass

@dataclass(frozen=True)
class ScanPayload:
    """One rotation's encoded credential."""
    session_id: str
    rotation_index: int
    nonce: str
    checksum: str
    issued_at: Optional[datetime]
    faculty_id: str = ''
    school: str = ''
    batch: str = ''
    subject: str = ''
    periods: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['issued_at'] = isoformat(self.issued_at)
        return data

    def encode(self) -> str:
        """Compact JSON form placed inside the QR code."""
        return json.dumps(self.to_dict(), separators=(',', ':'), sort_keys=True)

    @classmethod
    def decode(cls, raw) -> 'ScanPayload':
        """Parse scanned text, raising MalformedPayload on any structural problem."""
        if isinstance(raw, bytes):
            try:
                raw = raw.decode('utf-8')
            except UnicodeDecodeError:
                raise MalformedPayload("Payload is not valid UTF-8")

        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except json.JSONDecodeError:
                raise MalformedPayload("Invalid QR code format")
        elif isinstance(raw, dict):
            data = raw
        else:
            raise MalformedPayload("Invalid QR code format")

        if not isinstance(data, dict):
            raise MalformedPayload("Invalid QR code format")

        for field in ('session_id', 'rotation_index', 'nonce', 'checksum'):
            if field not in data:
                raise MalformedPayload(f"Missing field: {field}")

        rotation_index = data['rotation_index']
        if isinstance(rotation_index, bool) or not isinstance(rotation_index, int) or rotation_index < 0:
            raise MalformedPayload("rotation_index must be a non-negative integer")

        for field in ('session_id', 'nonce', 'checksum'):
            if not isinstance(data[field], str) or not data[field]:
                raise MalformedPayload(f"{field} must be a non-empty string")

        try:
            issued_at = parse_iso(data.get('issued_at'))
        except (TypeError, ValueError):
            raise MalformedPayload("issued_at must be an ISO-8601 timestamp")

        periods = data.get('periods', 0)
        if isinstance(periods, bool) or not isinstance(periods, int):
            raise MalformedPayload("periods must be an integer")

        context = {
            key: str(data[key]) for key in ('faculty_id', 'school', 'batch', 'subject')
            if data.get(key) is not None
        }

        return cls(
            session_id=data['session_id'],
            rotation_index=rotation_index,
            nonce=data['nonce'],
            checksum=data['checksum'],
            issued_at=issued_at,
            periods=periods,
            **context
        )

class TokenService:
    """Produces session ids and per-rotation payloads."""

    def __init__(self, secret_key: str, checksum_length: int = 16, nonce_bytes: int = 12):
        if not secret_key:
            raise ValueError("A secret key is required to sign QR payloads")
        self._key = secret_key.encode('utf-8')
        self.checksum_length = checksum_length
        self.nonce_bytes = nonce_bytes

    @staticmethod
    def new_session_id() -> str:
        """High-resolution timestamp plus a cryptographic random component."""
        return f"session_{time.time_ns()}_{secrets.token_hex(12)}"

    def new_nonce(self) -> str:
        return secrets.token_urlsafe(self.nonce_bytes)

    def compute_checksum(self, session_id: str, rotation_index: int, nonce: str) -> str:
        message = f"{session_id}:{rotation_index}:{nonce}".encode('utf-8')
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()[:self.checksum_length]

    def verify_checksum(self, payload: ScanPayload) -> bool:
        expected = self.compute_checksum(payload.session_id, payload.rotation_index, payload.nonce)
        return hmac.compare_digest(expected, payload.checksum)

    def new_rotation_payload(
        self,
        session: Dict[str, Any],
        rotation_index: int,
        issued_at: datetime
    ) -> ScanPayload:
        """Build a fresh payload for the given session document and rotation."""
        nonce = self.new_nonce()
        return ScanPayload(
            session_id=session['id'],
            rotation_index=rotation_index,
            nonce=nonce,
            checksum=self.compute_checksum(session['id'], rotation_index, nonce),
            issued_at=issued_at,
            faculty_id=session.get('faculty_id') or '',
            school=session.get('school') or '',
            batch=session.get('batch') or '',
            subject=session.get('subject') or '',
            periods=session.get('periods') or 0,
        )
