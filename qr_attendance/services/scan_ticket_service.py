"""Short-lived tickets proving a student's scan was accepted."""
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from flask import current_app

TICKET_AUDIENCE = 'attendance-submit'

class ScanTicketService:
    """Signs and checks the ticket handed out by the scan endpoint."""

    @staticmethod
    def _secret() -> str:
        return current_app.config['SECRET_KEY']

    @staticmethod
    def create_ticket(student_id: str, session_id: str, rotation_index: int) -> str:
        """Create a ticket binding student, session and rotation."""
        now = datetime.now(timezone.utc)
        expiry = current_app.config.get('ATTENDANCE_SCAN_TICKET_EXPIRY', 120)
        payload = {
            'sub': student_id,
            'session_id': session_id,
            'rotation_index': rotation_index,
            'aud': TICKET_AUDIENCE,
            'iat': now,
            'exp': now + timedelta(seconds=expiry),
            'nonce': secrets.token_hex(8)
        }

        return jwt.encode(payload, ScanTicketService._secret(), algorithm='HS256')

    @staticmethod
    def verify_ticket(token: str, student_id: str) -> Tuple[Optional[Dict[str, Any]], Optional[str]]:
        """Return (claims, None) for a valid ticket issued to student_id, else (None, error)."""
        if not token:
            return None, "Scan ticket is required"

        try:
            claims = jwt.decode(
                token,
                ScanTicketService._secret(),
                algorithms=['HS256'],
                audience=TICKET_AUDIENCE
            )
        except jwt.ExpiredSignatureError:
            return None, "Scan ticket has expired. Please scan the QR code again."
        except jwt.InvalidTokenError:
            return None, "Invalid scan ticket"

        if claims.get('sub') != student_id:
            return None, "Scan ticket was issued to another student"

        return claims, None
