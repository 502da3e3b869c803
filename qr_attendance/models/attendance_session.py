"""Attendance session with rotating QR credentials."""
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict
from qr_attendance import db
from qr_attendance.models.base import BaseModel

class SessionStatus(Enum):
    """Session lifecycle status."""
    ACTIVE = 'active'
    EXPIRED = 'expired'

class ExpiredReason(Enum):
    """Why a session left the active state."""
    LIFETIME = 'lifetime'
    DEACTIVATED = 'deactivated'

class AttendanceSession(BaseModel):
    """One faculty-authorized, time-boxed attendance window."""

    __tablename__ = 'attendance_sessions'

    id = db.Column(db.String(96), primary_key=True)

    # Ownership
    faculty_id = db.Column(db.String(64), nullable=False, index=True)
    faculty_name = db.Column(db.String(255), nullable=True)
    faculty_email = db.Column(db.String(255), nullable=True)

    # Academic context (fixed at creation)
    school = db.Column(db.String(64), nullable=False)
    batch = db.Column(db.String(64), nullable=False)
    subject = db.Column(db.String(64), nullable=False)
    periods = db.Column(db.Integer, nullable=False, default=1)

    # Timing
    lifetime_seconds = db.Column(db.Integer, nullable=False)
    rotation_interval_seconds = db.Column(db.Integer, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    # Current rotation
    rotation_index = db.Column(db.Integer, nullable=False, default=0)
    rotation_nonce = db.Column(db.String(64), nullable=True)
    rotation_checksum = db.Column(db.String(64), nullable=True)
    rotation_issued_at = db.Column(db.DateTime, nullable=True)

    # Lifecycle
    status = db.Column(db.String(20), nullable=False, default=SessionStatus.ACTIVE.value, index=True)
    expired_reason = db.Column(db.String(20), nullable=True)
    deactivated_at = db.Column(db.DateTime, nullable=True)

    # Stats
    students_present = db.Column(db.JSON, nullable=False, default=list)
    total_present = db.Column(db.Integer, nullable=False, default=0)

    # Relationships
    records = db.relationship('AttendanceRecord', backref='session', lazy='dynamic')

    def to_document(self) -> Dict[str, Any]:
        """Column values with native types, as handed out by the session store."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    @staticmethod
    def compute_expires_at(created_at: datetime, lifetime_seconds: int) -> datetime:
        return created_at + timedelta(seconds=lifetime_seconds)
