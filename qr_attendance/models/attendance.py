"""Attendance record model."""
from enum import Enum
from typing import Any, Dict
from qr_attendance import db
from qr_attendance.models.base import BaseModel
from qr_attendance.utils.clock import utcnow

class AttendanceStatus(Enum):
    """Attendance status options."""
    PRESENT = 'present'
    LATE = 'late'

class AttendanceRecord(BaseModel):
    """One student's accepted presence against one session."""

    __tablename__ = 'attendance_records'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_id', name='uq_attendance_session_student'),
    )

    # Deterministic key "<session_id>:<student_id>"
    id = db.Column(db.String(200), primary_key=True)

    session_id = db.Column(db.String(96), db.ForeignKey('attendance_sessions.id'), nullable=False, index=True)
    student_id = db.Column(db.String(64), nullable=False, index=True)
    student_name = db.Column(db.String(255), nullable=True)
    student_email = db.Column(db.String(255), nullable=True)

    recorded_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    rotation_index = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default=AttendanceStatus.PRESENT.value)

    # Verification details
    photo_url = db.Column(db.String(512), nullable=True)
    device_info = db.Column(db.String(512), nullable=True)

    @staticmethod
    def make_key(session_id: str, student_id: str) -> str:
        return f'{session_id}:{student_id}'

    def to_document(self) -> Dict[str, Any]:
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}

    def __repr__(self):
        return f'<AttendanceRecord {self.student_id}-{self.session_id}>'
