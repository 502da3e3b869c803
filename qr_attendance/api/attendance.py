"""Student-facing scan and attendance submission endpoints."""
import logging
from flask import Blueprint, current_app, request
from flask_jwt_extended import jwt_required
from qr_attendance import limiter
from qr_attendance.api.sessions import get_manager
from qr_attendance.services.artifact_store import LocalArtifactStore
from qr_attendance.services.attendance_recorder import RecordOutcome
from qr_attendance.services.scan_ticket_service import ScanTicketService
from qr_attendance.services.scan_validator import ScanRejection
from qr_attendance.services.session_manager import SessionNotFound
from qr_attendance.services.session_store import StoreUnavailable
from qr_attendance.utils.clock import utcnow
from qr_attendance.utils.decorators import student_required
from qr_attendance.utils.helpers import error_response, serialize_document, success_response
from qr_attendance.utils.identity import current_identity

logger = logging.getLogger(__name__)

attendance_bp = Blueprint('attendance', __name__)

REJECTION_STATUS = {
    ScanRejection.MALFORMED_PAYLOAD: 400,
    ScanRejection.TAMPERED_PAYLOAD: 400,
    ScanRejection.INVALID_ROTATION: 400,
    ScanRejection.UNKNOWN_SESSION: 404,
    ScanRejection.STALE_PAYLOAD: 409,
    ScanRejection.SESSION_EXPIRED: 410,
    ScanRejection.STORE_UNAVAILABLE: 503,
}

OUTCOME_STATUS = {
    RecordOutcome.RECORDED: 201,
    RecordOutcome.ALREADY_RECORDED: 200,
    RecordOutcome.PARTIAL_WRITE_FAILURE: 202,
    RecordOutcome.STORE_UNAVAILABLE: 503,
}

def allowed_photo(filename: str) -> bool:
    """Check the upload's extension against ALLOWED_PHOTO_EXTENSIONS."""
    return '.' in filename and \
        filename.rsplit('.', 1)[1].lower() in current_app.config['ALLOWED_PHOTO_EXTENSIONS']

@attendance_bp.errorhandler(SessionNotFound)
def session_not_found(error):
    return error_response("Attendance session not found", 404)

@attendance_bp.errorhandler(StoreUnavailable)
def store_unavailable(error):
    logger.error(f"Attendance request failed: {error}")
    return error_response("Attendance service is temporarily unavailable", 503)

@attendance_bp.route('/scan', methods=['POST'])
@jwt_required()
@student_required
@limiter.limit("30 per minute")
def scan_qr():
    """Validate scanned QR text and hand out a scan ticket."""
    data = request.get_json(silent=True)
    if not data or 'qr_data' not in data:
        return error_response("qr_data is required", 400)

    student = current_identity()
    result = get_manager().scan(data['qr_data'], student)

    if not result.accepted:
        return error_response(
            result.message,
            REJECTION_STATUS[result.reason],
            data={'reason': result.reason.value}
        )

    session = result.session
    ticket = ScanTicketService.create_ticket(student.subject, session['id'], result.rotation_index)

    return success_response(
        data={
            'scan_ticket': ticket,
            'session_id': session['id'],
            'rotation_index': result.rotation_index,
            'session': {
                'school': session['school'],
                'batch': session['batch'],
                'subject': session['subject'],
                'periods': session['periods'],
                'faculty_name': session['faculty_name'],
                'expires_at': session['expires_at'].isoformat()
            },
            'ticket_expires_in': current_app.config.get('ATTENDANCE_SCAN_TICKET_EXPIRY', 120)
        },
        message=result.message
    )

def _store_photo(session_id: str, student_id: str):
    """Save the uploaded photo, returning (url, error)."""
    photo = request.files.get('photo')
    if photo is None or not photo.filename:
        return None, None

    if not allowed_photo(photo.filename):
        return None, "Photo must be an image file"

    extension = photo.filename.rsplit('.', 1)[1]
    path = LocalArtifactStore.photo_path(session_id, student_id, extension, utcnow())
    try:
        return LocalArtifactStore.from_app(current_app).put(photo.read(), path), None
    except OSError as e:
        logger.error(f"Could not store verification photo at {path}: {e}")
        raise StoreUnavailable(f"photo upload failed: {e}") from e

@attendance_bp.route('/submit', methods=['POST'])
@jwt_required()
@student_required
@limiter.limit("10 per minute")
def submit_attendance():
    """Record attendance for a previously accepted scan."""
    if request.files or request.form:
        data = request.form
    else:
        data = request.get_json(silent=True) or {}

    student = current_identity()
    claims, error = ScanTicketService.verify_ticket(data.get('scan_ticket', ''), student.subject)
    if error:
        return error_response(error, 401)

    session_id = claims['session_id']
    photo_ref, error = _store_photo(session_id, student.subject)
    if error:
        return error_response(error, 400)
    verification_ref = photo_ref or data.get('verification_ref') or None

    result = get_manager().submit_attendance(
        session_id,
        student,
        verification_ref,
        rotation_index=claims['rotation_index'],
        device_info=request.headers.get('User-Agent')
    )

    # The kept record points at the first submission's photo
    if photo_ref and result.outcome == RecordOutcome.ALREADY_RECORDED and \
            (result.record or {}).get('photo_url') != photo_ref:
        LocalArtifactStore.from_app(current_app).delete(photo_ref)

    status = OUTCOME_STATUS[result.outcome]
    payload = {
        'outcome': result.outcome.value,
        'session_id': session_id,
        'record': serialize_document(result.record)
    }

    if result.outcome == RecordOutcome.STORE_UNAVAILABLE:
        return error_response(result.message, status, data=payload)

    return success_response(data=payload, message=result.message, status_code=status)
