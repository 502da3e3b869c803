"""Faculty-facing attendance session endpoints."""
import logging
from flask import Blueprint, current_app, request
from flask_jwt_extended import jwt_required
from qr_attendance import limiter
from qr_attendance.services.qr_service import QRService
from qr_attendance.services.session_manager import (
    InvalidSessionContext, PermissionDenied, SessionManager, SessionNotFound, TooManyActiveSessions
)
from qr_attendance.services.session_store import StoreUnavailable
from qr_attendance.utils.decorators import faculty_required
from qr_attendance.utils.helpers import error_response, serialize_document, success_response
from qr_attendance.utils.identity import current_identity

logger = logging.getLogger(__name__)

sessions_bp = Blueprint('sessions', __name__)

def get_manager() -> SessionManager:
    return current_app.extensions['qr_sessions']

def _owned_session(session_id: str) -> dict:
    session = get_manager().get_session(session_id)
    if session['faculty_id'] != current_identity().subject:
        raise PermissionDenied("You can only access your own sessions")
    return session

@sessions_bp.errorhandler(SessionNotFound)
def session_not_found(error):
    return error_response("Attendance session not found", 404)

@sessions_bp.errorhandler(PermissionDenied)
def permission_denied(error):
    return error_response(str(error), 403)

@sessions_bp.errorhandler(InvalidSessionContext)
def invalid_context(error):
    return error_response(str(error), 400)

@sessions_bp.errorhandler(TooManyActiveSessions)
def too_many_sessions(error):
    return error_response(str(error), 409)

@sessions_bp.errorhandler(StoreUnavailable)
def store_unavailable(error):
    logger.error(f"Session request failed: {error}")
    return error_response("Attendance service is temporarily unavailable", 503)

@sessions_bp.route('', methods=['POST'])
@jwt_required()
@faculty_required
@limiter.limit("30 per hour")
def start_session():
    """Start a session and return its first QR code."""
    data = request.get_json(silent=True)
    if not data:
        return error_response("Request body must be JSON", 400)

    manager = get_manager()
    session_id = manager.start_session(current_identity(), data)
    session = manager.get_session(session_id)
    payload = manager.get_current_payload(session_id)

    return success_response(
        data={
            'session_id': session_id,
            'session': serialize_document(session),
            'payload': payload.to_dict(),
            'qr_data': payload.encode(),
            'qr_image': QRService.render_data_url(payload.encode()),
            'expires_at': session['expires_at'].isoformat(),
            'rotation_interval_seconds': session['rotation_interval_seconds'],
        },
        message="Attendance session started",
        status_code=201
    )

@sessions_bp.route('', methods=['GET'])
@jwt_required()
@faculty_required
def list_sessions():
    """Active sessions of the current faculty member."""
    sessions = get_manager().list_active(current_identity().subject)
    return success_response(data={
        'sessions': [serialize_document(s) for s in sessions],
        'total': len(sessions)
    })

@sessions_bp.route('/<session_id>', methods=['GET'])
@jwt_required()
@faculty_required
def get_session(session_id):
    """Session document plus rotation engine status."""
    session = _owned_session(session_id)
    return success_response(data={
        'session': serialize_document(session),
        'engine': get_manager().session_status(session_id)
    })

@sessions_bp.route('/<session_id>/payload', methods=['GET'])
@jwt_required()
@faculty_required
def current_payload(session_id):
    """The QR code to display right now."""
    _owned_session(session_id)
    payload = get_manager().get_current_payload(session_id)

    if payload is None:
        return error_response("Session has expired", 410)

    return success_response(data={
        'payload': payload.to_dict(),
        'qr_data': payload.encode(),
        'qr_image': QRService.render_data_url(payload.encode()),
        'rotation_index': payload.rotation_index
    })

@sessions_bp.route('/<session_id>/deactivate', methods=['POST'])
@jwt_required()
@faculty_required
def deactivate_session(session_id):
    """End a session before its lifetime runs out."""
    changed = get_manager().deactivate(session_id, current_identity())
    message = "Session deactivated" if changed else "Session was already closed"
    return success_response(data={'session_id': session_id, 'deactivated': changed}, message=message)

@sessions_bp.route('/<session_id>/records', methods=['GET'])
@jwt_required()
@faculty_required
def session_records(session_id):
    """Attendance records of a session."""
    session = _owned_session(session_id)
    records = get_manager().list_records(session_id)
    return success_response(data={
        'records': [serialize_document(r) for r in records],
        'total': len(records),
        'total_present': session['total_present']
    })

@sessions_bp.route('/<session_id>/reconcile', methods=['POST'])
@jwt_required()
@faculty_required
def reconcile_session(session_id):
    """Recompute the present list and count from records."""
    _owned_session(session_id)
    manager = get_manager()

    if not manager.reconcile(session_id):
        return error_response("Attendance service is temporarily unavailable", 503)

    session = manager.get_session(session_id)
    return success_response(
        data={
            'students_present': session['students_present'],
            'total_present': session['total_present']
        },
        message="Session totals reconciled"
    )
