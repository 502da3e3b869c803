"""Custom decorators for authorization."""
from functools import wraps
from qr_attendance.utils.helpers import error_response
from qr_attendance.utils.identity import current_identity

def faculty_required(f):
    """Decorator to require the faculty role."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = current_identity()

        if not identity:
            return error_response("User not found", 404)

        if not identity.is_faculty:
            return error_response("Faculty access required", 403)

        return f(*args, **kwargs)
    return decorated_function

def student_required(f):
    """Decorator to require the student role."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        identity = current_identity()

        if not identity:
            return error_response("User not found", 404)

        if not identity.is_student:
            return error_response("Student access required", 403)

        return f(*args, **kwargs)
    return decorated_function
