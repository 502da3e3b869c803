"""Helper functions for the application."""
import logging
import time
from datetime import datetime
from flask import jsonify
from typing import Any, Callable, Dict, Optional, Tuple, Type

logger = logging.getLogger(__name__)

def handle_error(error, status_code: int):
    """Handle application errors with consistent format."""
    message = getattr(error, 'description', None) or str(error)
    return jsonify({
        'error': True,
        'message': message,
        'status_code': status_code
    }), status_code

def success_response(data: Any = None, message: str = "Success", status_code: int = 200):
    """Return consistent success response."""
    response = {
        'error': False,
        'message': message
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code

def error_response(message: str, status_code: int = 400, data: Any = None):
    """Return consistent error response."""
    response = {
        'error': True,
        'message': message,
        'status_code': status_code
    }

    if data is not None:
        response['data'] = data

    return jsonify(response), status_code

def with_retries(
    fn: Callable[[], Any],
    attempts: int = 3,
    backoff_seconds: float = 0.1,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = 'operation'
) -> Any:
    """
    Call fn until it succeeds or attempts run out.

    Sleeps backoff_seconds * 2**n between attempts and re-raises the last
    error once every attempt has failed.
    """
    attempts = max(1, attempts)
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            if attempt == attempts:
                logger.warning(f"{description} failed after {attempts} attempt(s): {e}")
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            logger.debug(f"{description} attempt {attempt} failed ({e}); retrying in {delay:.2f}s")
            if delay > 0:
                time.sleep(delay)

def serialize_document(document: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Store document with datetimes rendered as ISO strings."""
    if document is None:
        return None
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in document.items()
    }
