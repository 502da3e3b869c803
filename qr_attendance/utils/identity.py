"""Verified caller identity taken from JWT access tokens."""
from dataclasses import dataclass
from typing import Any, Dict, Optional
from flask_jwt_extended import get_jwt, get_jwt_identity

@dataclass(frozen=True)
class Identity:
    """(subject, role, email) triple supplied by the identity provider."""
    subject: str
    role: str
    email: str = ''
    name: str = ''

    @property
    def is_faculty(self) -> bool:
        return self.role == 'faculty'

    @property
    def is_student(self) -> bool:
        return self.role == 'student'

    def claims(self) -> Dict[str, Any]:
        """Additional claims stored alongside the token identity."""
        return {'role': self.role, 'email': self.email, 'name': self.name}

def current_identity() -> Optional[Identity]:
    """Identity of the caller; must be used inside a jwt_required view."""
    subject = get_jwt_identity()
    if subject is None:
        return None

    claims = get_jwt()
    return Identity(
        subject=str(subject),
        role=claims.get('role', ''),
        email=claims.get('email', ''),
        name=claims.get('name', '')
    )
