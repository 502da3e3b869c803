"""Authentication service for user management."""
import re
from flask import current_app
from flask_jwt_extended import create_access_token
from qr_attendance.models.user import User, UserRole
from qr_attendance.utils.clock import utcnow
from qr_attendance.utils.identity import Identity

class AuthService:
    @staticmethod
    def validate_email(email: str) -> bool:
        """Validate email format."""
        pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        return re.match(pattern, email) is not None

    @staticmethod
    def validate_password(password: str) -> tuple[bool, str]:
        """Validate password strength."""
        if len(password) < 6:
            return False, "Password must be at least 6 characters long"
        return True, ""

    @staticmethod
    def validate_role_email(email: str, role: UserRole) -> tuple[bool, str]:
        """Students must use the institute domain; faculty must not."""
        domain = current_app.config.get('STUDENT_EMAIL_DOMAIN', '@pwioi.com').lower()
        is_student_email = email.endswith(domain)

        if role == UserRole.STUDENT and not is_student_email:
            return False, f"Students must register with a {domain} email address"
        if role == UserRole.FACULTY and is_student_email:
            return False, f"Faculty cannot register with a {domain} email address"
        return True, ""

    @staticmethod
    def identity_for(user: User) -> Identity:
        return Identity(
            subject=str(user.id),
            role=user.role.value,
            email=user.email,
            name=user.name
        )

    @staticmethod
    def issue_token(user: User) -> str:
        identity = AuthService.identity_for(user)
        return create_access_token(identity=identity.subject, additional_claims=identity.claims())

    @staticmethod
    def login(email: str, password: str) -> tuple[dict, str]:
        """Authenticate user and return an access token."""
        if not email or not password:
            return None, "Email and password are required"

        if not AuthService.validate_email(email):
            return None, "Invalid email format"

        user = User.query.filter_by(email=email.lower().strip()).first()

        if not user or not user.check_password(password):
            return None, "Invalid email or password"

        if not user.is_active:
            return None, "Account is deactivated"

        user.last_login = utcnow()
        user.save()

        return {
            "access_token": AuthService.issue_token(user),
            "user": user.to_dict()
        }, None

    @staticmethod
    def register(email: str, password: str, name: str, role: str = "student") -> tuple[dict, str]:
        """Register new user."""
        if not all([email, password, name]):
            return None, "Email, password and name are required"

        email = email.lower().strip()
        if not AuthService.validate_email(email):
            return None, "Invalid email format"

        is_valid, password_error = AuthService.validate_password(password)
        if not is_valid:
            return None, password_error

        if len(name.strip()) < 2:
            return None, "Name must be at least 2 characters long"

        try:
            user_role = UserRole(str(role).lower())
        except ValueError:
            return None, "Role must be 'student' or 'faculty'"

        is_valid, role_error = AuthService.validate_role_email(email, user_role)
        if not is_valid:
            return None, role_error

        if User.query.filter_by(email=email).first():
            return None, "Email already exists"

        user = User(
            email=email,
            name=name.strip(),
            role=user_role
        )
        user.set_password(password)
        user.save()

        return {
            "access_token": AuthService.issue_token(user),
            "user": user.to_dict()
        }, None

    @staticmethod
    def get_user_by_id(user_id) -> User:
        """Get user by ID."""
        try:
            return User.get_by_id(int(user_id))
        except (TypeError, ValueError):
            return None
