"""Test authentication endpoints."""
import json
import pytest
from qr_attendance.models.user import User, UserRole

@pytest.fixture
def sample_user(app):
    """Create sample user for testing."""
    with app.app_context():
        user = User(
            email='test@pwioi.com',
            name='Test User',
            role=UserRole.STUDENT
        )
        user.set_password('password123')
        user.save()
        return user.id

def test_health_check(client):
    """Test auth health endpoint."""
    response = client.get('/api/auth/health')
    assert response.status_code == 200
    data = json.loads(response.data)
    assert data['message'] == 'Auth service is running'

def test_register_student(client):
    """Test successful student registration."""
    response = client.post('/api/auth/register',
        json={
            'email': 'NewUser@pwioi.com',
            'password': 'password123',
            'name': 'New User'
        })

    assert response.status_code == 201
    data = json.loads(response.data)
    assert data['error'] is False
    assert data['data']['user']['email'] == 'newuser@pwioi.com'
    assert data['data']['user']['role'] == 'student'
    assert 'password_hash' not in data['data']['user']
    assert data['data']['access_token']

def test_register_faculty(client):
    """Faculty register with a non-student address."""
    response = client.post('/api/auth/register',
        json={
            'email': 'prof@example.edu',
            'password': 'password123',
            'name': 'Prof. Rao',
            'role': 'faculty'
        })

    assert response.status_code == 201
    assert json.loads(response.data)['data']['user']['role'] == 'faculty'

def test_register_validation(client):
    """Test registration validation."""
    # Missing fields
    response = client.post('/api/auth/register', json={})
    assert response.status_code == 400

    # Invalid email
    response = client.post('/api/auth/register',
        json={
            'email': 'invalid-email',
            'password': 'password123',
            'name': 'Test User'
        })
    assert response.status_code == 400

    # Short password
    response = client.post('/api/auth/register',
        json={
            'email': 'short@pwioi.com',
            'password': '123',
            'name': 'Test User'
        })
    assert response.status_code == 400

    # Unknown role
    response = client.post('/api/auth/register',
        json={
            'email': 'admin@example.edu',
            'password': 'password123',
            'name': 'Admin',
            'role': 'admin'
        })
    assert response.status_code == 400

def test_register_role_email_rule(client):
    """Students need the institute domain and faculty must not use it."""
    response = client.post('/api/auth/register',
        json={
            'email': 'student@gmail.com',
            'password': 'password123',
            'name': 'Outside Student'
        })
    assert response.status_code == 400
    assert '@pwioi.com' in json.loads(response.data)['message']

    response = client.post('/api/auth/register',
        json={
            'email': 'prof@pwioi.com',
            'password': 'password123',
            'name': 'Prof. Student Domain',
            'role': 'faculty'
        })
    assert response.status_code == 400

def test_register_duplicate_email(client, sample_user):
    response = client.post('/api/auth/register',
        json={
            'email': 'test@pwioi.com',
            'password': 'password123',
            'name': 'Test User'
        })
    assert response.status_code == 409

def test_login_success(client, sample_user):
    """Test successful login."""
    response = client.post('/api/auth/login',
        json={
            'email': 'test@pwioi.com',
            'password': 'password123'
        })

    assert response.status_code == 200
    data = json.loads(response.data)
    assert 'access_token' in data['data']
    assert data['data']['user']['email'] == 'test@pwioi.com'

def test_login_invalid_credentials(client, sample_user):
    """Test login with invalid credentials."""
    response = client.post('/api/auth/login',
        json={
            'email': 'test@pwioi.com',
            'password': 'wrongpassword'
        })

    assert response.status_code == 401
    data = json.loads(response.data)
    assert data['error'] is True

def test_login_requires_body(client):
    response = client.post('/api/auth/login', data='nope', content_type='text/plain')
    assert response.status_code == 400

def test_me_returns_profile_and_claims_drive_roles(client, sample_user):
    """The login token carries the role used by the role decorators."""
    response = client.post('/api/auth/login',
        json={'email': 'test@pwioi.com', 'password': 'password123'})
    token = json.loads(response.data)['data']['access_token']
    headers = {'Authorization': f'Bearer {token}'}

    response = client.get('/api/auth/me', headers=headers)
    assert response.status_code == 200
    assert json.loads(response.data)['data']['id'] == sample_user

    response = client.post('/api/sessions', json={
        'school': 'SOT', 'batch': 'B1', 'subject': 'Maths', 'periods': 1
    }, headers=headers)
    assert response.status_code == 403

def test_me_requires_token(client):
    response = client.get('/api/auth/me')
    assert response.status_code == 401
