"""Tests for session ids and rotating payloads."""
import json
from datetime import datetime

import pytest

from qr_attendance.services.token_service import MalformedPayload, ScanPayload, TokenService

SESSION = {
    'id': 'session_1700000000000000000_abcdef',
    'faculty_id': '101',
    'school': 'School of Technology',
    'batch': '2024-A',
    'subject': 'Data Structures',
    'periods': 2,
}

@pytest.fixture
def service():
    return TokenService('unit-test-secret')

def test_session_ids_are_unique_and_prefixed(service):
    ids = {service.new_session_id() for _ in range(200)}
    assert len(ids) == 200
    assert all(i.startswith('session_') for i in ids)

def test_new_rotation_payload_carries_context(service):
    issued = datetime(2024, 1, 15, 9, 0, 5)
    payload = service.new_rotation_payload(SESSION, 1, issued)

    assert payload.session_id == SESSION['id']
    assert payload.rotation_index == 1
    assert payload.issued_at == issued
    assert payload.subject == 'Data Structures'
    assert payload.periods == 2
    assert service.verify_checksum(payload)

def test_nonces_differ_between_rotations(service):
    issued = datetime(2024, 1, 15, 9, 0, 0)
    first = service.new_rotation_payload(SESSION, 0, issued)
    second = service.new_rotation_payload(SESSION, 0, issued)
    assert first.nonce != second.nonce
    assert first.checksum != second.checksum

def test_checksum_depends_on_secret():
    issued = datetime(2024, 1, 15, 9, 0, 0)
    payload = TokenService('secret-a').new_rotation_payload(SESSION, 0, issued)
    assert not TokenService('secret-b').verify_checksum(payload)

def test_encoded_payload_decodes_to_same_value(service):
    payload = service.new_rotation_payload(SESSION, 3, datetime(2024, 1, 15, 9, 0, 15))
    decoded = ScanPayload.decode(payload.encode())
    assert decoded == payload
    assert service.verify_checksum(decoded)

def test_decode_accepts_bytes_and_dicts(service):
    payload = service.new_rotation_payload(SESSION, 0, datetime(2024, 1, 15, 9, 0, 0))
    assert ScanPayload.decode(payload.encode().encode('utf-8')) == payload
    assert ScanPayload.decode(payload.to_dict()) == payload

@pytest.mark.parametrize('raw', [
    'not json',
    '[1, 2, 3]',
    b'\xff\xfe',
    42,
    json.dumps({'session_id': 'x', 'nonce': 'n', 'checksum': 'c'}),
    json.dumps({'session_id': 'x', 'rotation_index': -1, 'nonce': 'n', 'checksum': 'c'}),
    json.dumps({'session_id': 'x', 'rotation_index': True, 'nonce': 'n', 'checksum': 'c'}),
    json.dumps({'session_id': 'x', 'rotation_index': '1', 'nonce': 'n', 'checksum': 'c'}),
    json.dumps({'session_id': '', 'rotation_index': 0, 'nonce': 'n', 'checksum': 'c'}),
    json.dumps({'session_id': 'x', 'rotation_index': 0, 'nonce': 'n', 'checksum': 'c',
                'issued_at': 'yesterday'}),
])
def test_decode_rejects_malformed_input(raw):
    with pytest.raises(MalformedPayload):
        ScanPayload.decode(raw)

def test_missing_secret_is_refused():
    with pytest.raises(ValueError):
        TokenService('')
