"""Tests for at-most-once attendance recording."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from qr_attendance.services.attendance_recorder import AttendanceRecorder, RecordOutcome
from qr_attendance.services.session_store import StoreUnavailable
from qr_attendance.utils.identity import Identity

def scan_and_submit(manager, session_id, student, photo='/uploads/photo.jpg'):
    result = manager.scan(manager.get_current_payload(session_id).encode(), student)
    assert result.accepted
    return manager.submit_attendance(
        session_id, student, photo, rotation_index=result.rotation_index, device_info='pytest'
    )

def test_double_submit_records_once(manager, session_id, student, store):
    """Scenario C: the second submission in the same rotation is already recorded."""
    first = scan_and_submit(manager, session_id, student)
    assert first.outcome is RecordOutcome.RECORDED
    assert first.success

    second = scan_and_submit(manager, session_id, student)
    assert second.outcome is RecordOutcome.ALREADY_RECORDED
    assert second.success
    assert second.record['student_id'] == student.subject

    assert len(store.list_records(session_id)) == 1
    session = store.get(session_id)
    assert session['students_present'] == [student.subject]
    assert session['total_present'] == 1

def test_record_keeps_verification_details(manager, session_id, student, store):
    scan_and_submit(manager, session_id, student, photo='/uploads/attendance_photos/x/201.jpg')

    record = store.get_record(session_id, student.subject)
    assert record['photo_url'] == '/uploads/attendance_photos/x/201.jpg'
    assert record['device_info'] == 'pytest'
    assert record['rotation_index'] == 0
    assert record['student_email'] == student.email

def test_concurrent_double_submit_creates_one_record(manager, session_id, student, store):
    session = manager.get_session(session_id)
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(
            lambda _: manager.recorder.record(session, student, 0, verification_ref='ref'),
            range(4)
        ))

    outcomes = [r.outcome for r in results]
    assert outcomes.count(RecordOutcome.RECORDED) == 1
    assert outcomes.count(RecordOutcome.ALREADY_RECORDED) == 3
    assert len(store.list_records(session_id)) == 1
    assert store.get(session_id)['total_present'] == 1

def test_aggregate_matches_distinct_students(manager, session_id, store):
    students = [
        Identity(subject=str(300 + i), role='student', email=f's{i}@pwioi.com', name=f'Student {i}')
        for i in range(8)
    ]
    session = manager.get_session(session_id)
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda s: manager.recorder.record(session, s, 0), students))

    assert all(r.outcome is RecordOutcome.RECORDED for r in results)
    stored = store.get(session_id)
    assert stored['total_present'] == 8
    assert sorted(stored['students_present']) == sorted(s.subject for s in students)

def test_late_status_after_grace_period(manager, session_id, student, other_student, clock, store):
    engine = manager.engine(session_id)
    scan_and_submit(manager, session_id, student)

    clock.advance(21)
    engine.tick()
    scan_and_submit(manager, session_id, other_student)

    assert store.get_record(session_id, student.subject)['status'] == 'present'
    assert store.get_record(session_id, other_student.subject)['status'] == 'late'

def test_store_outage_reports_unavailable(manager, session_id, student, flaky_store, clock, store):
    flaky_store.fail_on = {'insert_record_if_absent'}
    recorder = AttendanceRecorder(flaky_store, clock, retry_attempts=2, retry_backoff_seconds=0)

    result = recorder.record(manager.get_session(session_id), student, 0)
    assert result.outcome is RecordOutcome.STORE_UNAVAILABLE
    assert not result.success
    assert flaky_store.calls.count('insert_record_if_absent') == 2
    assert store.list_records(session_id) == []

def test_partial_write_is_reconciled(manager, session_id, student, other_student, flaky_store, clock, store):
    recorder = AttendanceRecorder(flaky_store, clock, retry_attempts=1, retry_backoff_seconds=0)
    session = manager.get_session(session_id)

    flaky_store.fail_on = {'update'}
    result = recorder.record(session, student, 0)
    assert result.outcome is RecordOutcome.PARTIAL_WRITE_FAILURE
    assert session_id in recorder.pending_reconciliation
    assert store.get_record(session_id, student.subject) is not None
    assert store.get(session_id)['total_present'] == 0

    flaky_store.fail_on = set()
    assert recorder.reconcile_pending() == 1
    assert recorder.pending_reconciliation == set()
    stored = store.get(session_id)
    assert stored['students_present'] == [student.subject]
    assert stored['total_present'] == 1

def test_duplicate_submit_repairs_pending_aggregate(manager, session_id, student, flaky_store, clock, store):
    recorder = AttendanceRecorder(flaky_store, clock, retry_attempts=1, retry_backoff_seconds=0)
    session = manager.get_session(session_id)

    flaky_store.fail_on = {'update'}
    recorder.record(session, student, 0)

    flaky_store.fail_on = set()
    result = recorder.record(session, student, 0)
    assert result.outcome is RecordOutcome.ALREADY_RECORDED
    assert store.get(session_id)['total_present'] == 1

def test_manager_reconcile_rebuilds_from_records(manager, session_id, student, store):
    scan_and_submit(manager, session_id, student)
    store.update(session_id, {'students_present': [], 'total_present': 0})

    assert manager.reconcile(session_id) is True
    assert store.get(session_id)['total_present'] == 1

def test_insert_committed_before_timeout_is_recorded(manager, session_id, student, flaky_store, clock, store):
    recorder = AttendanceRecorder(flaky_store, clock, retry_attempts=3, retry_backoff_seconds=0)
    flaky_store.late_commit_on = {'insert_record_if_absent': 1}

    result = recorder.record(manager.get_session(session_id), student, 0)
    assert result.outcome is RecordOutcome.RECORDED
    assert flaky_store.calls.count('insert_record_if_absent') == 2
    assert recorder.pending_reconciliation == set()

    assert len(store.list_records(session_id)) == 1
    stored = store.get(session_id)
    assert stored['students_present'] == [student.subject]
    assert stored['total_present'] == 1

def test_retried_insert_over_older_record_is_duplicate(manager, session_id, student, flaky_store, clock, store):
    scan_and_submit(manager, session_id, student)
    store.update(session_id, {'students_present': [], 'total_present': 0})

    clock.advance(3)
    recorder = AttendanceRecorder(flaky_store, clock, retry_attempts=2, retry_backoff_seconds=0)
    flaky_store.late_commit_on = {'insert_record_if_absent': 1}

    result = recorder.record(manager.get_session(session_id), student, 0)
    assert result.outcome is RecordOutcome.ALREADY_RECORDED
    assert result.record['recorded_at'] < clock()
    assert store.get(session_id)['total_present'] == 1

def test_timed_out_insert_is_reconciled_by_sweep(manager, session_id, student, flaky_store, store):
    manager.recorder._store = flaky_store
    flaky_store.late_commit_on = {'insert_record_if_absent': manager.recorder.retry_attempts}

    result = manager.submit_attendance(session_id, student, None, rotation_index=0)
    assert result.outcome is RecordOutcome.STORE_UNAVAILABLE
    assert session_id in manager.recorder.pending_reconciliation
    assert store.get_record(session_id, student.subject) is not None
    assert store.get(session_id)['total_present'] == 0

    manager.expire_lapsed()
    assert manager.recorder.pending_reconciliation == set()
    assert store.get(session_id)['students_present'] == [student.subject]

def test_insert_violating_other_constraints_is_not_a_duplicate(session_id, student, store, clock):
    with pytest.raises(StoreUnavailable):
        store.insert_record_if_absent({
            'session_id': session_id,
            'student_id': student.subject,
            'recorded_at': clock(),
            'rotation_index': None,
            'status': 'present',
        })
    assert store.get_record(session_id, student.subject) is None
