import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from gatepass.extensions import db
from gatepass.models import Registration
from gatepass.services.checkin_service import CheckInService, OutcomeStatus, ScanSource
from gatepass.services.errors import StorageError, Unauthorized


def reload(registration_id):
    db.session.expire_all()
    return db.session.get(Registration, registration_id)


def test_pending_registration_checks_in(event, organizer, register):
    registration = register(event)

    outcome = CheckInService.check_in(event.id, organizer.id, registration.credential)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.message == 'Ada Lovelace has been checked in.'
    stored = reload(registration.id)
    assert stored.checked_in is True
    assert stored.checked_in_at == outcome.registration['checked_in_at']
    assert stored.checked_in_at >= stored.registered_at


def test_second_scan_is_duplicate_and_keeps_timestamp(event, organizer, register):
    registration = register(event)
    first = CheckInService.check_in(event.id, organizer.id, registration.credential)

    second = CheckInService.check_in(event.id, organizer.id, registration.credential)

    assert second.status == OutcomeStatus.DUPLICATE
    assert second.registration['checked_in_at'] == first.registration['checked_in_at']
    assert 'already checked in' in second.message
    assert reload(registration.id).checked_in_at == first.registration['checked_in_at']


def test_unknown_credential_is_not_found(event, organizer, register):
    registration = register(event)

    outcome = CheckInService.check_in(event.id, organizer.id, 'garbage')

    assert outcome.status == OutcomeStatus.NOT_FOUND
    assert outcome.registration is None
    assert outcome.message == 'This QR code is not valid for this event.'
    assert reload(registration.id).checked_in is False


def test_blank_credential_is_not_found(event, organizer):
    outcome = CheckInService.check_in(event.id, organizer.id, '   ')
    assert outcome.status == OutcomeStatus.NOT_FOUND


def test_surrounding_whitespace_is_ignored(event, organizer, register):
    registration = register(event)

    outcome = CheckInService.check_in(event.id, organizer.id, f"  {registration.credential}\n")

    assert outcome.status == OutcomeStatus.SUCCESS


def test_credential_from_another_event_is_not_found(make_event, organizer, register):
    concert = make_event('Concert')
    workshop = make_event('Workshop')
    registration = register(concert)

    outcome = CheckInService.check_in(workshop.id, organizer.id, registration.credential)

    assert outcome.status == OutcomeStatus.NOT_FOUND
    assert reload(registration.id).checked_in is False


def test_foreign_event_is_unauthorized(event, other_organizer, register):
    registration = register(event)

    with pytest.raises(Unauthorized) as exc_info:
        CheckInService.check_in(event.id, other_organizer.id, registration.credential)

    assert reload(registration.id).checked_in is False
    assert exc_info.value.message == 'Event not found or unauthorized'


def test_missing_event_looks_like_foreign_event(organizer):
    with pytest.raises(Unauthorized) as exc_info:
        CheckInService.check_in('no-such-event', organizer.id, 'anything')
    assert exc_info.value.message == 'Event not found or unauthorized'


def test_checkin_stamp_never_precedes_registration(event, organizer, register):
    registration = register(event)
    # Registration stamped by a clock running ahead of ours
    future = datetime.now() + timedelta(hours=1)
    registration.registered_at = future
    db.session.commit()

    outcome = CheckInService.check_in(event.id, organizer.id, registration.credential)

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.registration['checked_in_at'] == future


def test_lost_race_reports_duplicate(monkeypatch, event, organizer, register):
    registration = register(event)
    transition = CheckInService._commit_transition

    def other_device_wins(reg):
        # Another writer completes the transition first
        transition(reg)
        return False

    monkeypatch.setattr(CheckInService, '_commit_transition', staticmethod(other_device_wins))

    outcome = CheckInService.check_in(event.id, organizer.id, registration.credential)

    assert outcome.status == OutcomeStatus.DUPLICATE
    assert outcome.registration['checked_in_at'] is not None


def test_concurrent_scans_yield_exactly_one_success(app, event, organizer, register):
    registration = register(event)
    event_id, organizer_id = event.id, organizer.id
    credential, registration_id = registration.credential, registration.id
    db.session.commit()

    scanners = 8
    barrier = threading.Barrier(scanners)

    def scan(_):
        with app.app_context():
            barrier.wait()
            return CheckInService.check_in(event_id, organizer_id, credential, source=ScanSource.CAMERA)

    with ThreadPoolExecutor(max_workers=scanners) as pool:
        outcomes = list(pool.map(scan, range(scanners)))

    statuses = [outcome.status for outcome in outcomes]
    assert statuses.count(OutcomeStatus.SUCCESS) == 1
    assert statuses.count(OutcomeStatus.DUPLICATE) == scanners - 1

    success = next(outcome for outcome in outcomes if outcome.is_success)
    stored = reload(registration_id)
    assert stored.checked_in_at == success.registration['checked_in_at']
    for outcome in outcomes:
        assert outcome.registration['checked_in_at'] == stored.checked_in_at


def test_storage_failure_raises_and_leaves_registration_pending(monkeypatch, event, organizer, register):
    registration = register(event)

    def unavailable(event_id, credential):
        raise OperationalError('SELECT', {}, Exception('database is locked'))

    monkeypatch.setattr(CheckInService, '_resolve', staticmethod(unavailable))

    with pytest.raises(StorageError) as exc_info:
        CheckInService.check_in(event.id, organizer.id, registration.credential)

    assert exc_info.value.transient is True
    monkeypatch.undo()
    assert reload(registration.id).checked_in is False


def test_tally_counts_registrations_and_checkins(event, organizer, register):
    ada = register(event, 'Ada Lovelace')
    register(event, 'Grace Hopper')
    register(event, 'Alan Turing')
    CheckInService.check_in(event.id, organizer.id, ada.credential)

    assert CheckInService.get_tally(event.id, organizer.id) == {'total': 3, 'checked_in': 1}


def test_tally_requires_ownership(event, other_organizer):
    with pytest.raises(Unauthorized):
        CheckInService.get_tally(event.id, other_organizer.id)


def test_outcome_serializes_datetimes(event, organizer, register):
    registration = register(event)

    data = CheckInService.check_in(event.id, organizer.id, registration.credential,
                                   source=ScanSource.MANUAL).to_dict()

    assert data['status'] == 'success'
    assert data['success'] is True
    assert data['source'] == 'manual'
    assert isinstance(data['registration']['checked_in_at'], str)
    assert data['registration']['name'] == 'Ada Lovelace'
