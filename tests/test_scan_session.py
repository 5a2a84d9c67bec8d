import threading
import time

import pytest

from gatepass.extensions import db
from gatepass.services.checkin_service import CheckInService, OutcomeStatus, ScanOutcome, ScanSource
from gatepass.services.decoder_adapter import DecoderAdapter
from gatepass.services.errors import (
    CaptureError, CaptureReason, SessionClosedError, StorageError, Unauthorized
)
from gatepass.services.scan_session import ScanHistory, ScanSession, SessionState

from tests.fakes import FakeDecoder, FakeFrameSource


def camera(source):
    return DecoderAdapter(lambda: source, FakeDecoder(), poll_interval=0.001)


@pytest.fixture
def open_session(app, event, organizer):
    sessions = []

    def _open(target=None, **kwargs):
        session = ScanSession(app, (target or event).id, organizer.id, **kwargs)
        sessions.append(session)
        return session.open()

    yield _open

    for session in sessions:
        session.close()


@pytest.fixture
def attendees(event, register):
    return {
        'ada': register(event, 'Ada Lovelace'),
        'grace': register(event, 'Grace Hopper'),
        'alan': register(event, 'Alan Turing'),
    }


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


def test_ada_scenario(make_event, register, open_session):
    event = make_event(max_attendees=2)
    ada = register(event)
    session = open_session(event)
    assert session.tally.checked_in == 0

    first = session.submit_manual(ada.credential)
    assert first.status == OutcomeStatus.SUCCESS
    assert session.tally.checked_in == 1

    again = session.submit_manual(ada.credential)
    assert again.status == OutcomeStatus.DUPLICATE
    assert session.tally.checked_in == 1

    garbage = session.submit_manual('garbage')
    assert garbage.status == OutcomeStatus.NOT_FOUND
    assert session.tally.checked_in == 1

    assert [outcome.status for outcome in session.history] == ['not_found', 'duplicate', 'success']


def test_tally_starts_from_stored_counts(event, organizer, attendees, open_session):
    CheckInService.check_in(event.id, organizer.id, attendees['grace'].credential)

    session = open_session()

    assert session.tally.to_dict() == {'total': 3, 'checked_in': 1, 'remaining': 2}


def test_blank_manual_entry_is_ignored(open_session):
    session = open_session()

    assert session.submit_manual('   ') is None
    assert len(session.history) == 0


def test_camera_decode_checks_in_and_releases_device(attendees, open_session):
    source = FakeFrameSource(['noise', attendees['ada'].credential])
    session = open_session(adapter=camera(source))

    assert session.start_capture()
    assert session.wait_for_capture(timeout=5)

    latest = session.history.entries()[0]
    assert latest.status == OutcomeStatus.SUCCESS
    assert latest.source == ScanSource.CAMERA
    assert source.released == 1
    assert not session.capturing


def test_one_decode_per_capture(attendees, open_session):
    ada, grace = attendees['ada'].credential, attendees['grace'].credential
    # Ada stays in front of the camera for several frames
    source = FakeFrameSource([ada, ada, ada])
    session = open_session(adapter=camera(source))

    session.start_capture()
    session.wait_for_capture(timeout=5)
    assert [outcome.credential for outcome in session.history] == [ada]

    source.frames.clear()
    source.show(grace)
    session.start_capture()
    session.wait_for_capture(timeout=5)
    assert [outcome.credential for outcome in session.history] == [grace, ada]
    assert session.tally.checked_in == 2


def test_capture_error_keeps_session_open(attendees, open_session):
    source = FakeFrameSource(error=CaptureError(CaptureReason.DEVICE_BUSY))
    session = open_session(adapter=camera(source))

    session.start_capture()
    session.wait_for_capture(timeout=5)

    notice = session.notices[0]
    assert notice.code == 'capture_error'
    assert not notice.fatal
    assert session.is_open
    assert session.submit_manual(attendees['ada'].credential).is_success


def test_session_without_camera_reports_unsupported(open_session):
    session = open_session()

    with pytest.raises(CaptureError) as exc_info:
        session.start_capture()

    assert exc_info.value.reason == CaptureReason.UNSUPPORTED
    assert session.is_open


def test_check_ins_run_one_at_a_time(monkeypatch, open_session):
    session = open_session()
    lock = threading.Lock()
    counts = {'active': 0, 'peak': 0}

    def slow_check_in(event_id, organizer_id, credential, source=ScanSource.API):
        with lock:
            counts['active'] += 1
            counts['peak'] = max(counts['peak'], counts['active'])
        time.sleep(0.05)
        with lock:
            counts['active'] -= 1
        return ScanOutcome(OutcomeStatus.NOT_FOUND, credential, source=source)

    monkeypatch.setattr(CheckInService, 'check_in', staticmethod(slow_check_in))

    threads = [threading.Thread(target=session.submit_manual, args=(f'code-{i}',)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert counts['peak'] == 1
    # Queued, never dropped
    assert sorted(outcome.credential for outcome in session.history) == [f'code-{i}' for i in range(4)]


def test_check_in_timeout_is_reported_and_session_resumes(monkeypatch, attendees, open_session):
    session = open_session(checkin_timeout=0.1)
    release = threading.Event()

    def hung_check_in(event_id, organizer_id, credential, source=ScanSource.API):
        release.wait(5)
        return ScanOutcome(OutcomeStatus.NOT_FOUND, credential, source=source)

    monkeypatch.setattr(CheckInService, 'check_in', staticmethod(hung_check_in))

    assert session.submit_manual('slow-code') is None
    assert session.notices[0].code == 'checkin_timeout'
    assert session.is_open
    assert len(session.history) == 0

    release.set()
    monkeypatch.undo()
    session.checkin_timeout = 5.0

    assert session.submit_manual(attendees['ada'].credential).is_success


def test_storage_error_is_reported_and_retry_is_safe(monkeypatch, attendees, open_session):
    session = open_session()

    def unavailable(event_id, organizer_id, credential, source=ScanSource.API):
        raise StorageError("Check-in could not be completed, please try again")

    monkeypatch.setattr(CheckInService, 'check_in', staticmethod(unavailable))
    assert session.submit_manual(attendees['ada'].credential) is None
    assert session.notices[0].code == 'storage_error'
    assert session.tally.checked_in == 0

    monkeypatch.undo()
    assert session.submit_manual(attendees['ada'].credential).is_success
    assert session.tally.checked_in == 1


def test_losing_ownership_terminates_session(event, other_organizer, attendees, open_session):
    notices = []
    session = open_session(on_notice=notices.append)

    event.created_by = other_organizer.id
    db.session.commit()

    with pytest.raises(Unauthorized):
        session.submit_manual(attendees['ada'].credential)

    assert session.state == SessionState.TERMINATED
    assert notices[-1].fatal
    assert notices[-1].code == 'unauthorized'
    with pytest.raises(Unauthorized):
        session.submit_manual(attendees['grace'].credential)


def test_opening_a_foreign_event_is_unauthorized(app, event, other_organizer):
    session = ScanSession(app, event.id, other_organizer.id)

    with pytest.raises(Unauthorized):
        session.open()

    assert session.state == SessionState.TERMINATED
    assert session.notices[0].fatal


def test_history_keeps_most_recent_entries(open_session):
    session = open_session(history_size=3)

    for i in range(5):
        session.submit_manual(f'bad-{i}')

    assert [outcome.credential for outcome in session.history] == ['bad-4', 'bad-3', 'bad-2']


def test_history_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ScanHistory(0)


def test_close_releases_camera_and_rejects_input(open_session):
    source = FakeFrameSource()
    session = open_session(adapter=camera(source))

    session.start_capture()
    assert wait_until(lambda: source.opened == 1)

    session.close()

    assert source.released == 1
    assert session.wait_for_capture(timeout=5)
    with pytest.raises(SessionClosedError):
        session.submit_manual('anything')


def test_close_is_idempotent(open_session):
    session = open_session()
    session.close()
    session.close()
    assert session.state == SessionState.CLOSED


def test_outcome_callback_errors_do_not_break_session(attendees, open_session):
    def broken_display(outcome):
        raise RuntimeError('display unplugged')

    session = open_session(on_outcome=broken_display)

    assert session.submit_manual(attendees['ada'].credential).is_success
    assert session.tally.checked_in == 1


def test_check_in_finishing_after_timeout_is_still_recorded(monkeypatch, event, organizer, attendees,
                                                           open_session):
    outcomes = []
    session = open_session(checkin_timeout=0.1, on_outcome=outcomes.append)
    check_in = CheckInService.check_in

    def slow_check_in(*args, **kwargs):
        time.sleep(0.3)
        return check_in(*args, **kwargs)

    monkeypatch.setattr(CheckInService, 'check_in', staticmethod(slow_check_in))

    assert session.submit_manual(attendees['ada'].credential) is None
    assert session.notices[0].code == 'checkin_timeout'

    # The write committed after the timeout; the session learns about it
    assert wait_until(lambda: session.tally.checked_in == 1)
    assert [outcome.status for outcome in session.history] == ['success']
    assert [outcome.status for outcome in outcomes] == ['success']

    monkeypatch.undo()
    retry = session.submit_manual(attendees['ada'].credential)
    assert retry.status == OutcomeStatus.DUPLICATE
    assert session.tally.checked_in == 1
    assert CheckInService.get_tally(event.id, organizer.id)['checked_in'] == 1


def test_input_queued_behind_hung_check_in_is_closed_not_cancelled(monkeypatch, open_session):
    session = open_session(checkin_timeout=0.5)
    release = threading.Event()

    def hung_check_in(event_id, organizer_id, credential, source=ScanSource.API):
        release.wait(5)
        return ScanOutcome(OutcomeStatus.NOT_FOUND, credential, source=source)

    monkeypatch.setattr(CheckInService, 'check_in', staticmethod(hung_check_in))
    assert session.submit_manual('stuck-code') is None

    errors = []

    def submit_second():
        try:
            session.submit_manual('queued-code')
        except Exception as e:
            errors.append(e)

    worker = threading.Thread(target=submit_second)
    worker.start()
    time.sleep(0.1)
    session.close()
    worker.join(timeout=5)
    release.set()

    assert len(errors) == 1
    assert isinstance(errors[0], SessionClosedError)
