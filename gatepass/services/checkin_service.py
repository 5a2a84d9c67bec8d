# services/checkin_service.py
"""
Check-in verification and state transition.

Takes a scanned credential and an event scope, resolves it to a registration
and applies the single pending -> checked_in transition. The transition is a
conditional UPDATE keyed on the current state, so two devices scanning the
same credential at the same moment get exactly one success and one duplicate.
Correctness rests on the database's single-row update atomicity, not on any
in-process lock.
"""

import logging
from datetime import datetime

from sqlalchemy import update, func
from sqlalchemy.exc import SQLAlchemyError

from gatepass.extensions import db
from gatepass.models import Event, Registration
from gatepass.services.errors import Unauthorized, StorageError

logger = logging.getLogger('checkin_service')


class OutcomeStatus:
    """The three terminal results of processing one scanned credential."""
    SUCCESS = 'success'
    DUPLICATE = 'duplicate'
    NOT_FOUND = 'not_found'

    ALL = (SUCCESS, DUPLICATE, NOT_FOUND)


class ScanSource:
    """Where a credential came from."""
    CAMERA = 'camera'
    MANUAL = 'manual'
    API = 'api'


class ScanOutcome:
    """
    Result of one processed credential: status, registration snapshot and timestamp.
    This triple is what tallies, histories and notifications are built from.
    """

    def __init__(self, status, credential, registration=None, timestamp=None, source=ScanSource.API):
        if status not in OutcomeStatus.ALL:
            raise ValueError(f"Unknown outcome status: {status}")
        self.status = status
        self.credential = credential
        self.registration = registration
        self.timestamp = timestamp or datetime.now()
        self.source = source

    @property
    def is_success(self):
        return self.status == OutcomeStatus.SUCCESS

    @property
    def attendee_name(self):
        if self.registration:
            return self.registration['name']
        return 'Unknown'

    @property
    def message(self):
        if self.status == OutcomeStatus.SUCCESS:
            return f"{self.attendee_name} has been checked in."
        if self.status == OutcomeStatus.DUPLICATE:
            checked_in_at = self.registration.get('checked_in_at') if self.registration else None
            if checked_in_at:
                return f"{self.attendee_name} was already checked in at {checked_in_at:%H:%M:%S}."
            return f"{self.attendee_name} was already checked in."
        return "This QR code is not valid for this event."

    def to_dict(self):
        registration = None
        if self.registration:
            registration = {
                key: value.isoformat() if isinstance(value, datetime) else value
                for key, value in self.registration.items()
            }
        return {
            'status': self.status,
            'success': self.is_success,
            'message': self.message,
            'credential': self.credential,
            'registration': registration,
            'timestamp': self.timestamp.isoformat(),
            'source': self.source
        }

    def __repr__(self):
        return f'<ScanOutcome {self.status} {self.attendee_name}>'


class CheckInService:
    """The check-in state machine. All methods need an application context."""

    @staticmethod
    def authorize(event_id, organizer_id):
        """
        Confirm the organizer owns the event.

        Returns:
            Event: the owned event

        Raises:
            Unauthorized: the event is absent or owned by someone else
        """
        if not event_id or not organizer_id:
            raise Unauthorized(event_id)

        event = (
            db.session.query(Event)
            .filter_by(id=event_id, created_by=organizer_id)
            .first()
        )
        if not event:
            logger.warning(f"Check-in authorization failed: event {event_id}, organizer {organizer_id}")
            raise Unauthorized(event_id)
        return event

    @staticmethod
    def check_in(event_id, organizer_id, credential, source=ScanSource.API):
        """
        Verify a credential and check the registration in.

        Args:
            event_id: Event scope of the scan
            organizer_id: Opaque identity of the operator
            credential: Decoded or typed credential string
            source: ScanSource value, recorded on the outcome

        Returns:
            ScanOutcome: success, duplicate or not_found

        Raises:
            Unauthorized: organizer does not own the event
            StorageError: storage unavailable; the call is safe to retry
        """
        credential = (credential or '').strip()

        try:
            CheckInService.authorize(event_id, organizer_id)

            if not credential:
                return ScanOutcome(OutcomeStatus.NOT_FOUND, credential, source=source)

            registration = CheckInService._resolve(event_id, credential)
            if registration is None:
                logger.info(f"Check-in rejected for event {event_id}: unknown credential")
                return ScanOutcome(OutcomeStatus.NOT_FOUND, credential, source=source)

            if registration.checked_in:
                logger.info(f"Duplicate check-in: {registration.id} already checked in "
                            f"at {registration.checked_in_at}")
                return ScanOutcome(OutcomeStatus.DUPLICATE, credential,
                                   registration=registration.snapshot(), source=source)

            won = CheckInService._commit_transition(registration)

            # Re-read so the outcome carries exactly what was persisted
            registration = CheckInService._resolve(event_id, credential)
            snapshot = registration.snapshot()
            db.session.commit()

            if not won:
                logger.info(f"Check-in race lost for {snapshot['id']}: reporting duplicate")
                return ScanOutcome(OutcomeStatus.DUPLICATE, credential, registration=snapshot, source=source)

            logger.info(f"Checked in {snapshot['id']} for event {event_id} via {source}")
            return ScanOutcome(OutcomeStatus.SUCCESS, credential, registration=snapshot, source=source)

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Storage error during check-in for event {event_id}: {str(e)}")
            raise StorageError("Check-in could not be completed, please try again") from e

    @staticmethod
    def get_tally(event_id, organizer_id):
        """
        Registration totals for an owned event.

        Returns:
            dict: {'total': int, 'checked_in': int}
        """
        try:
            CheckInService.authorize(event_id, organizer_id)

            # checked_in_at is non-null exactly when checked_in is set
            total, checked_in = (
                db.session.query(
                    func.count(Registration.id),
                    func.count(Registration.checked_in_at)
                )
                .filter(Registration.event_id == event_id)
                .one()
            )
            return {'total': total, 'checked_in': checked_in}

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Storage error loading tally for event {event_id}: {str(e)}")
            raise StorageError("Could not load attendance totals") from e

    # Private Helper Methods

    @staticmethod
    def _resolve(event_id, credential):
        """Look up the registration by event AND credential, bypassing the identity map."""
        return (
            db.session.query(Registration)
            .filter(
                Registration.event_id == event_id,
                Registration.credential == credential
            )
            .populate_existing()
            .one_or_none()
        )

    @staticmethod
    def _commit_transition(registration):
        """
        Conditionally move a registration from pending to checked_in.

        Returns:
            bool: True if this call performed the transition, False if another
            writer got there first
        """
        # Never stamp earlier than the registration itself
        checked_in_at = max(datetime.now(), registration.registered_at)

        result = db.session.execute(
            update(Registration)
            .where(
                Registration.id == registration.id,
                Registration.event_id == registration.event_id,
                Registration.checked_in.is_(False)
            )
            .values(checked_in=True, checked_in_at=checked_in_at)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1
