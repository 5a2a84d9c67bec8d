# services/registration_service.py
"""
Event creation and attendee registration.
Issues each new registration its credential and queues the credential email.
Registrations always start pending; only CheckInService moves them on.
"""

import re
import logging
from datetime import datetime

from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from gatepass.extensions import db, email_service
from gatepass.models import Event, Organizer, Registration
from gatepass.services.checkin_service import CheckInService
from gatepass.services.credential_service import CredentialService
from gatepass.services.errors import (
    AlreadyRegistered, EventFull, EventNotFound, InvalidEvent, InvalidRegistration,
    RegistrationNotFound, StorageError
)

logger = logging.getLogger('registration_service')

EMAIL_PATTERN = re.compile(r'^[^@\s]+@[^@\s]+\.[^@\s]+$')

# Event details an organizer may change after creation
EVENT_FIELDS = ('title', 'date', 'location', 'description', 'max_attendees')


class RegistrationService:
    """Service class for event and registration management."""

    @staticmethod
    def create_event(organizer_id, title, date, location, description=None, max_attendees=None):
        """
        Create an event owned by an organizer.

        Args:
            organizer_id: Owner identity
            title: Event title
            date: Scheduled datetime
            location: Venue
            description: Optional description
            max_attendees: Optional positive capacity

        Returns:
            Event: the created event
        """
        title, location = RegistrationService._validate_event(title, date, location, max_attendees)

        try:
            if not db.session.get(Organizer, organizer_id):
                raise InvalidEvent("Organizer not found")

            event = Event(
                created_by=organizer_id,
                title=title,
                description=description,
                date=date,
                location=location,
                max_attendees=max_attendees
            )
            db.session.add(event)
            db.session.commit()

            logger.info(f"Event created: {event.id} '{title}' by {organizer_id}")
            return event

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error creating event: {str(e)}")
            raise StorageError("Event could not be created") from e

    @staticmethod
    def update_event(event_id, organizer_id, **changes):
        """
        Change the details of an owned event. Fields left out keep their values;
        max_attendees=None removes the capacity limit.

        Args:
            event_id: Event to change
            organizer_id: Identity of the requesting organizer
            **changes: any of title, date, location, description, max_attendees

        Returns:
            Event: the updated event

        Raises:
            Unauthorized, InvalidEvent, StorageError
        """
        unknown = set(changes) - set(EVENT_FIELDS)
        if unknown:
            raise InvalidEvent(f"Unknown event fields: {', '.join(sorted(unknown))}")

        event = CheckInService.authorize(event_id, organizer_id)

        values = {field: getattr(event, field) for field in EVENT_FIELDS}
        values.update(changes)
        values['title'], values['location'] = RegistrationService._validate_event(
            values['title'], values['date'], values['location'], values['max_attendees']
        )

        try:
            if values['max_attendees'] is not None and values['max_attendees'] < event.registration_count:
                raise InvalidEvent("Capacity cannot be lower than the number of registrations")

            for field, value in values.items():
                setattr(event, field, value)
            db.session.commit()

            logger.info(f"Event updated: {event.id} ({', '.join(sorted(changes)) or 'no changes'})")
            return event

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error updating event {event_id}: {str(e)}")
            raise StorageError("Event could not be updated") from e

    @staticmethod
    def delete_event(event_id, organizer_id):
        """
        Delete an owned event. Its registrations go with it.

        Raises:
            Unauthorized, StorageError
        """
        event = CheckInService.authorize(event_id, organizer_id)

        try:
            # Registrations are removed by the ON DELETE CASCADE foreign key
            db.session.delete(event)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error deleting event {event_id}: {str(e)}")
            raise StorageError("Event could not be deleted") from e

        logger.info(f"Event deleted: {event_id} by {organizer_id}")

    @staticmethod
    def register(event_id, name, email, phone=None, send_email=True):
        """
        Register an attendee and issue a credential.

        Args:
            event_id: Event to register for
            name: Attendee display name
            email: Contact email, unique per event
            phone: Optional phone number
            send_email: Queue the credential email after registering

        Returns:
            tuple: (Registration, email task id or None)

        Raises:
            InvalidRegistration, EventNotFound, EventFull, AlreadyRegistered, StorageError
        """
        name = (name or '').strip()
        email = (email or '').strip().lower()
        phone = (phone or '').strip() or None

        if not name:
            raise InvalidRegistration("Name is required")
        if not email or not EMAIL_PATTERN.match(email):
            raise InvalidRegistration("A valid email address is required")

        try:
            event = db.session.get(Event, event_id)
            if not event:
                raise EventNotFound()

            # Capacity is checked here, before the insert; it is not a storage constraint
            if event.is_full():
                logger.info(f"Registration rejected, event {event_id} is full")
                raise EventFull()

            if RegistrationService._email_registered(event_id, email):
                raise AlreadyRegistered()

            registration = RegistrationService._insert_with_unique_credential(event, name, email, phone)

        except SQLAlchemyError as e:
            db.session.rollback()
            logger.error(f"Database error during registration for event {event_id}: {str(e)}")
            raise StorageError("Registration could not be completed") from e

        logger.info(f"Registered {registration.id} for event {event_id}")

        task_id = None
        if send_email:
            try:
                task_id = RegistrationService._queue_credential_email(registration, event)
            except Exception as e:
                # The registration stands even if the email cannot be queued
                logger.warning(f"Credential email failed for {registration.id}: {str(e)}")

        return registration, task_id

    @staticmethod
    def send_credential_email(event_id, organizer_id, registration_id):
        """
        Resend the credential email for one registration of an owned event.

        Returns:
            str: email task id
        """
        event = CheckInService.authorize(event_id, organizer_id)

        registration = (
            db.session.query(Registration)
            .filter_by(id=registration_id, event_id=event_id)
            .first()
        )
        if not registration:
            raise RegistrationNotFound()

        return RegistrationService._queue_credential_email(registration, event)

    @staticmethod
    def send_all_credential_emails(event_id, organizer_id):
        """
        Queue credential emails for every registration of an owned event.

        Returns:
            dict: {'queued': [...], 'errors': [...]}
        """
        event = CheckInService.authorize(event_id, organizer_id)

        results = {
            'queued': [],
            'errors': []
        }

        registrations = (
            db.session.query(Registration)
            .filter_by(event_id=event_id)
            .order_by(Registration.registered_at)
            .all()
        )

        for registration in registrations:
            try:
                task_id = RegistrationService._queue_credential_email(registration, event)
                results['queued'].append({
                    'registration_id': registration.id,
                    'task_id': task_id
                })
            except Exception as e:
                logger.warning(f"Credential email failed for {registration.id}: {str(e)}")
                results['errors'].append({
                    'registration_id': registration.id,
                    'error': str(e)
                })

        logger.info(f"Queued {len(results['queued'])} credential emails for event {event_id}, "
                    f"{len(results['errors'])} failed")
        return results

    # Private Helper Methods

    @staticmethod
    def _validate_event(title, date, location, max_attendees):
        """Returns the stripped (title, location)."""
        title = (title or '').strip()
        location = (location or '').strip()

        if not title:
            raise InvalidEvent("Event title is required")
        if not location:
            raise InvalidEvent("Event location is required")
        if not isinstance(date, datetime):
            raise InvalidEvent("Event date must be a datetime")
        if max_attendees is not None:
            if isinstance(max_attendees, bool) or not isinstance(max_attendees, int) or max_attendees <= 0:
                raise InvalidEvent("Capacity must be a positive whole number")

        return title, location

    @staticmethod
    def _email_registered(event_id, email):
        return (
            db.session.query(Registration.id)
            .filter_by(event_id=event_id, email=email)
            .first()
        ) is not None

    @staticmethod
    def _insert_with_unique_credential(event, name, email, phone):
        """
        Insert the registration, retrying with a fresh credential if the unique
        constraint on credentials rejects the first one.
        """
        attempts = current_app.config.get('CREDENTIAL_INSERT_ATTEMPTS', 3)

        for attempt in range(1, attempts + 1):
            registration = Registration(
                event_id=event.id,
                name=name,
                email=email,
                phone=phone,
                credential=CredentialService.generate(event.id),
                checked_in=False,
                registered_at=datetime.now()
            )
            db.session.add(registration)

            try:
                db.session.commit()
                return registration
            except IntegrityError as e:
                db.session.rollback()

                # The other unique constraint: someone registered this email concurrently
                if RegistrationService._email_registered(event.id, email):
                    raise AlreadyRegistered() from e

                logger.warning(f"Credential collision for event {event.id} (attempt {attempt}/{attempts})")
                if attempt == attempts:
                    raise StorageError("Could not issue a unique credential") from e

    @staticmethod
    def _queue_credential_email(registration, event):
        size = current_app.config.get('CREDENTIAL_EMAIL_IMAGE_SIZE', 300)
        image = CredentialService.render(registration.credential, size)
        return email_service.send_credential(registration, event, image)
