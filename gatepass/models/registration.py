# models/registration.py
from datetime import datetime
from sqlalchemy import Index, CheckConstraint, UniqueConstraint

from gatepass.extensions import db
from .base import BaseModel


class Registration(BaseModel):
    """
    One attendee's registration for one event.

    checked_in is the whole state machine: False is pending, True is checked in.
    The only write the check-in engine performs is the conditional
    pending -> checked_in update in CheckInService.
    """

    __tablename__ = 'registrations'

    event_id = db.Column(db.String(36), db.ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    name = db.Column(db.String(160), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    phone = db.Column(db.String(32), nullable=True)
    credential = db.Column(db.String(128), nullable=False)
    checked_in = db.Column(db.Boolean, default=False, nullable=False)
    checked_in_at = db.Column(db.DateTime, nullable=True)
    registered_at = db.Column(db.DateTime, default=datetime.now, nullable=False)

    event = db.relationship('Event', back_populates='registrations')

    __table_args__ = (
        # Storage-level uniqueness is what makes check-in correct
        UniqueConstraint('credential', name='uq_registration_credential'),
        UniqueConstraint('event_id', 'email', name='uq_registration_event_email'),

        # Every check-in lookup filters on both columns
        Index('idx_registration_event_credential', 'event_id', 'credential'),
        Index('idx_registration_event_checked_in', 'event_id', 'checked_in'),

        CheckConstraint(
            '(checked_in AND checked_in_at IS NOT NULL) OR '
            '(NOT checked_in AND checked_in_at IS NULL)',
            name='ck_registration_checkin_stamp'
        ),
    )

    @property
    def state(self):
        return 'checked_in' if self.checked_in else 'pending'

    def snapshot(self):
        """Detached, read-only view handed out with scan outcomes."""
        return {
            'id': self.id,
            'event_id': self.event_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'credential': self.credential,
            'state': self.state,
            'checked_in': self.checked_in,
            'checked_in_at': self.checked_in_at,
            'registered_at': self.registered_at,
        }

    def __repr__(self):
        return f'<Registration {self.name} ({self.state})>'
