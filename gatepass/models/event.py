# models/event.py
from sqlalchemy import Index, CheckConstraint

from gatepass.extensions import db
from .base import BaseModel


class Event(BaseModel):
    __tablename__ = 'events'

    created_by = db.Column(db.String(36), db.ForeignKey('organizers.id'), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    date = db.Column(db.DateTime, nullable=False)
    location = db.Column(db.String(255), nullable=False)
    max_attendees = db.Column(db.Integer, nullable=True)  # None means unlimited

    organizer = db.relationship('Organizer', back_populates='events')
    registrations = db.relationship('Registration', back_populates='event', lazy='dynamic',
                                    cascade='all, delete-orphan', passive_deletes=True)

    __table_args__ = (
        # Ownership-filtered lookups: (id, created_by)
        Index('idx_event_owner', 'created_by', 'id'),
        Index('idx_event_date', 'date'),
        CheckConstraint('max_attendees IS NULL OR max_attendees > 0', name='ck_event_capacity_positive'),
    )

    @property
    def registration_count(self):
        return self.registrations.count()

    def is_full(self):
        """Check if the event has reached its capacity."""
        if self.max_attendees is None:
            return False
        return self.registration_count >= self.max_attendees

    def __repr__(self):
        return f'<Event {self.title} {self.date:%Y-%m-%d}>'
