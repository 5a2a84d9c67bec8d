# models/organizer.py
from flask_login import UserMixin
from sqlalchemy import Index

from gatepass.extensions import db
from .base import BaseModel


class Organizer(BaseModel, UserMixin):
    """
    Opaque organizer identity. Authentication happens elsewhere; this row only
    anchors event ownership and is what Flask-Login loads into current_user.
    """

    __tablename__ = 'organizers'

    email = db.Column(db.String(120), nullable=False)
    full_name = db.Column(db.String(160), nullable=True)
    organization = db.Column(db.String(160), nullable=True)

    events = db.relationship('Event', back_populates='organizer', lazy='dynamic')

    __table_args__ = (
        Index('uq_organizer_email', 'email', unique=True),
    )

    def __repr__(self):
        return f'<Organizer {self.email}>'
