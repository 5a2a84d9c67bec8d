from .base import BaseModel
from .organizer import Organizer
from .event import Event
from .registration import Registration

__all__ = [
    'BaseModel',
    'Organizer',
    'Event',
    'Registration'
]
