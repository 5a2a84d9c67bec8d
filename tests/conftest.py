from datetime import datetime, timedelta

import pytest

from gatepass import create_app
from gatepass.extensions import db
from gatepass.models import Organizer
from gatepass.services.registration_service import RegistrationService


@pytest.fixture
def app(tmp_path):
    # A file database so that worker threads get their own connections
    app = create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'gatepass.db'}",
        'SQLALCHEMY_ENGINE_OPTIONS': {'connect_args': {'timeout': 30}},
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


def _make_organizer(email, full_name):
    organizer = Organizer(email=email, full_name=full_name, organization='Gatepass Events')
    db.session.add(organizer)
    db.session.commit()
    return organizer


@pytest.fixture
def organizer(app):
    return _make_organizer('ops@example.org', 'Door Operator')


@pytest.fixture
def other_organizer(app):
    return _make_organizer('rival@example.org', 'Someone Else')


@pytest.fixture
def make_event(organizer):
    def _make_event(title='Launch Night', owner=None, max_attendees=None):
        return RegistrationService.create_event(
            (owner or organizer).id,
            title,
            datetime.now() + timedelta(days=7),
            'Hall A',
            max_attendees=max_attendees
        )
    return _make_event


@pytest.fixture
def event(make_event):
    return make_event(max_attendees=50)


@pytest.fixture
def register():
    def _register(event, name='Ada Lovelace', email=None, phone=None):
        email = email or f"{name.split()[0].lower()}@example.org"
        registration, _ = RegistrationService.register(event.id, name, email, phone=phone, send_email=False)
        return registration
    return _register


@pytest.fixture
def client(app, organizer):
    """Test client logged in as the organizer."""
    client = app.test_client()
    with client.session_transaction() as session:
        session['_user_id'] = organizer.id
        session['_fresh'] = True
    return client


@pytest.fixture
def anonymous_client(app):
    return app.test_client()
