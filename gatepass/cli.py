# cli.py
"""
Flask CLI commands for organizers: setup, registration and door-side scanning.
"""

import click
from flask import current_app
from flask.cli import with_appcontext

from gatepass.extensions import db, email_service
from gatepass.services.errors import GatepassError, Unauthorized, CaptureError


def _organizer_by_email(email):
    from gatepass.models import Organizer

    organizer = Organizer.query.filter_by(email=email.strip().lower()).first()
    if not organizer:
        raise click.ClickException(f"No organizer with email {email}")
    return organizer


def _echo_outcome(outcome):
    colors = {'success': 'green', 'duplicate': 'yellow', 'not_found': 'red'}
    click.secho(f"[{outcome.timestamp:%H:%M:%S}] {outcome.status.upper():<10} {outcome.message}",
                fg=colors.get(outcome.status))


def _echo_notice(notice):
    click.secho(f"! {notice.message}", fg='red' if notice.fatal else 'yellow', err=True)


@click.command("init-db")
@with_appcontext
def init_database():
    """Create all database tables."""
    db.create_all()
    click.echo("Database tables created.")


@click.command("create-organizer")
@click.option("--email", required=True, help="Organizer email (login identity)")
@click.option("--name", "full_name", help="Full name")
@click.option("--organization", help="Organization name")
@with_appcontext
def create_organizer(email, full_name, organization):
    """Create an organizer account."""
    from gatepass.models import Organizer

    email = email.strip().lower()
    if Organizer.query.filter_by(email=email).first():
        raise click.ClickException(f"Organizer {email} already exists")

    try:
        organizer = Organizer(email=email, full_name=full_name, organization=organization)
        db.session.add(organizer)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    click.echo(f"Organizer created: {organizer.id} ({email})")


@click.command("create-event")
@click.option("--organizer", "organizer_email", required=True, help="Owner's email")
@click.option("--title", required=True)
@click.option("--date", required=True, type=click.DateTime(formats=["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M"]))
@click.option("--location", required=True)
@click.option("--description")
@click.option("--capacity", type=click.IntRange(min=1), help="Maximum number of attendees")
@with_appcontext
def create_event(organizer_email, title, date, location, description, capacity):
    """
    Create an event.

    Example usage:
        flask create-event --organizer ops@example.org --title "Launch" --date "2026-11-02 18:00" --location "Hall A"
    """
    from gatepass.services.registration_service import RegistrationService

    organizer = _organizer_by_email(organizer_email)
    try:
        event = RegistrationService.create_event(
            organizer.id, title, date, location,
            description=description, max_attendees=capacity
        )
    except GatepassError as e:
        raise click.ClickException(e.message)

    click.echo(f"Event created: {event.id}")


@click.command("delete-event")
@click.argument("event_id")
@click.option("--organizer", "organizer_email", required=True, help="Owner's email")
@click.confirmation_option(prompt="Delete the event and all of its registrations?")
@with_appcontext
def delete_event(event_id, organizer_email):
    """Delete an event together with its registrations."""
    from gatepass.services.registration_service import RegistrationService

    organizer = _organizer_by_email(organizer_email)
    try:
        RegistrationService.delete_event(event_id, organizer.id)
    except GatepassError as e:
        raise click.ClickException(e.message)

    click.echo(f"Event deleted: {event_id}")


@click.command("register-attendee")
@click.argument("event_id")
@click.option("--name", required=True)
@click.option("--email", required=True)
@click.option("--phone")
@click.option("--no-email", is_flag=True, help="Do not send the credential email")
@with_appcontext
def register_attendee(event_id, name, email, phone, no_email):
    """Register an attendee and print the issued credential."""
    from gatepass.services.registration_service import RegistrationService

    try:
        registration, task_id = RegistrationService.register(
            event_id, name, email, phone=phone, send_email=not no_email
        )
    except GatepassError as e:
        raise click.ClickException(e.message)

    click.echo(f"Registered {registration.name} <{registration.email}>")
    click.echo(f"Credential: {registration.credential}")
    if task_id:
        click.echo(f"Credential email queued (task {task_id})")


@click.command("check-in")
@click.argument("event_id")
@click.argument("credential")
@click.option("--organizer", "organizer_email", required=True, help="Operator's email")
@with_appcontext
def check_in_command(event_id, credential, organizer_email):
    """Check in a single credential typed by hand."""
    from gatepass.services.checkin_service import CheckInService, ScanSource

    organizer = _organizer_by_email(organizer_email)
    try:
        outcome = CheckInService.check_in(event_id, organizer.id, credential, source=ScanSource.MANUAL)
    except GatepassError as e:
        raise click.ClickException(e.message)

    _echo_outcome(outcome)


@click.command("scan")
@click.argument("event_id")
@click.option("--organizer", "organizer_email", required=True, help="Operator's email")
@click.option("--camera", is_flag=True, help="Also scan QR codes with the local camera")
@click.option("--device", type=int, help="Camera device index (defaults to CAMERA_DEVICE)")
@with_appcontext
def scan_command(event_id, organizer_email, camera, device):
    """
    Run an interactive scan session.

    Type or paste a credential and press enter to check it in. With --camera, an
    empty line arms the camera for the next code. Enter q to quit.
    """
    from gatepass.services.decoder_adapter import DecoderAdapter
    from gatepass.services.scan_session import ScanSession

    app = current_app._get_current_object()
    organizer = _organizer_by_email(organizer_email)

    adapter = None
    if camera:
        try:
            adapter = DecoderAdapter.for_camera(
                device=device if device is not None else app.config.get('CAMERA_DEVICE', 0),
                resolution=app.config.get('CAMERA_RESOLUTION'),
                poll_interval=app.config.get('SCAN_POLL_INTERVAL', 0.1)
            )
        except CaptureError as e:
            raise click.ClickException(e.message)

    session = ScanSession(app, event_id, organizer.id, adapter=adapter,
                          on_outcome=_echo_outcome, on_notice=_echo_notice)
    try:
        session.open()
    except GatepassError as e:
        raise click.ClickException(e.message)

    try:
        click.echo(f"Scanning event {event_id}: {session.tally.checked_in}/{session.tally.total} checked in")
        if adapter is not None:
            _arm_camera(session)

        while session.is_open:
            try:
                line = click.prompt("credential", default="", show_default=False)
            except click.Abort:
                break

            line = line.strip()
            if line.lower() == 'q':
                break

            try:
                if not line:
                    if adapter is not None:
                        _arm_camera(session)
                    continue
                session.submit_manual(line)
            except Unauthorized as e:
                raise click.ClickException(e.message)

            tally = session.tally
            click.echo(f"Checked in {tally.checked_in}/{tally.total} ({tally.remaining} remaining)")
    finally:
        session.close()


def _arm_camera(session):
    try:
        if session.start_capture():
            click.echo("Camera armed, show a code")
        else:
            click.echo("Camera is already waiting for a code")
    except CaptureError:
        # Already reported through the notice callback
        pass


@click.command("email-status")
@with_appcontext
def email_status_command():
    """Show email queue status."""
    stats = email_service.get_queue_stats()
    for key, value in stats.items():
        click.echo(f"{key}: {value}")


def register_cli_commands(app):
    """
    Register all CLI commands with the Flask application.

    Args:
        app: Flask application instance
    """
    app.cli.add_command(init_database)
    app.cli.add_command(create_organizer)
    app.cli.add_command(create_event)
    app.cli.add_command(delete_event)
    app.cli.add_command(register_attendee)
    app.cli.add_command(check_in_command)
    app.cli.add_command(scan_command)
    app.cli.add_command(email_status_command)
