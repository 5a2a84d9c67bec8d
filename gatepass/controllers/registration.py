# controllers/registration.py
"""
Event management, attendee registration, credential images and credential email routes.
Service errors propagate to the JSON error handlers registered in create_app.
"""

import io
import logging
from datetime import datetime
from flask import Blueprint, request, jsonify, current_app, url_for, send_file, abort
from flask_login import login_required, current_user

from gatepass.extensions import db
from gatepass.models import Registration
from gatepass.services.credential_service import CredentialService
from gatepass.services.errors import InvalidEvent
from gatepass.services.registration_service import RegistrationService

# Initialize blueprint
registration_bp = Blueprint('registration', __name__)

logger = logging.getLogger('registration')


@registration_bp.route('/register/<event_id>', methods=['POST'])
def register(event_id):
    """
    Public registration endpoint.

    Request JSON:
        name, email: required
        phone: optional
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({
            'success': False,
            'message': 'No data provided',
            'error_code': 'missing_data'
        }), 400

    registration, task_id = RegistrationService.register(
        event_id,
        name=data.get('name'),
        email=data.get('email'),
        phone=data.get('phone')
    )

    return jsonify({
        'success': True,
        'message': 'Registration successful. Your check-in code has been emailed to you.',
        'registration': _serialize(registration.snapshot()),
        'credential_image_url': url_for('registration.credential_image',
                                        credential=registration.credential),
        'email_task_id': task_id
    }), 201


@registration_bp.route('/credentials/<credential>.png')
def credential_image(credential):
    """Credential rendered as a QR code PNG. ?size=N picks the edge length in pixels."""
    size = request.args.get('size', type=int, default=current_app.config.get('CREDENTIAL_IMAGE_SIZE', 300))
    max_size = current_app.config.get('CREDENTIAL_MAX_IMAGE_SIZE', 1200)
    if size is None or size <= 0 or size > max_size:
        return jsonify({
            'success': False,
            'message': f'Image size must be between 1 and {max_size}',
            'error_code': 'invalid_size'
        }), 400

    # Only issued credentials are rendered
    exists = db.session.query(Registration.id).filter_by(credential=credential).first()
    if not exists:
        abort(404)

    png = CredentialService.render(credential, size)
    return send_file(io.BytesIO(png), mimetype='image/png', max_age=3600)


@registration_bp.route('/events/<event_id>', methods=['PUT'])
@login_required
def update_event(event_id):
    """
    Change an owned event.

    Request JSON:
        any of title, date (ISO 8601), location, description, max_attendees
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({
            'success': False,
            'message': 'No data provided',
            'error_code': 'missing_data'
        }), 400

    changes = dict(data)
    if 'date' in changes:
        try:
            changes['date'] = datetime.fromisoformat(changes['date'])
        except (TypeError, ValueError) as e:
            raise InvalidEvent("Event date must be an ISO 8601 datetime") from e

    event = RegistrationService.update_event(event_id, current_user.id, **changes)
    return jsonify({
        'success': True,
        'message': 'Event updated',
        'event': event.to_dict()
    })


@registration_bp.route('/events/<event_id>', methods=['DELETE'])
@login_required
def delete_event(event_id):
    """Delete an owned event together with its registrations."""
    RegistrationService.delete_event(event_id, current_user.id)
    logger.info(f"Event {event_id} deleted by {current_user.id}")
    return jsonify({
        'success': True,
        'message': 'Event deleted'
    })


@registration_bp.route('/events/<event_id>/registrations/<registration_id>/send-credential',
                       methods=['POST'])
@login_required
def send_credential(event_id, registration_id):
    """Queue the credential email for one registration again."""
    task_id = RegistrationService.send_credential_email(event_id, current_user.id, registration_id)
    logger.info(f"Credential email queued for {registration_id} by {current_user.id}")
    return jsonify({
        'success': True,
        'message': 'Credential email queued',
        'task_id': task_id
    }), 202


@registration_bp.route('/events/<event_id>/send-credentials', methods=['POST'])
@login_required
def send_all_credentials(event_id):
    """Queue credential emails for every registration of the event."""
    results = RegistrationService.send_all_credential_emails(event_id, current_user.id)
    return jsonify({
        'success': not results['errors'],
        'queued': results['queued'],
        'errors': results['errors'],
        'message': f"{len(results['queued'])} emails queued, {len(results['errors'])} failed"
    }), 202


def _serialize(snapshot):
    return {
        key: value.isoformat() if isinstance(value, datetime) else value
        for key, value in snapshot.items()
    }
