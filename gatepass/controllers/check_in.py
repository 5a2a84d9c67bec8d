# controllers/check_in.py
"""
Check-in routes for organizers scanning attendee credentials.
Every scan answers 200 with one of the three outcomes; only an unknown or
foreign event and storage failures are errors.
"""

import logging
from flask import Blueprint, request, jsonify, current_app, session as flask_session
from flask_login import login_required, current_user

from gatepass.services.checkin_service import CheckInService, ScanSource
from gatepass.services.errors import Unauthorized, StorageError

# Initialize blueprint
check_in_bp = Blueprint('check_in', __name__)

logger = logging.getLogger('check_in')

SOURCES = (ScanSource.CAMERA, ScanSource.MANUAL, ScanSource.API)


@check_in_bp.route('/<event_id>', methods=['POST'])
@login_required
def check_in(event_id):
    """
    Verify a scanned or typed credential for an event.

    Request JSON:
        credential: Decoded credential text
        source: Optional 'camera' or 'manual' (defaults to 'api')
    """
    data = request.get_json(silent=True)
    if not data or 'credential' not in data:
        return jsonify({
            'success': False,
            'message': 'No credential provided',
            'error_code': 'missing_data'
        }), 400

    source = data.get('source') or ScanSource.API
    if source not in SOURCES:
        source = ScanSource.API

    try:
        outcome = CheckInService.check_in(event_id, current_user.id, str(data['credential']), source=source)

    except Unauthorized as e:
        return jsonify({'success': False, 'message': e.message, 'error_code': e.code}), 404
    except StorageError as e:
        return jsonify({'success': False, 'message': e.message, 'error_code': e.code}), 503

    _update_recent_scans(event_id, outcome)

    logger.info(f"Scan for event {event_id} by {current_user.id}: {outcome.status}")
    return jsonify(outcome.to_dict())


@check_in_bp.route('/<event_id>/tally')
@login_required
def tally(event_id):
    """Registration and check-in counts for an owned event."""
    try:
        counts = CheckInService.get_tally(event_id, current_user.id)
    except Unauthorized as e:
        return jsonify({'success': False, 'message': e.message, 'error_code': e.code}), 404
    except StorageError as e:
        return jsonify({'success': False, 'message': e.message, 'error_code': e.code}), 503

    counts['remaining'] = counts['total'] - counts['checked_in']
    return jsonify({'success': True, 'event_id': event_id, 'tally': counts})


@check_in_bp.route('/<event_id>/recent')
@login_required
def recent(event_id):
    """Recent scan outcomes for this browser session, newest first."""
    return jsonify({
        'success': True,
        'event_id': event_id,
        'recent_scans': flask_session.get(_recent_key(event_id), [])
    })


@check_in_bp.route('/<event_id>/clear-history', methods=['POST'])
@login_required
def clear_scan_history(event_id):
    """Clear recent scans history from session."""
    flask_session.pop(_recent_key(event_id), None)
    logger.info(f"Scan history cleared for event {event_id}")
    return jsonify({'success': True, 'message': 'Scan history cleared'})


# Helper Functions

def _recent_key(event_id):
    return f'recent_scans_{event_id}'


def _update_recent_scans(event_id, outcome):
    """
    Update recent scans in flask session for UI display.
    """
    key = _recent_key(event_id)
    recent_scans = flask_session.get(key, [])

    scan_entry = {
        'timestamp': outcome.timestamp.strftime('%H:%M:%S'),
        'credential': outcome.credential,
        'name': outcome.attendee_name,
        'source': outcome.source,
        'status': outcome.status,
        'message': outcome.message
    }

    # Add to beginning of list and limit to the configured size
    limit = current_app.config.get('SCAN_HISTORY_SIZE', 10)
    recent_scans.insert(0, scan_entry)
    flask_session[key] = recent_scans[:limit]
    flask_session.modified = True
