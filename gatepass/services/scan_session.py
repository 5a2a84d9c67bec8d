# services/scan_session.py
"""
Scan session controller.

One session is one operator scanning one event. Camera decodes and manual entries
feed the same single-flight pipeline: at most one check-in call is outstanding,
later inputs wait their turn instead of being dropped. The tally and the recent
history are projections of the outcome stream, never an independent source of
truth.
"""

import logging
import threading
from collections import deque
from concurrent.futures import CancelledError, ThreadPoolExecutor, TimeoutError as FuturesTimeout
from datetime import datetime

from gatepass.services.checkin_service import CheckInService, ScanSource
from gatepass.services.errors import (
    CaptureError, CaptureReason, CheckInTimeout, SessionClosedError, StorageError, Unauthorized
)

logger = logging.getLogger('scan_session')


class SessionState:
    NEW = 'new'
    OPEN = 'open'
    TERMINATED = 'terminated'  # ended by a fatal error
    CLOSED = 'closed'


class SessionNotice:
    """Operator-facing notification for anything that is not a scan outcome."""

    def __init__(self, code, message, fatal=False):
        self.code = code
        self.message = message
        self.fatal = fatal
        self.timestamp = datetime.now()

    @classmethod
    def from_error(cls, error, fatal=False):
        return cls(error.code, error.message, fatal=fatal)

    def to_dict(self):
        return {
            'code': self.code,
            'message': self.message,
            'fatal': self.fatal,
            'timestamp': self.timestamp.isoformat()
        }

    def __repr__(self):
        return f'<SessionNotice {self.code}>'


class ScanTally:
    """Registrations at session start and successful check-ins since."""

    def __init__(self, total=0, checked_in=0):
        self.total = total
        self.checked_in = checked_in

    @property
    def remaining(self):
        return max(self.total - self.checked_in, 0)

    def to_dict(self):
        return {'total': self.total, 'checked_in': self.checked_in, 'remaining': self.remaining}


class ScanHistory:
    """Bounded list of recent outcomes, newest first."""

    def __init__(self, capacity=10):
        if capacity <= 0:
            raise ValueError("History capacity must be positive")
        self.capacity = capacity
        self._entries = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, outcome):
        with self._lock:
            self._entries.appendleft(outcome)

    def entries(self):
        with self._lock:
            return tuple(self._entries)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def __iter__(self):
        return iter(self.entries())


class ScanSession:
    """
    Drives check-ins for one event on behalf of one organizer.

    Usage:
        with ScanSession(app, event_id, organizer_id, adapter) as session:
            session.start_capture()
            session.submit_manual(typed_code)

    Args:
        app: Flask application; check-ins run in their own app context
        event_id: Event being scanned
        organizer_id: Opaque operator identity
        adapter: DecoderAdapter for camera input, or None for manual-only sessions
        history_size: Recent outcomes to keep (defaults to SCAN_HISTORY_SIZE)
        checkin_timeout: Seconds before a check-in call counts as failed
        on_outcome: Callback receiving each ScanOutcome
        on_notice: Callback receiving each SessionNotice
    """

    def __init__(self, app, event_id, organizer_id, adapter=None, history_size=None,
                 checkin_timeout=None, on_outcome=None, on_notice=None):
        self.app = app
        self.event_id = event_id
        self.organizer_id = organizer_id
        self.adapter = adapter
        self.checkin_timeout = checkin_timeout or app.config.get('CHECKIN_TIMEOUT', 5.0)
        self.on_outcome = on_outcome
        self.on_notice = on_notice

        self.state = SessionState.NEW
        self.tally = ScanTally()
        self.history = ScanHistory(history_size or app.config.get('SCAN_HISTORY_SIZE', 10))
        self.notices = deque(maxlen=self.history.capacity)

        self._inflight = threading.Lock()
        self._state_lock = threading.Lock()
        self._record_lock = threading.Lock()
        self._executor = None

        self._capture_thread = None
        self._capture_stream = None
        self._capture_released = threading.Event()
        self._capture_released.set()
        self._stop_capture_requested = False

    # Lifecycle

    def open(self):
        """
        Authorize the organizer and load the tally.

        Raises:
            Unauthorized: the session is terminated
            StorageError: the session stays unopened and open() may be retried
        """
        if self.state != SessionState.NEW:
            raise SessionClosedError(f"Session cannot be opened from state {self.state}")

        try:
            with self.app.app_context():
                counts = CheckInService.get_tally(self.event_id, self.organizer_id)
        except Unauthorized as e:
            self._terminate(e)
            raise

        self.tally = ScanTally(total=counts['total'], checked_in=counts['checked_in'])
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix='checkin')
        self.state = SessionState.OPEN
        logger.info(f"Scan session opened for event {self.event_id}: "
                    f"{self.tally.checked_in}/{self.tally.total} checked in")
        return self

    def close(self):
        """Stop capture, release the device and shut the pipeline down. Idempotent."""
        with self._state_lock:
            if self.state == SessionState.CLOSED:
                return
            self.state = SessionState.CLOSED

        self.stop_capture()
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
        logger.info(f"Scan session closed for event {self.event_id}")

    def __enter__(self):
        return self.open()

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()
        return False

    @property
    def is_open(self):
        return self.state == SessionState.OPEN

    @property
    def capturing(self):
        return self._capture_thread is not None and self._capture_thread.is_alive()

    # Inputs

    def submit_manual(self, text):
        """
        Check in a typed credential through the same pipeline as the camera.

        Returns:
            ScanOutcome | None: None when the check-in failed transiently

        Raises:
            SessionClosedError: the session is not open
            Unauthorized: the session has been terminated
        """
        self._ensure_open()
        text = (text or '').strip()
        if not text:
            return None
        return self._process(text, ScanSource.MANUAL)

    def start_capture(self):
        """
        Arm the camera for one decode. The capture stops itself after the first
        credential is read; call again to scan the next attendee.

        Returns:
            bool: False if a capture is already running
        """
        self._ensure_open()
        if self.adapter is None:
            error = CaptureError(CaptureReason.UNSUPPORTED, "No camera configured for this session")
            self._notify(SessionNotice.from_error(error))
            raise error

        with self._state_lock:
            if self.capturing:
                return False
            self._stop_capture_requested = False
            self._capture_released.clear()
            self._capture_thread = threading.Thread(target=self._capture_once,
                                                    name=f'scan-{self.event_id}', daemon=True)
            self._capture_thread.start()
        return True

    def stop_capture(self, timeout=5.0):
        """
        Stop the camera and wait until the device is released.
        A check-in already in flight is left to finish.
        """
        with self._state_lock:
            self._stop_capture_requested = True
            if self._capture_stream is not None:
                self._capture_stream.stop()

        released = self._capture_released.wait(timeout)
        if not released:
            logger.error(f"Capture device for event {self.event_id} not released within {timeout}s")
        return released

    def wait_for_capture(self, timeout=None):
        """Block until the current capture (and the check-in it triggered) is done."""
        thread = self._capture_thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # Pipeline

    def _capture_once(self):
        decoded = None
        try:
            with self.adapter.capture() as stream:
                with self._state_lock:
                    self._capture_stream = stream
                    if self._stop_capture_requested:
                        stream.stop()

                for decoded in stream:
                    # One decode per explicit start
                    stream.stop()
                    break
        except CaptureError as e:
            logger.warning(f"Capture failed for event {self.event_id}: {e.reason}")
            self._notify(SessionNotice.from_error(e))
            return
        finally:
            with self._state_lock:
                self._capture_stream = None
            self._capture_released.set()

        if decoded is None or not self.is_open:
            return

        try:
            self._process(decoded.text, ScanSource.CAMERA)
        except (Unauthorized, SessionClosedError) as e:
            # Termination was already reported through on_notice
            logger.info(f"Decoded credential discarded, session unavailable: {e.code}")

    def _process(self, credential, source):
        with self._inflight:
            self._ensure_open()
            try:
                future = self._executor.submit(self._run_check_in, credential, source)
            except RuntimeError as e:
                # Executor shut down by a concurrent close or termination
                raise SessionClosedError(f"Scan session is {self.state}") from e

            try:
                outcome = future.result(timeout=self.checkin_timeout)
            except FuturesTimeout:
                if not future.cancel():
                    # Still running: whatever it commits is recorded when it finishes
                    future.add_done_callback(self._record_late)
                error = CheckInTimeout(f"Check-in did not complete within {self.checkin_timeout}s")
                logger.warning(f"Check-in timed out for event {self.event_id}")
                self._notify(SessionNotice.from_error(error))
                return None
            except CancelledError as e:
                raise SessionClosedError(f"Scan session is {self.state}") from e
            except Unauthorized as e:
                self._terminate(e)
                raise
            except StorageError as e:
                self._notify(SessionNotice.from_error(e))
                return None

            self._record(outcome)
            return outcome

    def _run_check_in(self, credential, source):
        with self.app.app_context():
            return CheckInService.check_in(self.event_id, self.organizer_id, credential, source=source)

    def _record_late(self, future):
        """Done callback for a check-in that outlived its timeout."""
        if future.cancelled():
            return

        error = future.exception()
        if error is None:
            outcome = future.result()
            logger.info(f"Late check-in result for event {self.event_id}: {outcome.status}")
            self._record(outcome)
        elif isinstance(error, Unauthorized):
            self._terminate(error)
        elif isinstance(error, StorageError):
            self._notify(SessionNotice.from_error(error))
        else:
            logger.error(f"Late check-in failed for event {self.event_id}: {error!r}")

    def _record(self, outcome):
        with self._record_lock:
            self.history.add(outcome)
            if outcome.is_success:
                self.tally.checked_in += 1

        if self.on_outcome is not None:
            try:
                self.on_outcome(outcome)
            except Exception:
                logger.error("Outcome callback failed", exc_info=True)

    def _notify(self, notice):
        self.notices.appendleft(notice)
        if self.on_notice is not None:
            try:
                self.on_notice(notice)
            except Exception:
                logger.error("Notice callback failed", exc_info=True)

    def _terminate(self, error):
        with self._state_lock:
            if self.state == SessionState.CLOSED:
                return
            self.state = SessionState.TERMINATED
            if self._capture_stream is not None:
                self._capture_stream.stop()

        logger.warning(f"Scan session for event {self.event_id} terminated: {error.code}")
        self._notify(SessionNotice.from_error(error, fatal=True))
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def _ensure_open(self):
        if self.state == SessionState.TERMINATED:
            raise Unauthorized(self.event_id)
        if self.state != SessionState.OPEN:
            raise SessionClosedError(f"Scan session is {self.state}")
