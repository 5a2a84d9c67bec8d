# services/decoder_adapter.py
"""
Camera frames in, decoded credential text out.

A frame source only ever holds the most recent frame; the adapter polls it at a
fixed interval and hands each frame to an external decoder. Capture is a scoped
resource: DecoderAdapter.capture() acquires the device and guarantees its release
on every exit path.

OpenCV and pyzbar are loaded when a camera is actually used, so servers that only
take manual or API check-ins never need them installed.
"""

import os
import sys
import time
import logging
import threading
from contextlib import contextmanager
from datetime import datetime

from gatepass.services.checkin_service import ScanSource
from gatepass.services.errors import CaptureError, CaptureReason

logger = logging.getLogger('decoder_adapter')

MAX_CONSECUTIVE_READ_FAILURES = 50


def _load_cv2():
    try:
        import cv2
    except ImportError as e:
        raise CaptureError(CaptureReason.UNSUPPORTED,
                           "Camera capture requires OpenCV (install gatepass[camera])") from e
    return cv2


def _load_pyzbar():
    try:
        from pyzbar import pyzbar
    except ImportError as e:
        # Also raised when the zbar shared library itself is missing
        raise CaptureError(CaptureReason.UNSUPPORTED,
                           "QR decoding requires pyzbar and the zbar library") from e
    return pyzbar


class DecodedText:
    """One decode result."""

    def __init__(self, text, source=ScanSource.CAMERA, decoded_at=None):
        self.text = text
        self.source = source
        self.decoded_at = decoded_at or datetime.now()

    def __repr__(self):
        return f'<DecodedText {self.text!r} from {self.source}>'


class FrameSource:
    """Interface for anything that produces camera frames."""

    def open(self):
        """Acquire the device. Raises CaptureError."""
        raise NotImplementedError

    def read_latest(self):
        """Return the newest unseen frame, or None if there is none yet."""
        raise NotImplementedError

    def release(self):
        """Release the device. Must be safe to call more than once."""
        raise NotImplementedError


class OpenCVFrameSource(FrameSource):
    """
    cv2.VideoCapture wrapped so that only the latest frame is kept.
    A grabber thread reads continuously and overwrites a single slot; older
    frames are dropped instead of queued.
    """

    def __init__(self, device=0, resolution=None):
        self.device = device
        self.resolution = resolution
        self._capture = None
        self._latest = None
        self._error = None
        self._lock = threading.Lock()
        self._stopped = threading.Event()
        self._grabber = None

    def open(self):
        cv2 = _load_cv2()

        # V4L2 exposes the reason a device cannot be opened through the node itself
        if isinstance(self.device, int) and sys.platform.startswith('linux'):
            node = f"/dev/video{self.device}"
            if not os.path.exists(node):
                raise CaptureError(CaptureReason.DEVICE_UNAVAILABLE)
            if not os.access(node, os.R_OK | os.W_OK):
                raise CaptureError(CaptureReason.PERMISSION_DENIED)

        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CaptureError(CaptureReason.DEVICE_BUSY,
                               f"Cannot open camera device {self.device}")

        if self.resolution:
            capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])

        self._capture = capture
        self._stopped.clear()
        self._grabber = threading.Thread(target=self._grab_frames, name=f'camera-{self.device}', daemon=True)
        self._grabber.start()
        logger.info(f"Camera {self.device} opened")

    def _grab_frames(self):
        failures = 0
        while not self._stopped.is_set():
            ok, frame = self._capture.read()
            if not ok:
                failures += 1
                if failures >= MAX_CONSECUTIVE_READ_FAILURES:
                    logger.error(f"Camera {self.device} stopped delivering frames")
                    with self._lock:
                        self._error = CaptureError(CaptureReason.DEVICE_BUSY)
                    return
                time.sleep(0.02)
                continue

            failures = 0
            with self._lock:
                self._latest = frame

    def read_latest(self):
        with self._lock:
            if self._error is not None:
                # Reported once; the stream ends with it
                error, self._error = self._error, None
                raise error
            frame, self._latest = self._latest, None
        return frame

    def release(self):
        self._stopped.set()
        if self._grabber is not None:
            self._grabber.join(timeout=2.0)
            self._grabber = None
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info(f"Camera {self.device} released")
        with self._lock:
            self._latest = None


class PyzbarDecoder:
    """Decodes QR codes from BGR or grayscale frames with pyzbar."""

    def __init__(self):
        self._cv2 = _load_cv2()
        self._pyzbar = _load_pyzbar()

    def decode(self, frame):
        """
        Args:
            frame: numpy array as produced by OpenCV

        Returns:
            str | None: first QR payload found in the frame
        """
        if frame.ndim == 3:
            frame = self._cv2.cvtColor(frame, self._cv2.COLOR_BGR2GRAY)

        for symbol in self._pyzbar.decode(frame, symbols=[self._pyzbar.ZBarSymbol.QRCODE]):
            text = symbol.data.decode('utf-8', errors='replace').strip()
            if text:
                return text
        return None


class DecodeStream:
    """
    Lazy, unbounded sequence of decode results for one capture session.
    Iterating it blocks the consuming thread between polls; it cannot be replayed.
    """

    def __init__(self, source, decoder, poll_interval=0.1):
        self._source = source
        self._decoder = decoder
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._consumed = False

    @property
    def stopped(self):
        return self._stop.is_set()

    def stop(self):
        self._stop.set()

    def __iter__(self):
        if self._consumed:
            raise RuntimeError("A decode stream cannot be replayed; start a new capture")
        self._consumed = True
        return self._generate()

    def _generate(self):
        while not self._stop.is_set():
            frame = self._source.read_latest()
            if frame is not None:
                text = self._decode(frame)
                if text:
                    yield DecodedText(text)
            self._stop.wait(self._poll_interval)

    def _decode(self, frame):
        try:
            return self._decoder.decode(frame)
        except Exception as e:
            # One unreadable frame must not end the capture
            logger.warning(f"Frame decode failed: {str(e)}")
            return None


class DecoderAdapter:
    """Produces DecodeStreams from a frame source factory and a decoder."""

    def __init__(self, source_factory, decoder, poll_interval=0.1):
        self.source_factory = source_factory
        self.decoder = decoder
        self.poll_interval = poll_interval

    @classmethod
    def for_camera(cls, device=0, resolution=None, poll_interval=0.1):
        """Adapter over a local OpenCV camera decoded with pyzbar."""
        return cls(
            source_factory=lambda: OpenCVFrameSource(device, resolution),
            decoder=PyzbarDecoder(),
            poll_interval=poll_interval
        )

    @contextmanager
    def capture(self):
        """
        Acquire a frame source for one capture session.

        Yields:
            DecodeStream

        Raises:
            CaptureError: device unavailable, permission denied, busy or unsupported
        """
        source = self.source_factory()
        source.open()
        stream = DecodeStream(source, self.decoder, self.poll_interval)
        try:
            yield stream
        finally:
            stream.stop()
            source.release()
