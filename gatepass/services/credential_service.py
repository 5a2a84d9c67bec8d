# services/credential_service.py
"""
Credential generation and rendering.
A credential is an opaque string scoped to one event; uniqueness across all
registrations is enforced by the storage layer's unique constraint, the
generator only has to make collisions vanishingly rare.
"""

import io
import base64
import logging
import secrets
import string
import time

import qrcode
from qrcode.exceptions import DataOverflowError
from PIL import Image

from gatepass.services.errors import EncodingError

logger = logging.getLogger('credential_service')

RANDOM_ALPHABET = string.digits + string.ascii_lowercase
RANDOM_LENGTH = 12  # ~62 bits of entropy on top of the nanosecond clock
QR_BORDER = 2
QR_BOX_SIZE = 10


class CredentialService:
    """Derives unique credentials and renders them as scannable QR images."""

    @staticmethod
    def generate(event_id):
        """
        Generate a new credential for a registration to the given event.

        The result combines the event id, a nanosecond timestamp and a random
        base36 suffix, so two calls in the same clock tick still diverge.

        Args:
            event_id: Identifier of the event the registration belongs to

        Returns:
            str: Credential string. Persisting it is the caller's job.
        """
        if not event_id:
            raise ValueError("event_id is required to generate a credential")

        suffix = ''.join(secrets.choice(RANDOM_ALPHABET) for _ in range(RANDOM_LENGTH))
        return f"{event_id}-{time.time_ns()}-{suffix}"

    @staticmethod
    def render(credential, size=300):
        """
        Render a credential as a PNG QR code of exactly size x size pixels.

        Args:
            credential: Non-empty credential string
            size: Edge length of the output image in pixels

        Returns:
            bytes: PNG image data

        Raises:
            EncodingError: If the credential cannot be encoded
        """
        if not isinstance(credential, str) or not credential:
            raise EncodingError("Credential must be a non-empty string")
        if not isinstance(size, int) or size <= 0:
            raise EncodingError(f"Invalid image size: {size}")

        try:
            qr = qrcode.QRCode(
                version=None,
                error_correction=qrcode.constants.ERROR_CORRECT_M,
                box_size=QR_BOX_SIZE,
                border=QR_BORDER,
            )
            qr.add_data(credential)
            qr.make(fit=True)

            qr_image = qr.make_image(fill_color="black", back_color="white").get_image()
            qr_image = qr_image.convert('RGB').resize((size, size), Image.NEAREST)

            buffer = io.BytesIO()
            qr_image.save(buffer, format='PNG')
            return buffer.getvalue()

        except DataOverflowError as e:
            logger.warning(f"Credential too long to encode ({len(credential)} chars)")
            raise EncodingError("Credential is too long to encode as a QR code") from e
        except (ValueError, OSError) as e:
            logger.error(f"Error rendering credential image: {str(e)}")
            raise EncodingError("Failed to generate QR code") from e

    @staticmethod
    def render_data_url(credential, size=300):
        """Render a credential as a data: URL for embedding in HTML or JSON."""
        png = CredentialService.render(credential, size)
        return f"data:image/png;base64,{base64.b64encode(png).decode('ascii')}"
