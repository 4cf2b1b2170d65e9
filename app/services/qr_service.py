"""
QR code generation service
"""

import io
import qrcode

from app.core.config import settings

class QRService:
    """Service for generating QR codes"""

    @staticmethod
    def request_page_url(username: str) -> str:
        """URL guests land on when they scan the code"""
        return f"{settings.BASE_URL}/{username}/request"

    @staticmethod
    def generate_request_qr(username: str, format: str = "PNG") -> bytes:
        """PNG bytes of a QR code pointing at the tenant's request page"""
        qr = qrcode.QRCode(
            version=1,
            error_correction=qrcode.constants.ERROR_CORRECT_M,
            box_size=10,
            border=4,
        )
        qr.add_data(QRService.request_page_url(username))
        qr.make(fit=True)

        # Create QR code image (Pillow backend)
        img = qr.make_image(fill_color="black", back_color="white")

        buffer = io.BytesIO()
        img.save(buffer, format=format)
        return buffer.getvalue()
