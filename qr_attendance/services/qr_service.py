"""QR code image rendering."""
import base64
import io
import qrcode

class QRService:
    """Service for QR code operations."""

    @staticmethod
    def render_data_url(data: str, fill_color: str = '#1e40af') -> str:
        """Render data as a PNG QR code and return it as a base64 data URL."""
        qr = qrcode.QRCode(
            version=None,  # Auto-determine size
            error_correction=qrcode.constants.ERROR_CORRECT_H,  # High error correction
            box_size=10,
            border=2,
        )
        qr.add_data(data)
        qr.make(fit=True)

        img = qr.make_image(fill_color=fill_color, back_color="white")

        buffered = io.BytesIO()
        img.save(buffered, format="PNG")
        img_str = base64.b64encode(buffered.getvalue()).decode()

        return f"data:image/png;base64,{img_str}"
