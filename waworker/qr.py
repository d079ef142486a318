from __future__ import annotations

import io

import qrcode


def build_qr_png(payload: str, *, box_size: int = 10, border: int = 4) -> bytes:
    """Render the pairing payload as a PNG image."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


__all__ = ["build_qr_png"]
