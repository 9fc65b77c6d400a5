"""
QR payload rendering.

Turns the raw pairing payload emitted by the protocol client into a PNG data
URL that front ends can drop into an <img> tag.
"""
import base64
import io

import qrcode


def build_qr_png(payload: str) -> bytes:
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=8,
        border=4,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="#000000", back_color="#FFFFFF").convert("RGB")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def encode_qr_data_url(payload: str) -> str:
    encoded = base64.b64encode(build_qr_png(payload)).decode("ascii")
    return f"data:image/png;base64,{encoded}"
