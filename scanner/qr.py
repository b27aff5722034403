import cv2
import numpy as np


def decode_image(data: bytes) -> np.ndarray | None:
    if not data:
        return None
    img_array = np.frombuffer(data, np.uint8)
    return cv2.imdecode(img_array, cv2.IMREAD_COLOR)


def read_qr_payload(frame: np.ndarray) -> str | None:
    """Text of the first QR code found in the frame, or None."""
    detector = cv2.QRCodeDetector()
    text, points, _ = detector.detectAndDecode(frame)
    if points is None or not text:
        # second pass on grayscale
        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        text, points, _ = detector.detectAndDecode(gray)
    if points is None or not text:
        return None
    return text.strip() or None
