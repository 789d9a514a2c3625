import cv2
import numpy as np
import pytest

from conftest import identity_payload
from scantron_grader.collaborators import OpenCvEnhancer, OpenCvQrDecoder, TesseractOcr
from scantron_grader.identity import parse_identity


@pytest.mark.skipif(not hasattr(cv2, "QRCodeEncoder"), reason="OpenCV build without QR encoder")
def test_qr_decoder_reads_identity_code():
    payload = identity_payload("S42")
    qr = cv2.QRCodeEncoder.create().encode(payload)
    qr = cv2.resize(qr, None, fx=8, fy=8, interpolation=cv2.INTER_NEAREST)
    qr = cv2.copyMakeBorder(qr, 40, 40, 40, 40, cv2.BORDER_CONSTANT, value=255)
    text = OpenCvQrDecoder().decode(qr)
    assert parse_identity(text).identity.student_id == "S42"


def test_qr_decoder_finds_nothing_on_blank_image():
    assert OpenCvQrDecoder().decode(np.full((200, 200), 255, dtype=np.uint8)) is None


def test_tesseract_confidence_ignores_layout_rows(monkeypatch):
    def fake_image_to_data(image, lang, config, output_type):
        assert image.size == (40, 10)
        return {"text": ["", "Doe,", "Jane", " "], "conf": ["-1", "90", "70.0", "-1"]}

    monkeypatch.setattr("pytesseract.image_to_data", fake_image_to_data)
    reading = TesseractOcr().recognize(np.full((10, 40), 255, dtype=np.uint8))
    assert reading.text == "Doe, Jane"
    assert reading.confidence == pytest.approx(80.0)


def test_tesseract_with_no_words(monkeypatch):
    monkeypatch.setattr("pytesseract.image_to_data", lambda *a, **kw: {"text": [""], "conf": [-1]})
    reading = TesseractOcr().recognize(np.zeros((10, 10), dtype=np.uint8))
    assert reading.text == ""
    assert reading.confidence == 0.0


def test_enhancer_upscales_name_field():
    crop = np.full((18, 100), 200, dtype=np.uint8)
    crop[5:12, 10:60] = 90
    out = OpenCvEnhancer().enhance(crop)
    assert out.shape == (36, 200)
    assert out.dtype == np.uint8
    assert out.min() < 90 and out.max() == 255
