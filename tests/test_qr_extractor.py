import io

import numpy as np
import pytest
import qrcode
from PIL import Image

from conftest import make_coupon
from errors import UnsupportedPayloadError
from models import CropRegion
from qr_extractor import (
    QRExtractor,
    decode_scanned_payload,
    enhance_contrast,
    invert,
    load_image,
    parse_scanned_text,
    render_crop,
    rotate,
    threshold,
)

CIPHER_TEXT = "AAAAAAAAAAAAAAAA.Y2lwaGVydGV4dA.dGFndGFndGFndGFndGFn"


def _binary(pixels: np.ndarray) -> bool:
    return set(np.unique(pixels).tolist()) <= {0, 255}


class BinaryOnlyDecoder:
    """Decodes only hard black/white images, like a reader that cannot cope with low contrast."""

    def __init__(self, text: str = CIPHER_TEXT):
        self.text = text

    def decode_pixels(self, pixels):
        return self.text if _binary(pixels) else None

    def decode_encoded(self, data):
        with Image.open(io.BytesIO(data)) as img:
            return self.decode_pixels(np.asarray(img.convert("RGB")))


class EncodedOnlyDecoder:
    def decode_pixels(self, pixels):
        raise RuntimeError("pixel path unavailable")

    def decode_encoded(self, data):
        return CIPHER_TEXT


class NeverDecoder:
    def decode_pixels(self, pixels):
        return None

    def decode_encoded(self, data):
        return None


def _low_contrast_inverted(size: int = 64) -> np.ndarray:
    """Light-on-dark checker pattern squeezed into the 110..150 luminance band."""
    yy, xx = np.mgrid[0:size, 0:size]
    pattern = ((yy // 8 + xx // 8) % 2).astype(np.uint8)
    grey = np.where(pattern == 1, 150, 110).astype(np.uint8)
    return np.stack([grey] * 3, axis=-1)


def _qr_image(text: str, box_size: int = 6) -> Image.Image:
    qr = qrcode.QRCode(box_size=box_size, border=4)
    qr.add_data(text)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")


def _png(img: Image.Image) -> bytes:
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


class TestStrategyOrder:
    def test_falls_through_to_first_threshold(self):
        attempts = []
        extractor = QRExtractor(BinaryOnlyDecoder(), on_attempt=lambda s, e: attempts.append((s, e)))

        assert extractor.extract(_low_contrast_inverted()) == CIPHER_TEXT
        assert attempts == [
            ("raw", "pixels"), ("raw", "encoded"),
            ("inverted", "pixels"), ("inverted", "encoded"),
            ("rotate_90", "pixels"), ("rotate_90", "encoded"),
            ("rotate_270", "pixels"), ("rotate_270", "encoded"),
            ("threshold_128", "pixels"),
        ]
        assert ("threshold_100", "pixels") not in attempts

    def test_encoded_entry_point_is_tried_after_pixels(self):
        attempts = []
        extractor = QRExtractor(EncodedOnlyDecoder(), on_attempt=lambda s, e: attempts.append((s, e)))
        assert extractor.extract(_low_contrast_inverted()) == CIPHER_TEXT
        assert attempts == [("raw", "pixels"), ("raw", "encoded")]

    def test_downscale_only_for_large_buffers(self):
        attempts = []
        extractor = QRExtractor(NeverDecoder(), downscale_cap=32,
                                on_attempt=lambda s, e: attempts.append(s))
        assert extractor.extract(_low_contrast_inverted(64)) is None
        strategies = list(dict.fromkeys(attempts))
        assert strategies == [
            "raw", "inverted", "rotate_90", "rotate_270", "downscale", "threshold_128", "threshold_100",
        ]

        attempts.clear()
        extractor.extract(_low_contrast_inverted(16))
        assert "downscale" not in attempts
        assert len(attempts) == 12

    def test_empty_decoder_text_counts_as_failure(self):
        class BlankDecoder(NeverDecoder):
            def decode_pixels(self, pixels):
                return ""

        assert QRExtractor(BlankDecoder()).extract(_low_contrast_inverted()) is None


class TestTransforms:
    def test_invert(self):
        rgb = np.array([[[0, 10, 255]]], dtype=np.uint8)
        assert invert(rgb).tolist() == [[[255, 245, 0]]]

    def test_rotate_is_clockwise(self):
        rgb = np.zeros((2, 3, 3), dtype=np.uint8)
        rgb[0, 0] = 255
        rotated = rotate(rgb, 90)
        assert rotated.shape == (3, 2, 3)
        assert rotated[0, 1].tolist() == [255, 255, 255]
        assert rotate(rotate(rgb, 90), 270).tolist() == rgb.tolist()

    def test_threshold_is_binary(self):
        out = threshold(_low_contrast_inverted(), 128)
        assert _binary(out)
        assert set(np.unique(out).tolist()) == {0, 255}

    def test_enhance_contrast_stretches_around_mean(self):
        rgb = _low_contrast_inverted()
        out = enhance_contrast(rgb, 1.2)
        assert out.min() < rgb.min()
        assert out.max() > rgb.max()

    def test_enhance_contrast_keeps_flat_image(self):
        flat = np.full((4, 4, 3), 90, dtype=np.uint8)
        assert enhance_contrast(flat).tolist() == flat.tolist()


class TestCrop:
    def test_render_crop_doubles_resolution(self):
        img = Image.new("RGB", (400, 300), "white")
        out = render_crop(img, CropRegion(x=10, y=20, width=100, height=50))
        assert out.shape == (100, 200, 3)

    def test_render_crop_caps_longer_side(self):
        img = Image.new("RGB", (1000, 800), "white")
        out = render_crop(img, CropRegion(x=0, y=0, width=800, height=600))
        assert out.shape == (768, 1024, 3)

    def test_crop_past_image_edge_is_clipped(self):
        img = Image.new("RGB", (100, 100), "white")
        out = render_crop(img, CropRegion(x=50, y=50, width=80, height=80))
        assert out.shape == (100, 100, 3)

    def test_crop_with_negative_origin_is_clipped(self):
        img = Image.new("RGB", (100, 100), "white")
        out = render_crop(img, CropRegion(x=-20, y=-10, width=60, height=40))
        assert out.shape == (60, 80, 3)

    def test_crop_entirely_outside_image(self):
        img = Image.new("RGB", (100, 100), "white")
        with pytest.raises(UnsupportedPayloadError):
            render_crop(img, CropRegion(x=150, y=0, width=50, height=50))

    def test_partly_outside_crop_still_scans(self):
        qr = _qr_image(CIPHER_TEXT, box_size=4)
        canvas = Image.new("RGB", (qr.width + 40, qr.height + 40), "white")
        canvas.paste(qr, (40, 40))
        crop = CropRegion(x=30, y=30, width=qr.width + 100, height=qr.height + 100)
        assert QRExtractor().extract_from_crop(_png(canvas), crop) == CIPHER_TEXT

    def test_enhanced_pass_falls_back_to_plain_crop(self):
        class RecordingExtractor(QRExtractor):
            def __init__(self, results):
                super().__init__(NeverDecoder())
                self.results = list(results)
                self.passes = []

            def extract(self, pixels):
                self.passes.append(pixels)
                return self.results.pop(0)

        img = Image.fromarray(_low_contrast_inverted())
        extractor = RecordingExtractor([None, CIPHER_TEXT])
        assert extractor.extract_from_crop(img, enhance=True) == CIPHER_TEXT
        assert len(extractor.passes) == 2
        assert not np.array_equal(extractor.passes[0], extractor.passes[1])

        extractor = RecordingExtractor([None])
        assert extractor.extract_from_crop(img, enhance=False) is None
        assert len(extractor.passes) == 1

    def test_unreadable_upload(self):
        with pytest.raises(UnsupportedPayloadError):
            load_image(b"definitely not an image")


class TestZXing:
    def test_decodes_generated_qr(self):
        pixels = np.asarray(_qr_image(CIPHER_TEXT))
        assert QRExtractor().extract(pixels) == CIPHER_TEXT

    def test_decodes_inverted_qr(self):
        pixels = invert(np.asarray(_qr_image(CIPHER_TEXT)))
        assert QRExtractor().extract(pixels) == CIPHER_TEXT

    def test_decodes_cropped_region_of_upload(self):
        qr = _qr_image(CIPHER_TEXT, box_size=4)
        canvas = Image.new("RGB", (qr.width + 300, qr.height + 200), (200, 200, 200))
        canvas.paste(qr, (150, 100))
        crop = CropRegion(x=140, y=90, width=qr.width + 20, height=qr.height + 20)
        assert QRExtractor().extract_from_crop(_png(canvas), crop) == CIPHER_TEXT

    def test_blank_image_has_no_code(self):
        blank = np.full((120, 120, 3), 255, dtype=np.uint8)
        assert QRExtractor().extract(blank) is None


class TestScannedText:
    def test_url_with_enc_parameter(self):
        url = f"https://namy.app/redeem?enc={CIPHER_TEXT}&src=qr"
        assert parse_scanned_text(url) == CIPHER_TEXT

    def test_bare_cipher_string(self):
        assert parse_scanned_text(f"  {CIPHER_TEXT}\n") == CIPHER_TEXT

    @pytest.mark.parametrize("text", [
        "https://namy.app/redeem?code=NAMY1234",
        "https://namy.app/redeem?enc=",
        "hello world",
        "WIFI:S:cafe;T:WPA;P:secret;;",
    ])
    def test_unsupported_text(self, text):
        with pytest.raises(UnsupportedPayloadError):
            parse_scanned_text(text)

    def test_decode_scanned_url(self, cipher):
        coupon = make_coupon()
        url = f"https://namy.app/redeem?enc={cipher.encrypt(coupon)}"
        assert decode_scanned_payload(url, cipher) == coupon
