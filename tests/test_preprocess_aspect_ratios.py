import io
import unittest

import numpy as np
from PIL import Image

from subject_cutout.config import CONSTRAINED_BUDGET, FAST_BUDGET, QUALITY_BUDGET
from subject_cutout.errors import DecodeError
from subject_cutout.preprocess import ImageResizer, decode_image, fit_within, normalize
from subject_cutout.raster import RasterBuffer


class TestResizerAspectRatios(unittest.TestCase):
    def _make_rgb(self, h: int, w: int) -> np.ndarray:
        # deterministic synthetic RGB
        img = np.zeros((h, w, 3), dtype=np.uint8)
        img[..., 0] = 10
        img[..., 1] = 20
        img[..., 2] = 30
        return img

    def test_resize_wide(self):
        raster = decode_image(self._make_rgb(256, 1024))
        out = ImageResizer(QUALITY_BUDGET).resize(raster)
        self.assertEqual((out.width, out.height), (512, 128))
        self.assertEqual(out.pixels.shape, (128, 512, 4))

    def test_resize_tall(self):
        raster = decode_image(self._make_rgb(1000, 300))
        out = ImageResizer(FAST_BUDGET).resize(raster)
        self.assertEqual(out.height, FAST_BUDGET)
        self.assertEqual(out.width, int(round(300 * FAST_BUDGET / 1000)))

    def test_resize_square(self):
        raster = decode_image(self._make_rgb(800, 800))
        out = ImageResizer(CONSTRAINED_BUDGET).resize(raster)
        self.assertEqual((out.width, out.height), (CONSTRAINED_BUDGET, CONSTRAINED_BUDGET))
        # flat color survives LANCZOS
        self.assertTrue((out.rgb == np.array([10, 20, 30], dtype=np.uint8)).all())
        self.assertTrue((out.alpha == 255).all())

    def test_small_image_is_not_upscaled(self):
        raster = decode_image(self._make_rgb(100, 60))
        out = ImageResizer(QUALITY_BUDGET).resize(raster)
        self.assertEqual((out.width, out.height), (60, 100))
        self.assertIsNot(out.pixels, raster.pixels)

    def test_fit_within_keeps_min_size(self):
        self.assertEqual(fit_within(5000, 3, 512), (512, 1))

    def test_unknown_preset(self):
        with self.assertRaises(ValueError):
            ImageResizer.for_preset("ultra")
        self.assertEqual(ImageResizer.for_preset("fast").budget, FAST_BUDGET)


class TestDecode(unittest.TestCase):
    def test_decode_png_bytes(self):
        buf = io.BytesIO()
        Image.new("RGB", (32, 24), (200, 0, 0)).save(buf, format="PNG")
        raster = decode_image(buf.getvalue())
        self.assertEqual((raster.width, raster.height), (32, 24))
        self.assertTrue((raster.pixels[0, 0] == [200, 0, 0, 255]).all())

    def test_decode_garbage_bytes(self):
        with self.assertRaises(DecodeError):
            decode_image(b"definitely not an image")

    def test_decode_empty_bytes(self):
        with self.assertRaises(DecodeError):
            decode_image(b"")

    def test_decode_missing_path(self):
        with self.assertRaises(DecodeError):
            decode_image("/nonexistent/photo.jpg")

    def test_decode_bad_array(self):
        with self.assertRaises(DecodeError):
            decode_image(np.zeros((4, 4), dtype=np.uint8))

    def test_decode_unsupported_type(self):
        with self.assertRaises(DecodeError):
            decode_image(12345)

    def test_decode_copies_raster(self):
        src = RasterBuffer.from_array(np.zeros((4, 5, 3), dtype=np.uint8))
        out = decode_image(src)
        out.pixels[...] = 7
        self.assertTrue((src.pixels[..., :3] == 0).all())


class TestNormalize(unittest.TestCase):
    def test_normalize_shape(self):
        rgb = np.full((30, 40, 3), 128, dtype=np.uint8)
        t = normalize(rgb, 16)
        self.assertEqual(tuple(t.shape), (1, 3, 16, 16))
        self.assertEqual(str(t.dtype), "torch.float32")


if __name__ == "__main__":
    unittest.main()
