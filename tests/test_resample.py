import unittest

import numpy as np

from subject_cutout.postprocess import resample_mask
from subject_cutout.raster import Mask


class TestResampleMask(unittest.TestCase):
    def test_identity_when_sizes_match(self):
        rng = np.random.default_rng(0)
        values = rng.random((17, 23), dtype=np.float32)
        out = resample_mask(Mask.from_array(values), 23, 17)
        self.assertEqual(out.values.shape, (17, 23))
        np.testing.assert_allclose(out.values, values, atol=1e-7)
        self.assertIsNot(out.values, values)

    def test_bilinear_midpoint(self):
        a, b, c, d = 0.1, 0.4, 0.6, 0.9
        values = np.array([[a, b], [c, d]], dtype=np.float32)
        out = resample_mask(Mask.from_array(values), 4, 4)
        # destination (1, 1) samples source (0.5, 0.5), the center of the four corners
        self.assertAlmostEqual(float(out.values[1, 1]), (a + b + c + d) / 4.0, places=6)
        # destination (0, 0) lands exactly on the top-left corner
        self.assertAlmostEqual(float(out.values[0, 0]), a, places=6)

    def test_edge_neighbors_are_clamped(self):
        values = np.array([[0.0, 1.0]], dtype=np.float32)
        out = resample_mask(Mask.from_array(values), 4, 3)
        self.assertEqual(out.values.shape, (3, 4))
        # x = 3 samples 1.5 -> floor 1, neighbor clamped to 1
        self.assertAlmostEqual(float(out.values[0, 3]), 1.0, places=6)
        self.assertAlmostEqual(float(out.values[2, 1]), 0.5, places=6)

    def test_downscale_constant(self):
        out = resample_mask(Mask.filled(64, 48, 0.75), 16, 12)
        np.testing.assert_allclose(out.values, 0.75, atol=1e-6)

    def test_values_are_clamped(self):
        values = np.array([[-0.5, 2.0], [np.nan, 0.5]], dtype=np.float32)
        out = resample_mask(Mask.from_array(values), 2, 2)
        self.assertTrue(np.isfinite(out.values).all())
        self.assertGreaterEqual(float(out.values.min()), 0.0)
        self.assertLessEqual(float(out.values.max()), 1.0)

    def test_invalid_target(self):
        with self.assertRaises(ValueError):
            resample_mask(Mask.filled(4, 4, 1.0), 0, 4)


if __name__ == "__main__":
    unittest.main()
