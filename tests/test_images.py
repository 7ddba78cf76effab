"""
Unit tests for image decoding and cropping.
"""
import tempfile
import unittest
from unittest import mock
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from facescan.errors import DecodeError, ImageNotFoundError, UnsupportedImageError
from facescan.images import ImageLoader, crop, save_png, square_crop, thumbnail


class TestImageLoader(unittest.TestCase):

    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = Path(self._tmp.name)
        self.loader = ImageLoader()

    def tearDown(self):
        self._tmp.cleanup()

    def test_decode_returns_rgb(self):
        bgr = np.zeros((20, 30, 3), dtype=np.uint8)
        bgr[..., 2] = 255  # red in OpenCV channel order
        path = self.tmp / "red.png"
        cv2.imwrite(str(path), bgr)

        img = self.loader.decode(path)

        self.assertEqual(img.shape, (20, 30, 3))
        self.assertEqual(img.dtype, np.uint8)
        self.assertTrue(np.all(img[..., 0] == 255))
        self.assertTrue(np.all(img[..., 2] == 0))

    def test_decode_grayscale_as_three_channels(self):
        path = self.tmp / "grey.png"
        Image.new("L", (16, 8), color=128).save(path)

        img = self.loader.decode(path)

        self.assertEqual(img.shape, (8, 16, 3))

    def test_missing_file(self):
        with self.assertRaises(ImageNotFoundError) as ctx:
            self.loader.decode(self.tmp / "missing.jpg")
        self.assertIsInstance(ctx.exception, DecodeError)

    def test_unsupported_file(self):
        path = self.tmp / "notes.jpg"
        path.write_bytes(b"this is not an image")
        with self.assertRaises(UnsupportedImageError):
            self.loader.decode(path)

    def test_oversized_picture_is_unsupported(self):
        path = self.tmp / "huge.png"
        Image.new("RGB", (100, 100)).save(path)

        # Pillow refuses anything over twice MAX_IMAGE_PIXELS outright.
        with mock.patch("facescan.images.cv2.imread", return_value=None), \
                mock.patch.object(Image, "MAX_IMAGE_PIXELS", 1000):
            with self.assertRaises(UnsupportedImageError):
                self.loader.decode(path)

    def test_opencv_error_is_unsupported(self):
        path = self.tmp / "odd.png"
        Image.new("RGB", (4, 4)).save(path)

        with mock.patch("facescan.images.cv2.imread", side_effect=cv2.error("bad header")):
            with self.assertRaises(UnsupportedImageError):
                self.loader.decode(path)


class TestSquareCrop(unittest.TestCase):

    def test_centred_crop(self):
        # 20px box, 1.6x scale -> 32px square around the centre.
        self.assertEqual(square_crop((50.0, 50.0), 20.0, 20.0, 200, 200, 1.6), (34, 34, 32))

    def test_uses_longer_side(self):
        self.assertEqual(square_crop((100.0, 100.0), 10.0, 40.0, 200, 200, 1.0), (80, 80, 40))

    def test_shrinks_at_border(self):
        x, y, edge = square_crop((10.0, 100.0), 40.0, 40.0, 200, 200, 1.6)
        self.assertEqual((x, y, edge), (0, 90, 20))

    def test_stays_inside_image(self):
        cases = [
            ((195.0, 5.0), 60.0, 60.0),
            ((0.0, 0.0), 10.0, 10.0),
            ((150.0, 80.0), 500.0, 500.0),
        ]
        for centre, w, h in cases:
            with self.subTest(centre=centre):
                x, y, edge = square_crop(centre, w, h, 200, 100, 1.6)
                self.assertGreaterEqual(x, 0)
                self.assertGreaterEqual(y, 0)
                self.assertGreaterEqual(edge, 0)
                self.assertLessEqual(x + edge, 200)
                self.assertLessEqual(y + edge, 100)


class TestCropAndSave(unittest.TestCase):

    def setUp(self):
        self.img = np.arange(100 * 80 * 3, dtype=np.uint32).reshape(100, 80, 3).astype(np.uint8)

    def test_crop_clamps(self):
        self.assertEqual(crop(self.img, -10, -10, 30, 30).shape, (20, 20, 3))
        self.assertEqual(crop(self.img, 70, 90, 30, 30).shape, (10, 10, 3))
        self.assertEqual(crop(self.img, 200, 200, 10, 10).size, 0)

    def test_thumbnail_shrinks(self):
        big = np.zeros((300, 400, 3), dtype=np.uint8)
        self.assertEqual(thumbnail(big, 200).shape, (150, 200, 3))

    def test_thumbnail_never_enlarges(self):
        self.assertIs(thumbnail(self.img, 200), self.img)

    def test_save_png(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "face.png"
            self.assertTrue(save_png(self.img[:10, :10], path))
            self.assertTrue(path.is_file())
            self.assertFalse(save_png(self.img[:0, :0], Path(tmp) / "empty.png"))
            self.assertFalse((Path(tmp) / "empty.png").exists())


if __name__ == "__main__":
    unittest.main()
