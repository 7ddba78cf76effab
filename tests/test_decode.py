"""
Unit tests for decoding raw detector output into detections.
"""
import unittest

import numpy as np
import torch

from facescan.anchors import generate_anchors
from facescan.blazedetector import (
    decode_boxes,
    denormalize_detections,
    resize_pad,
    tensors_to_detections,
    unmasked_indices,
)
from facescan.config import cfg_back, cfg_front, variant_config
from facescan.errors import InferenceError


class TestDecodeBoxes(unittest.TestCase):

    def setUp(self):
        self.anchors = generate_anchors(cfg_front)

    def test_zero_offsets_decode_to_anchor_centres(self):
        raw = torch.zeros(1, 896, 16)
        boxes = decode_boxes(raw, self.anchors, cfg_front)

        # Zero-size boxes sit on the anchor centre, keypoints too.
        np.testing.assert_allclose(boxes[0, :, 0].numpy(), self.anchors[:, 0].numpy())
        np.testing.assert_allclose(boxes[0, :, 1].numpy(), self.anchors[:, 1].numpy())
        for k in range(6):
            np.testing.assert_allclose(boxes[0, :, 4 + 2 * k].numpy(), self.anchors[:, 0].numpy())
            np.testing.assert_allclose(boxes[0, :, 5 + 2 * k].numpy(), self.anchors[:, 1].numpy())

    def test_size_and_offset(self):
        raw = torch.zeros(1, 896, 16)
        raw[0, 0, 0] = 12.8    # y offset 0.1 of the anchor height
        raw[0, 0, 1] = -6.4    # x offset -0.05
        raw[0, 0, 2] = 32.0    # h = 0.25
        raw[0, 0, 3] = 64.0    # w = 0.5
        raw[0, 0, 4] = 25.6    # right eye y offset 0.2

        boxes = decode_boxes(raw, self.anchors, cfg_front)[0, 0]
        y, x = self.anchors[0, 0].item() + 0.1, self.anchors[0, 1].item() - 0.05

        np.testing.assert_allclose(
            boxes[:4].numpy(), [y - 0.125, x - 0.25, y + 0.125, x + 0.25], atol=1e-6)
        self.assertAlmostEqual(boxes[4].item(), self.anchors[0, 0].item() + 0.2, places=6)

    def test_back_scale(self):
        raw = torch.zeros(1, 896, 16)
        raw[0, 0, 2] = 64.0
        boxes = decode_boxes(raw, generate_anchors(cfg_back), cfg_back)[0, 0]
        self.assertAlmostEqual((boxes[2] - boxes[0]).item(), 0.25, places=6)


class TestUnmaskedIndices(unittest.TestCase):

    def test_indices_at_or_above_threshold(self):
        scores = torch.full((1, 30), 0.1)
        for i in [0, 12, 17, 25, 28]:
            scores[0, i] = 0.9
        scores[0, 17] = 0.75  # equal to the threshold counts

        for shape in [(1, 30), (1, 30, 1)]:
            with self.subTest(shape=shape):
                indices = unmasked_indices(scores.reshape(shape), 0.75)
                self.assertEqual(len(indices), 1)
                self.assertEqual(indices[0].tolist(), [0, 12, 17, 25, 28])
                self.assertEqual(indices[0].dtype, torch.int64)

    def test_per_batch_item(self):
        scores = torch.tensor([[0.9, 0.1], [0.1, 0.1]])
        indices = unmasked_indices(scores, 0.5)
        self.assertEqual([i.tolist() for i in indices], [[0], []])


class TestTensorsToDetections(unittest.TestCase):

    def setUp(self):
        self.anchors = generate_anchors(cfg_front)
        self.cfg = variant_config(cfg_front["name"])

    def test_score_threshold_and_clipping(self):
        raw_boxes = torch.zeros(1, 896, 16)
        raw_scores = torch.full((1, 896, 1), -50.0)
        raw_scores[0, 3, 0] = 1000.0   # clipped to 100 before the sigmoid
        raw_scores[0, 7, 0] = 2.0      # sigmoid ~0.88
        raw_scores[0, 9, 0] = 1.0      # sigmoid ~0.73, below 0.75

        detections = tensors_to_detections(raw_boxes, raw_scores, self.anchors, self.cfg)

        self.assertEqual(len(detections), 1)
        det = detections[0]
        self.assertEqual(det.shape, torch.Size([2, 17]))
        self.assertAlmostEqual(det[0, 16].item(), 1.0, places=6)
        self.assertAlmostEqual(det[1, 16].item(), torch.sigmoid(torch.tensor(2.0)).item(), places=6)
        self.assertTrue(torch.all(torch.isfinite(det)))

    def test_no_detections(self):
        raw_scores = torch.full((2, 896, 1), -10.0)
        detections = tensors_to_detections(torch.zeros(2, 896, 16), raw_scores, self.anchors, self.cfg)
        self.assertEqual([d.shape for d in detections], [torch.Size([0, 17])] * 2)

    def test_shape_errors(self):
        cases = {
            "boxes": (torch.zeros(1, 895, 16), torch.zeros(1, 896, 1)),
            "scores": (torch.zeros(1, 896, 16), torch.zeros(1, 896)),
            "batch": (torch.zeros(2, 896, 16), torch.zeros(1, 896, 1)),
        }
        for name, (raw_boxes, raw_scores) in cases.items():
            with self.subTest(case=name):
                with self.assertRaises(InferenceError):
                    tensors_to_detections(raw_boxes, raw_scores, self.anchors, self.cfg)


class TestResizePad(unittest.TestCase):

    def test_landscape(self):
        img = np.zeros((480, 640, 3), dtype=np.uint8)
        img256, img128, scale, pad = resize_pad(img)

        self.assertEqual(img256.shape, (256, 256, 3))
        self.assertEqual(img128.shape, (128, 128, 3))
        self.assertAlmostEqual(scale, 2.5)
        self.assertEqual(pad, (80, 0))

    def test_portrait(self):
        img = np.zeros((640, 480, 3), dtype=np.uint8)
        _, _, scale, pad = resize_pad(img)
        self.assertAlmostEqual(scale, 2.5)
        self.assertEqual(pad, (0, 80))

    def test_denormalize_maps_back_to_image(self):
        img = np.zeros((480, 640, 3), dtype=np.uint8)
        _, _, scale, pad = resize_pad(img)

        det = torch.full((1, 17), 0.5)
        det[0, 16] = 0.9
        out = denormalize_detections(det, scale, pad)

        # The centre of the padded square is the centre of the picture.
        np.testing.assert_allclose(out[0, 0:16:2].numpy(), 240.0, atol=1e-4)
        np.testing.assert_allclose(out[0, 1:16:2].numpy(), 320.0, atol=1e-4)
        self.assertAlmostEqual(out[0, 16].item(), 0.9, places=6)
        self.assertEqual(det[0, 0].item(), 0.5)

    def test_denormalize_empty(self):
        empty = torch.zeros((0, 17))
        self.assertEqual(denormalize_detections(empty, 2.0, (10, 0)).shape, torch.Size([0, 17]))


if __name__ == "__main__":
    unittest.main()
