"""
Unit tests for the BlazeFace front and back models.
"""
import unittest

import numpy as np
import torch

from facescan.blazeface import BlazeFaceBack, BlazeFaceFront, ModelType, build_model
from facescan.config import cfg_back, cfg_front
from facescan.errors import ConfigurationError, InferenceError
from facescan.weights import InMemoryWeightStore


class TestBlazeFaceFront(unittest.TestCase):
    """Tests for the 128x128 front model."""

    def setUp(self):
        torch.manual_seed(0)
        self.model = BlazeFaceFront().eval()
        self.input_size = 128
        self.num_anchors = 896
        self.num_coords = 16

    def test_forward_shape(self):
        """Forward pass gives (B, 896, 16) regressors and (B, 896, 1) scores."""
        for batch_size in [1, 2, 4]:
            with self.subTest(batch_size=batch_size):
                x = torch.randn(batch_size, 3, self.input_size, self.input_size)
                with torch.no_grad():
                    boxes, scores = self.model(x)

                self.assertEqual(boxes.shape, torch.Size([batch_size, self.num_anchors, self.num_coords]))
                self.assertEqual(scores.shape, torch.Size([batch_size, self.num_anchors, 1]))

    def test_forward_dtype(self):
        x = torch.randn(1, 3, self.input_size, self.input_size)
        with torch.no_grad():
            boxes, scores = self.model(x)

        self.assertEqual(boxes.dtype, torch.float32)
        self.assertEqual(scores.dtype, torch.float32)

    def test_state_dict_names(self):
        """Parameter names and shapes follow the MediaPipe export."""
        state = self.model.state_dict()
        expected = {
            "backbone1.0.weight": (24, 3, 5, 5),
            "backbone1.0.bias": (24,),
            "backbone1.2.convs.0.weight": (24, 1, 3, 3),
            "backbone1.2.convs.1.weight": (24, 24, 1, 1),
            "backbone1.12.convs.1.weight": (88, 80, 1, 1),
            "backbone2.0.convs.0.weight": (88, 1, 3, 3),
            "backbone2.4.convs.1.bias": (96,),
            "classifier_8.weight": (2, 88, 1, 1),
            "classifier_16.weight": (6, 96, 1, 1),
            "regressor_8.weight": (32, 88, 1, 1),
            "regressor_16.weight": (96, 96, 1, 1),
        }
        for name, shape in expected.items():
            with self.subTest(name=name):
                self.assertIn(name, state)
                self.assertEqual(tuple(state[name].shape), shape)

        self.assertNotIn("anchors", state)

    def test_predict_without_anchors(self):
        x = np.zeros((1, self.input_size, self.input_size, 3), dtype=np.uint8)
        with self.assertRaises(InferenceError):
            self.model.predict_on_batch(x)


class TestBlazeFaceBack(unittest.TestCase):
    """Tests for the 256x256 back model."""

    @classmethod
    def setUpClass(cls):
        torch.manual_seed(0)
        cls.model = BlazeFaceBack().eval()

    def test_forward_shape(self):
        x = torch.randn(2, 3, 256, 256)
        with torch.no_grad():
            boxes, scores = self.model(x)

        self.assertEqual(boxes.shape, torch.Size([2, 896, 16]))
        self.assertEqual(scores.shape, torch.Size([2, 896, 1]))

    def test_state_dict_names(self):
        state = self.model.state_dict()

        self.assertEqual(tuple(state["backbone.0.weight"].shape), (24, 3, 5, 5))
        self.assertEqual(tuple(state["backbone.32.convs.1.weight"].shape), (96, 96, 1, 1))
        self.assertNotIn("backbone.33.convs.0.weight", state)
        self.assertEqual(tuple(state["final.convs.0.weight"].shape), (96, 1, 3, 3))
        self.assertEqual(tuple(state["classifier_8.weight"].shape), (2, 96, 1, 1))
        self.assertEqual(tuple(state["regressor_16.weight"].shape), (96, 96, 1, 1))


class TestLoadWeights(unittest.TestCase):
    """Weight validation on load."""

    def setUp(self):
        torch.manual_seed(0)
        self.model = BlazeFaceFront()
        self.state = {k: v.clone() for k, v in self.model.state_dict().items()}

    def test_matching_weights_load(self):
        state = {k: torch.full_like(v, 0.01) for k, v in self.state.items()}
        self.model.load_weights(state)

        self.assertTrue(torch.all(self.model.classifier_8.weight == 0.01))
        self.assertFalse(self.model.training)

    def test_wrong_shape(self):
        self.state["classifier_8.weight"] = torch.zeros(2, 88, 3, 3)
        with self.assertRaises(ConfigurationError) as ctx:
            self.model.load_weights(self.state)
        self.assertIn("classifier_8.weight", str(ctx.exception))

    def test_missing_tensor(self):
        del self.state["backbone2.0.convs.0.bias"]
        with self.assertRaises(ConfigurationError) as ctx:
            self.model.load_weights(self.state)
        self.assertIn("backbone2.0.convs.0.bias", str(ctx.exception))

    def test_unexpected_tensor(self):
        self.state["extra.weight"] = torch.zeros(3)
        with self.assertRaises(ConfigurationError):
            self.model.load_weights(self.state)

    def test_non_finite_tensor(self):
        self.state["regressor_8.bias"] = torch.full((32,), float("nan"))
        with self.assertRaises(ConfigurationError):
            self.model.load_weights(self.state)

    def test_integer_tensor(self):
        self.state["regressor_8.bias"] = torch.zeros(32, dtype=torch.long)
        with self.assertRaises(ConfigurationError):
            self.model.load_weights(self.state)

    def test_failed_load_keeps_previous_weights(self):
        before = self.model.classifier_8.weight.detach().clone()
        state = {k: torch.zeros_like(v) for k, v in self.state.items()}
        state["classifier_16.weight"] = torch.zeros(1)
        with self.assertRaises(ConfigurationError):
            self.model.load_weights(state)
        self.assertTrue(torch.equal(self.model.classifier_8.weight, before))


class TestBuildModel(unittest.TestCase):
    """build_model wiring of weights and anchors."""

    def test_build_both_variants(self):
        torch.manual_seed(0)
        states = {
            cfg_front["name"]: BlazeFaceFront().state_dict(),
            cfg_back["name"]: BlazeFaceBack().state_dict(),
        }
        store = InMemoryWeightStore(states)

        for model_type in ModelType:
            with self.subTest(model_type=model_type):
                model = build_model(model_type, store)
                self.assertEqual(model.name, model_type.value)
                self.assertEqual(model.anchors.shape, torch.Size([896, 4]))
                self.assertFalse(model.training)

    def test_unknown_variant_weights(self):
        store = InMemoryWeightStore({})
        with self.assertRaises(ConfigurationError):
            build_model(ModelType.FRONT, store)

    def test_unknown_model_type(self):
        with self.assertRaises(ConfigurationError):
            build_model("front")

    def test_bad_device(self):
        with self.assertRaises(ConfigurationError):
            build_model(ModelType.FRONT, device="no-such-device")

    def test_bad_anchor_table(self):
        with self.assertRaises(ConfigurationError):
            build_model(ModelType.FRONT, anchors=torch.zeros(10, 4))

    def test_predict_on_batch(self):
        """Random weights still produce well formed (n, 17) detections per image."""
        torch.manual_seed(0)
        model = build_model(ModelType.FRONT)
        x = np.random.RandomState(0).randint(0, 256, (2, 128, 128, 3)).astype(np.uint8)

        detections = model.predict_on_batch(x)

        self.assertEqual(len(detections), 2)
        for det in detections:
            self.assertEqual(det.ndim, 2)
            self.assertEqual(det.shape[1], 17)
            if det.numel() > 0:
                self.assertTrue(torch.all(det[:, 16] >= model.min_score_thresh))
                self.assertTrue(torch.all(det[:, 16] <= 1.0))

    def test_predict_rejects_wrong_size(self):
        model = build_model(ModelType.FRONT)
        with self.assertRaises(InferenceError):
            model.predict_on_batch(torch.zeros(1, 3, 256, 256))


if __name__ == "__main__":
    unittest.main()
