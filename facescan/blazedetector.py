from typing import List, Tuple, Union

import cv2
import numpy as np
import torch

from facescan.anchors import validate_anchors
from facescan.blazebase import BlazeBase
from facescan.errors import InferenceError
from facescan.nms import stack_detections, weighted_non_max_suppression


# =============================================================================
# Decoding
# =============================================================================

def decode_boxes(raw_boxes: torch.Tensor, anchors: torch.Tensor, cfg: dict) -> torch.Tensor:
    """Converts the predictions into actual coordinates using
    the anchor boxes. Processes the entire batch at once.

    Regression layout is (y, x) first because the network output is
    channel-major over (batch, channel, height, width):

        y_center = raw[0] / y_scale * anchor_h + anchor_y
        x_center = raw[1] / x_scale * anchor_w + anchor_x
        h = raw[2] / h_scale * anchor_h
        w = raw[3] / w_scale * anchor_w

    Keypoints k = 0..5 sit at (4 + 2k, 5 + 2k) and decode like the centre.

    Args:
        raw_boxes: (b, 896, 16) regression output
        anchors: (896, 4) table of (y_center, x_center, h, w)
        cfg: variant config providing x_scale, y_scale, h_scale, w_scale

    Returns:
        (b, 896, 16): [ymin, xmin, ymax, xmax, kp0_y, kp0_x, ..., kp5_y, kp5_x]
    """
    boxes = torch.zeros_like(raw_boxes)

    y_anchor = anchors[:, 0]
    x_anchor = anchors[:, 1]
    h_anchor = anchors[:, 2]
    w_anchor = anchors[:, 3]

    y_center = raw_boxes[..., 0] / cfg['y_scale'] * h_anchor + y_anchor
    x_center = raw_boxes[..., 1] / cfg['x_scale'] * w_anchor + x_anchor

    h = raw_boxes[..., 2] / cfg['h_scale'] * h_anchor
    w = raw_boxes[..., 3] / cfg['w_scale'] * w_anchor

    boxes[..., 0] = y_center - h / 2.  # ymin
    boxes[..., 1] = x_center - w / 2.  # xmin
    boxes[..., 2] = y_center + h / 2.  # ymax
    boxes[..., 3] = x_center + w / 2.  # xmax

    for k in range(cfg['num_keypoints']):
        offset = 4 + k * 2
        boxes[..., offset] = raw_boxes[..., offset] / cfg['y_scale'] * h_anchor + y_anchor
        boxes[..., offset + 1] = raw_boxes[..., offset + 1] / cfg['x_scale'] * w_anchor + x_anchor

    return boxes


def unmasked_indices(scores: torch.Tensor, threshold: float) -> List[torch.Tensor]:
    """Indices of the anchors whose score is at least threshold.

    Args:
        scores: (b, n) or (b, n, 1) scores
        threshold: minimum score to keep

    Returns:
        One int64 tensor of indices per batch item, in ascending order.
    """
    if scores.ndimension() == 3:
        scores = scores.squeeze(dim=-1)
    mask = scores >= threshold
    return [torch.nonzero(mask[i], as_tuple=False).flatten() for i in range(scores.shape[0])]


def tensors_to_detections(
    raw_box_tensor: torch.Tensor,
    raw_score_tensor: torch.Tensor,
    anchors: torch.Tensor,
    cfg: dict,
) -> List[torch.Tensor]:
    """The output of the neural network is a tensor of shape (b, 896, 16)
    containing the bounding box regressor predictions, as well as a tensor
    of shape (b, 896, 1) with the classification confidences.

    This function converts these two "raw" tensors into proper detections.
    Returns a list of (num_detections, 17) tensors, one for each image in
    the batch.

    This is based on the source code from:
    mediapipe/calculators/tflite/tflite_tensors_to_detections_calculator.cc
    mediapipe/calculators/tflite/tflite_tensors_to_detections_calculator.proto
    """
    num_anchors = cfg['num_anchors']
    num_coords = cfg['num_coords']
    if raw_box_tensor.ndimension() != 3 or raw_box_tensor.shape[1:] != (num_anchors, num_coords):
        raise InferenceError(
            f"expected raw boxes of shape (b, {num_anchors}, {num_coords}), got {tuple(raw_box_tensor.shape)}"
        )
    if raw_score_tensor.ndimension() != 3 or raw_score_tensor.shape[1:] != (num_anchors, cfg['num_classes']):
        raise InferenceError(
            f"expected raw scores of shape (b, {num_anchors}, {cfg['num_classes']}), "
            f"got {tuple(raw_score_tensor.shape)}"
        )
    if raw_box_tensor.shape[0] != raw_score_tensor.shape[0]:
        raise InferenceError("raw boxes and scores disagree on batch size")

    detection_boxes = decode_boxes(raw_box_tensor, anchors, cfg)

    thresh = cfg['score_clipping_thresh']
    raw_score_tensor = raw_score_tensor.clamp(-thresh, thresh)
    detection_scores = raw_score_tensor.sigmoid()

    indices = unmasked_indices(detection_scores, cfg['min_score_thresh'])

    # Each image from the batch can have a different number of detections.
    output_detections = []
    for i, keep in enumerate(indices):
        boxes = detection_boxes[i, keep]
        scores = detection_scores[i, keep]
        output_detections.append(torch.cat((boxes, scores), dim=-1))

    return output_detections


# =============================================================================
# Image <-> detector coordinates
# =============================================================================

def resize_pad(img: np.ndarray) -> Tuple[np.ndarray, np.ndarray, float, Tuple[int, int]]:
    """ resize and pad images to be input to the detectors

    The back and front detector networks take 256x256 and 128x128 images
    as input. As such the input image is padded and resized to fit the
    size while maintaing the aspect ratio.

    Returns:
        img1: 256x256
        img2: 128x128
        scale: scale factor between original image and 256x256 image
        pad: pixels of padding in the original image
    """

    size0 = img.shape
    if size0[0] >= size0[1]:
        h1 = 256
        w1 = max(1, 256 * size0[1] // size0[0])
        padh = 0
        padw = 256 - w1
        scale = size0[1] / w1
    else:
        h1 = max(1, 256 * size0[0] // size0[1])
        w1 = 256
        padh = 256 - h1
        padw = 0
        scale = size0[0] / h1
    padh1 = padh // 2
    padh2 = padh // 2 + padh % 2
    padw1 = padw // 2
    padw2 = padw // 2 + padw % 2
    img1 = cv2.resize(img, (w1, h1))
    img1 = np.pad(img1, ((padh1, padh2), (padw1, padw2), (0, 0)))
    pad = (int(padh1 * scale), int(padw1 * scale))
    img2 = cv2.resize(img1, (128, 128))
    return img1, img2, scale, pad


def denormalize_detections(
    detections: torch.Tensor,
    scale: float,
    pad: Tuple[int, int]
) -> torch.Tensor:
    """Map detection coordinates (boxes + keypoints) back to image space.

    The detectors see a padded square resized to 256 (or 128) pixels, so
    normalised coordinates are scaled by 256 * scale and shifted by the
    padding. y values (even offsets) use pad[0], x values (odd offsets)
    use pad[1].

    Inputs:
        detections: (n, 17) tensor, [ymin, xmin, ymax, xmax, 6 x (y, x), score]
        scale: scalar that was used to resize the image
        pad: padding in the y and x dimensions
    """
    if detections.numel() == 0:
        return detections

    detections = detections.clone()
    num_coords = detections.shape[1] - 1

    detections[:, 0:num_coords:2] = detections[:, 0:num_coords:2] * scale * 256 - pad[0]
    detections[:, 1:num_coords:2] = detections[:, 1:num_coords:2] * scale * 256 - pad[1]

    return detections


# =============================================================================
# Detector base class
# =============================================================================

class BlazeDetector(BlazeBase):
    """ Base class for detector models.

    Based on code from https://github.com/tkat0/PyTorch_BlazeFace/ and
    https://github.com/hollance/BlazeFace-PyTorch and
    https://github.com/google/mediapipe/
    """

    # Type annotations for class attributes
    x_scale: float
    y_scale: float
    w_scale: float
    h_scale: float
    num_keypoints: int
    num_anchors: int
    num_coords: int
    num_classes: int
    score_clipping_thresh: float
    min_score_thresh: float
    min_suppression_threshold: float

    def __init__(self, cfg: dict):
        super(BlazeDetector, self).__init__()
        self.cfg = dict(cfg)
        self.name = cfg['name']
        self.input_size = cfg['input_size']
        self.num_classes = cfg['num_classes']
        self.num_anchors = cfg['num_anchors']
        self.num_coords = cfg['num_coords']
        self.num_keypoints = cfg['num_keypoints']
        self.x_scale = cfg['x_scale']
        self.y_scale = cfg['y_scale']
        self.h_scale = cfg['h_scale']
        self.w_scale = cfg['w_scale']
        self.score_clipping_thresh = cfg['score_clipping_thresh']
        self.min_score_thresh = cfg['min_score_thresh']
        self.min_suppression_threshold = cfg['min_suppression_threshold']
        self.register_buffer('anchors', torch.zeros((0, 4)), persistent=False)

    def load_anchors(self, anchors: torch.Tensor) -> None:
        """Attach a validated (896, 4) anchor table."""
        validate_anchors(anchors, source=f"{self.name} anchors")
        self.anchors = anchors.to(device=self._device(), dtype=torch.float32)

    def _preprocess(self, x):
        """Converts the image pixels to the range [-1, 1] (MediaPipe convention)."""
        return x.float() / 127.5 - 1.0

    def predict_on_image(self, img: Union[np.ndarray, torch.Tensor]) -> torch.Tensor:
        """Makes a prediction on a single image.

        Arguments:
            img: a NumPy array of shape (H, W, 3) or a PyTorch tensor of
                 shape (3, H, W). The image's height and width should match
                 the variant's input size.

        Returns:
            A tensor with face detections.
        """
        if isinstance(img, np.ndarray):
            img = torch.from_numpy(img).permute((2, 0, 1))

        return self.predict_on_batch(img.unsqueeze(0))[0]

    def predict_on_batch(self, x: Union[np.ndarray, torch.Tensor]) -> List[torch.Tensor]:
        """Makes a prediction on a batch of images.

        Arguments:
            x: a NumPy array of shape (b, H, W, 3) or a PyTorch tensor of
               shape (b, 3, H, W). Height and width must equal input_size.

        Returns:
            A list containing a tensor of face detections for each image in
            the batch. If no faces are found for an image, returns a tensor
            of shape (0, 17).

        Each detection is a PyTorch tensor consisting of 17 numbers:
            - ymin, xmin, ymax, xmax
            - y, x of the 6 keypoints
            - confidence score

        Raises:
            InferenceError: the forward pass or decoding failed
        """
        if isinstance(x, np.ndarray):
            x = torch.from_numpy(x).permute((0, 3, 1, 2))

        if x.ndimension() != 4 or x.shape[1] != 3 \
                or x.shape[2] != self.input_size or x.shape[3] != self.input_size:
            raise InferenceError(
                f"{self.name} expects (b, 3, {self.input_size}, {self.input_size}) input, "
                f"got {tuple(x.shape)}"
            )
        if self.anchors.shape[0] != self.num_anchors:
            raise InferenceError(f"{self.name} has no anchor table loaded")

        # 1. Preprocess the images into tensors:
        x = x.to(self._device())
        x = self._preprocess(x)

        # 2. Run the neural network:
        try:
            with torch.no_grad():
                out = self.__call__(x)

            # 3. Postprocess the raw predictions:
            detections = self._tensors_to_detections(out[0], out[1], self.anchors)
        except RuntimeError as exc:
            raise InferenceError(f"{self.name} forward pass failed: {exc}") from exc

        # 4. Non-maximum suppression to remove overlapping detections:
        filtered_detections = []
        for i in range(len(detections)):
            faces = self._weighted_non_max_suppression(detections[i])
            filtered_detections.append(stack_detections(faces, self.num_coords).to(x.device))

        return filtered_detections

    def _tensors_to_detections(
        self,
        raw_box_tensor: torch.Tensor,
        raw_score_tensor: torch.Tensor,
        anchors: torch.Tensor
    ) -> List[torch.Tensor]:
        return tensors_to_detections(raw_box_tensor, raw_score_tensor, anchors, self.cfg)

    def _weighted_non_max_suppression(self, detections: torch.Tensor) -> List[torch.Tensor]:
        return weighted_non_max_suppression(
            detections, self.min_suppression_threshold, self.num_coords
        )

