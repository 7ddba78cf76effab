"""
Box overlap helpers and the weighted non-maximum suppression used by BlazeFace.

Boxes are [ymin, xmin, ymax, xmax]. The same helpers work on normalised
and pixel coordinates.
"""
from __future__ import annotations

from typing import List

import torch


# =============================================================================
# IoU
# =============================================================================

def intersect(box_a: torch.Tensor, box_b: torch.Tensor) -> torch.Tensor:
    """
    Intersection area of every pair of boxes.

    Resize both tensors to [A,B,2] without new malloc:
    [A,2] -> [A,1,2] -> [A,B,2]
    [B,2] -> [1,B,2] -> [A,B,2]
    Then we compute the area of intersect between box_a and box_b.

    Args:
        box_a: (A, 4) boxes
        box_b: (B, 4) boxes

    Returns:
        (A, B) intersection areas
    """
    A = box_a.size(0)
    B = box_b.size(0)
    max_yx = torch.min(
        box_a[:, 2:].unsqueeze(1).expand(A, B, 2),
        box_b[:, 2:].unsqueeze(0).expand(A, B, 2)
    )
    min_yx = torch.max(
        box_a[:, :2].unsqueeze(1).expand(A, B, 2),
        box_b[:, :2].unsqueeze(0).expand(A, B, 2)
    )
    inter = torch.clamp((max_yx - min_yx), min=0)
    return inter[:, :, 0] * inter[:, :, 1]


def jaccard(box_a: torch.Tensor, box_b: torch.Tensor) -> torch.Tensor:
    """
    Jaccard overlap (IoU) of every pair of boxes.

        A ∩ B / A ∪ B = A ∩ B / (area(A) + area(B) - A ∩ B)

    Args:
        box_a: (A, 4) boxes
        box_b: (B, 4) boxes

    Returns:
        (A, B) IoU values. Zero-area pairs give NaN.
    """
    inter = intersect(box_a, box_b)
    area_a = ((box_a[:, 2] - box_a[:, 0]) *
              (box_a[:, 3] - box_a[:, 1])).unsqueeze(1).expand_as(inter)
    area_b = ((box_b[:, 2] - box_b[:, 0]) *
              (box_b[:, 3] - box_b[:, 1])).unsqueeze(0).expand_as(inter)
    union = area_a + area_b - inter
    return inter / union


def overlap_similarity(box: torch.Tensor, other_boxes: torch.Tensor) -> torch.Tensor:
    """IoU between a single (4,) box and a set of (N, 4) boxes."""
    return jaccard(box.unsqueeze(0), other_boxes).squeeze(0)


# =============================================================================
# Weighted NMS
# =============================================================================

def weighted_non_max_suppression(
    detections: torch.Tensor,
    min_suppression_threshold: float = 0.3,
    num_coords: int = 16,
) -> List[torch.Tensor]:
    """The alternative NMS method as mentioned in the BlazeFace paper:

    "We replace the suppression algorithm with a blending strategy that
    estimates the regression parameters of a bounding box as a weighted
    mean between the overlapping predictions."

    The original MediaPipe code assigns the score of the most confident
    detection to the weighted detection, but we take the average score
    of the overlapping detections.

    Args:
        detections: (count, num_coords + 1) tensor, score in the last column
        min_suppression_threshold: IoU above which two detections are
            treated as the same face
        num_coords: number of box + keypoint values before the score

    Returns:
        One (num_coords + 1,) tensor per cluster, ordered by the score of
        each cluster's top detection.
    """
    if len(detections) == 0:
        return []

    output_detections = []

    # Highest to lowest score; ties keep input order.
    remaining = torch.sort(detections[:, num_coords], descending=True, stable=True).indices

    while len(remaining) > 0:
        detection = detections[remaining[0]]

        # other_boxes include the first box itself.
        first_box = detection[:4]
        other_boxes = detections[remaining, :4]
        ious = overlap_similarity(first_box, other_boxes)

        ious = torch.nan_to_num(ious, nan=0.0, posinf=0.0, neginf=0.0)
        mask = ious > min_suppression_threshold
        mask[0] = True
        overlapping = remaining[mask]
        remaining = remaining[~mask]

        weighted_detection = detection.clone()
        if len(overlapping) > 1:
            coordinates = detections[overlapping, :num_coords]
            scores = detections[overlapping, num_coords:num_coords + 1]
            total_score = scores.sum()
            weighted = (coordinates * scores).sum(dim=0) / total_score
            weighted_detection[:num_coords] = weighted
            weighted_detection[num_coords] = total_score / len(overlapping)

        output_detections.append(weighted_detection)

    return output_detections


def stack_detections(detections: List[torch.Tensor], num_coords: int = 16) -> torch.Tensor:
    """Stack NMS output into an (n, num_coords + 1) tensor, (0, num_coords + 1) if empty."""
    if len(detections) == 0:
        return torch.zeros((0, num_coords + 1))
    return torch.stack(detections)
