"""
Per-nucleus morphometry: area, perimeter, circularity, mean intensity.

Perimeter is counted on the pixel grid, not as an arc length: every region
pixel contributes one for each of its 4-neighbours (up/down/left/right) that
lies outside the region, the image border included. A w x h rectangle
therefore has perimeter 2w + 2h, and a 90-degree rotation of any region leaves
its perimeter unchanged.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd
from skimage.measure import regionprops_table

from nucquant.errors import InputMismatchError
from nucquant.segmentation import Channel, LabelMap, reduce_channel


@dataclass(frozen=True)
class FeatureRecord:
    id: int
    area: int
    perimeter: int
    circularity: float
    mean_intensity: float


FEATURE_COLUMNS = ("nucleus_id", "area", "perimeter", "circularity", "mean_intensity")


def exposed_sides(labels: np.ndarray) -> np.ndarray:
    """Per pixel, how many of its 4-neighbours carry a different label (0 on background)."""
    padded = np.pad(labels, 1, mode="constant", constant_values=0)
    center = padded[1:-1, 1:-1]
    sides = (
        (padded[:-2, 1:-1] != center).astype(np.int64)
        + (padded[2:, 1:-1] != center)
        + (padded[1:-1, :-2] != center)
        + (padded[1:-1, 2:] != center)
    )
    sides[center <= 0] = 0
    return sides


def region_perimeters(labels: np.ndarray) -> np.ndarray:
    """Perimeter per label id (index = id, index 0 unused)."""
    return np.bincount(labels.ravel(), weights=exposed_sides(labels).ravel(),
                       minlength=int(labels.max()) + 1).astype(np.int64)


def circularity(area: float, perimeter: float) -> float:
    """4*pi*area / perimeter^2, clamped to [0, 1]; 0 for a zero perimeter."""
    if perimeter <= 0:
        return 0.0
    c = 4.0 * np.pi * area / float(perimeter) ** 2
    return float(min(1.0, max(0.0, c)))


def extract_features(
    label_map: Union[LabelMap, np.ndarray],
    intensity_image,
    channel: Optional[Channel] = None,
) -> List[FeatureRecord]:
    """
    One FeatureRecord per region, ordered by id.

    Parameters
    ----------
    label_map : LabelMap | np.ndarray
        Segmentation result; a bare array is treated as a label image.
    intensity_image : np.ndarray (H, W) or (H, W, C)
        Image measured for mean intensity.
    channel : int | "luminance" | None
        Channel of `intensity_image` to measure. None → the channel that
        produced the LabelMap for a multichannel image; a 2D image (or a bare
        label array) is measured directly. A channel the image does not have
        raises InputMismatchError.
    """
    if isinstance(label_map, LabelMap):
        labels = label_map.labels
        source_channel = label_map.channel
    else:
        labels = np.asarray(label_map)
        source_channel = 0
    if labels.ndim != 2:
        raise InputMismatchError(f"Label map must be 2D, got shape {labels.shape}")

    img = np.asarray(intensity_image)
    if img.shape[:2] != labels.shape:
        raise InputMismatchError(
            f"Shape mismatch: labels{labels.shape} vs intensity{img.shape}"
        )
    if channel is None:
        # a separate single-channel image is measured as is
        channel = source_channel if img.ndim == 3 else 0
    try:
        intensity = reduce_channel(img, channel)
    except ValueError as e:
        raise InputMismatchError(f"Intensity image has no channel {channel!r}: {e}") from e

    labels = labels.astype(np.int64, copy=False)
    if labels.max() <= 0:
        return []

    props = regionprops_table(labels, intensity_image=intensity,
                              properties=("label", "area", "intensity_mean"))
    perim = region_perimeters(labels)

    records = []
    for lab, area, mean in zip(props["label"], props["area"], props["intensity_mean"]):
        lab = int(lab)
        area = int(round(area))
        p = int(perim[lab])
        records.append(FeatureRecord(
            id=lab,
            area=area,
            perimeter=p,
            circularity=circularity(area, p),
            mean_intensity=float(mean),
        ))
    return records


def features_to_frame(records: List[FeatureRecord], **columns) -> pd.DataFrame:
    """
    Records → DataFrame with export column names. Extra keyword arguments are
    added as constant leading columns (e.g. dataset_name=..., image_name=...).
    """
    rows = [asdict(r) for r in records]
    df = pd.DataFrame(rows, columns=["id", "area", "perimeter", "circularity", "mean_intensity"])
    df = df.rename(columns={"id": "nucleus_id"})
    for i, (name, value) in enumerate(columns.items()):
        df.insert(i, name, value)
    return df
