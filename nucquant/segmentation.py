"""
Threshold-based nuclei segmentation.

What this does (high level):
- Reduces a (multi-channel) image to one intensity map, either a single channel
  (e.g. DAPI) or the mean over all channels ("luminance").
- Binarizes with a global Otsu threshold, or with an explicit override.
- Cleans salt noise with a small square opening.
- Finds 4-connected components, numbered in row-major scan order.
- Drops components below a pixel-count floor and, optionally, components that
  touch the image border (partially imaged nuclei bias size/shape statistics).

The output is a LabelMap: 0 = background, 1..n = nuclei, ids dense and ordered
by where each nucleus is first met when scanning top-to-bottom, left-to-right.
Everything here is a pure function of (image, channel, params).
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Optional, Union

import numpy as np
from scipy import ndimage as ndi
from skimage.filters import threshold_otsu
from skimage.measure import label as cc_label

from nucquant.errors import DecodeError

LUMINANCE = "luminance"
Channel = Union[int, str]


# ---------------------------
# Parameters / result types
# ---------------------------

@dataclass(frozen=True)
class SegmentationParams:
    min_region_pixels: int = 50
    exclude_border_regions: bool = True
    threshold_override: Optional[float] = None
    opening_radius: int = 1

    def __post_init__(self):
        if self.min_region_pixels < 0:
            raise ValueError(f"min_region_pixels must be >= 0, got {self.min_region_pixels}")
        if self.opening_radius < 0:
            raise ValueError(f"opening_radius must be >= 0, got {self.opening_radius}")

    @classmethod
    def from_config(cls, cfg: Optional[dict]) -> "SegmentationParams":
        """Build params from the `segmentation:` block of a YAML config."""
        cfg = dict(cfg or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(cfg) - known)
        if unknown:
            raise ValueError(f"Unknown segmentation option(s): {', '.join(unknown)}")
        if cfg.get("threshold_override") is not None:
            cfg["threshold_override"] = float(cfg["threshold_override"])
        for key in ("min_region_pixels", "opening_radius"):
            if key in cfg:
                cfg[key] = int(cfg[key])
        if "exclude_border_regions" in cfg:
            cfg["exclude_border_regions"] = bool(cfg["exclude_border_regions"])
        return cls(**cfg)


@dataclass(frozen=True, eq=False)
class LabelMap:
    """Per-pixel segmentation result (0 = background, 1..n = nuclei)."""
    labels: np.ndarray
    channel: Channel = 0
    threshold: float = float("nan")
    params: SegmentationParams = field(default_factory=SegmentationParams)

    def __post_init__(self):
        labels = np.array(self.labels, dtype=np.int32, copy=True)
        if labels.ndim != 2:
            raise ValueError(f"LabelMap must be 2D, got shape {labels.shape}")
        labels.flags.writeable = False
        object.__setattr__(self, "labels", labels)

    @property
    def shape(self) -> tuple[int, int]:
        return self.labels.shape

    @property
    def n_regions(self) -> int:
        return int(self.labels.max()) if self.labels.size else 0

    def region_mask(self, region_id: int) -> np.ndarray:
        return self.labels == region_id


# ---------------------------
# Channel handling
# ---------------------------

def parse_channel(value) -> Channel:
    """Accept 0, "0", "luminance", "mean" or None (→ luminance)."""
    if value is None:
        return LUMINANCE
    if isinstance(value, str):
        v = value.strip().lower()
        if v in (LUMINANCE, "mean", "gray", "grey"):
            return LUMINANCE
        try:
            return int(v)
        except ValueError:
            raise ValueError(f"Invalid channel selector: {value!r}")
    return int(value)


def reduce_channel(image, channel: Channel = 0) -> np.ndarray:
    """
    Return a 2D float64 intensity map from an image.

    image : (H, W) or channel-last (H, W, C) numeric array.
    channel : channel index, or "luminance" for the mean over channels.
    """
    arr = np.asarray(image)
    if arr.size == 0 or not (np.issubdtype(arr.dtype, np.number) or arr.dtype == bool):
        raise DecodeError(f"Cannot interpret pixel data of dtype {arr.dtype} and shape {arr.shape}")

    if arr.ndim == 2:
        if channel not in (0, LUMINANCE):
            raise ValueError(f"Channel {channel} out of range for single-channel image {arr.shape}")
        return arr.astype(np.float64)

    if arr.ndim == 3:
        if channel == LUMINANCE:
            return arr.astype(np.float64).mean(axis=-1)
        C = arr.shape[-1]
        if not 0 <= int(channel) < C:
            raise ValueError(f"Channel {channel} out of range for shape {arr.shape}")
        return arr[..., int(channel)].astype(np.float64)

    raise DecodeError(f"Expected a 2D or channel-last 3D image, got shape {arr.shape}")


# ---------------------------
# Thresholding / cleanup
# ---------------------------

def auto_threshold(intensity: np.ndarray) -> float:
    """
    Global Otsu threshold; foreground is `intensity > threshold`.
    A constant image has a single population → threshold 0 (zero image = empty,
    positive image = all foreground).
    """
    lo, hi = float(intensity.min()), float(intensity.max())
    if hi <= lo:
        return 0.0
    return float(threshold_otsu(intensity))


def open_mask(mask: np.ndarray, radius: int) -> np.ndarray:
    """Binary opening with a (2r+1) x (2r+1) square footprint."""
    if radius <= 0:
        return mask
    footprint = np.ones((2 * radius + 1, 2 * radius + 1), dtype=bool)
    return ndi.binary_opening(mask, structure=footprint)


# ---------------------------
# Connected components + filters
# ---------------------------

def relabel_in_scan_order(labels: np.ndarray) -> np.ndarray:
    """Renumber labels 1..n by first occurrence in row-major order."""
    ids, first = np.unique(labels.ravel(), return_index=True)
    ordered = ids[np.argsort(first, kind="stable")]
    ordered = ordered[ordered > 0]
    lut = np.zeros(int(labels.max()) + 1 if labels.size else 1, dtype=np.int32)
    lut[ordered] = np.arange(1, len(ordered) + 1, dtype=np.int32)
    return lut[labels]


def find_regions(mask: np.ndarray) -> np.ndarray:
    """4-connected components of a boolean mask, ids in scan order."""
    labels = cc_label(np.asarray(mask, dtype=bool), connectivity=1, background=0)
    return relabel_in_scan_order(labels)


def filter_small_regions(labels: np.ndarray, min_pixels: int) -> np.ndarray:
    """Zero out regions with fewer than `min_pixels` pixels (ids are not compacted)."""
    if min_pixels <= 1 or labels.max() == 0:
        return labels
    sizes = np.bincount(labels.ravel())
    small = sizes < min_pixels
    small[0] = False
    out = labels.copy()
    out[small[labels]] = 0
    return out


def filter_border_regions(labels: np.ndarray) -> np.ndarray:
    """Zero out every region with at least one pixel on the image border."""
    border = np.concatenate([labels[0, :], labels[-1, :], labels[:, 0], labels[:, -1]])
    touching = np.unique(border)
    touching = touching[touching > 0]
    if touching.size == 0:
        return labels
    out = labels.copy()
    out[np.isin(labels, touching)] = 0
    return out


# ---------------------------
# Public entrypoint
# ---------------------------

def segment(image, channel: Channel = 0, params: Optional[SegmentationParams] = None) -> LabelMap:
    """Segment nuclei in `image` using the given channel; see module docstring."""
    params = params or SegmentationParams()
    intensity = reduce_channel(image, channel)

    if params.threshold_override is not None:
        th = float(params.threshold_override)
    else:
        th = auto_threshold(intensity)
    mask = intensity > th

    # footprint larger than the size floor: small objects are left to the size filter
    footprint_px = (2 * params.opening_radius + 1) ** 2
    if params.opening_radius > 0 and footprint_px <= params.min_region_pixels:
        mask = open_mask(mask, params.opening_radius)

    labels = find_regions(mask)
    labels = filter_small_regions(labels, params.min_region_pixels)
    if params.exclude_border_regions:
        labels = filter_border_regions(labels)
    labels = relabel_in_scan_order(labels)

    return LabelMap(labels=labels, channel=channel, threshold=th, params=params)
