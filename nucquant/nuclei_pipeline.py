"""
Single-image nuclei quantification pipeline.

What this does (high level):
- Loads a multi-channel fluorescence image (TIFF from Fiji/MetaMorph, or any
  format imageio can decode).
- Brings it to a 2D channel-last array: Z-stacks are reduced by the middle
  slice, an explicit z index, or a max-intensity projection (MIP).
- Optionally subtracts background (rolling-ball) per channel.
- Segments nuclei on the segmentation channel (DAPI by default) and measures
  area, perimeter, circularity and mean intensity per nucleus on the intensity
  channel (which may differ from the segmentation channel).
- Writes <prefix>_labels.tif, <prefix>_per_nucleus.csv and <prefix>_overlay.png.

Inputs can come from CLI flags or a YAML config.
CLI takes precedence over config; sensible defaults are provided.
"""

import argparse
import os
from pathlib import Path
from typing import List, Optional, Tuple

import yaml
import numpy as np
import imageio.v3 as iio
import tifffile
from skimage.restoration import rolling_ball

from nucquant.errors import DecodeError
from nucquant.features import FeatureRecord, extract_features, features_to_frame
from nucquant.segmentation import Channel, LabelMap, SegmentationParams, parse_channel, segment
from nucquant.post_analysis import make_overlay_png

TIFF_EXTS = {".tif", ".tiff"}


# ---------------- image IO ----------------
def read_image(path) -> np.ndarray:
    """
    Decode an image file into a numeric array.
    TIFFs go through tifffile (keeps Z/C axes and 16-bit depth); everything else
    through imageio. Anything that cannot be decoded raises DecodeError.
    """
    p = Path(path)
    if not p.is_file():
        raise FileNotFoundError(f"Image not found: {p}")
    try:
        if p.suffix.lower() in TIFF_EXTS:
            arr = tifffile.imread(str(p))
        else:
            arr = iio.imread(str(p))
    except Exception as e:
        raise DecodeError(f"Failed to decode image '{p}': {e}") from e
    arr = np.asarray(arr)
    if arr.size == 0 or not (np.issubdtype(arr.dtype, np.number) or arr.dtype == bool):
        raise DecodeError(f"Image '{p}' holds no numeric pixel data (dtype {arr.dtype}, shape {arr.shape})")
    return arr


def project_zstack(stack: np.ndarray, z_index="middle") -> np.ndarray:
    """
    Reduce a (Z, Y, X) stack to 2D.

    z_index : "middle" | int | None
        "middle" → central slice, int → that explicit Z (clamped), None → MIP.
    """
    Z = stack.shape[0]
    if z_index == "middle":
        return stack[Z // 2]
    if isinstance(z_index, int):
        # Clamp to valid range to avoid IndexError.
        return stack[max(0, min(Z - 1, z_index))]
    return stack.max(axis=0)


def to_channel_last(arr: np.ndarray, z_index="middle") -> np.ndarray:
    """
    Bring a decoded array to (Y, X) or (Y, X, C).

    Accepted layouts:
      (Y, X)                        → unchanged
      (Y, X, C) with C <= 5         → RGB(A) or channel-last, unchanged
      (C, Y, X) with C <= 5         → channels moved last
      (Z, Y, X)                     → projected with `z_index`
      (Z, C, Y, X) or (C, Z, Y, X)  → projected per channel, channels last
    """
    if arr.ndim == 2:
        return arr
    if arr.ndim == 3:
        if arr.shape[-1] <= 5 and arr.shape[0] > 5:
            return arr
        if arr.shape[0] <= 5:
            return np.moveaxis(arr, 0, -1)
        return project_zstack(arr, z_index)
    if arr.ndim == 4:
        # Axis fix: if first axis is channels (<=5), move to (Z,C,Y,X)
        if arr.shape[0] <= 5 and arr.shape[1] > 5:
            arr = np.moveaxis(arr, 0, 1)
        Z, C, Y, X = arr.shape
        chans = [project_zstack(arr[:, c], z_index) for c in range(C)]
        return np.stack(chans, axis=-1)
    raise DecodeError(f"Unsupported image shape {arr.shape}")


def stack_channel_files(paths: List[str], z_index="middle") -> np.ndarray:
    """Read one single-channel file per channel and stack them channel-last."""
    planes = []
    for p in paths:
        plane = to_channel_last(read_image(p), z_index)
        if plane.ndim == 3:
            plane = plane[..., 0]
        planes.append(plane)
    shapes = {pl.shape for pl in planes}
    if len(shapes) != 1:
        raise DecodeError(f"Channel files have different shapes: {sorted(shapes)}")
    return np.stack(planes, axis=-1)


def subtract_background(img: np.ndarray, rolling_radius: int) -> np.ndarray:
    """Rolling-ball background subtraction per channel; radius <= 0 disables it."""
    if not rolling_radius or rolling_radius <= 0:
        return img
    img = img.astype(np.float32)
    if img.ndim == 2:
        out = img - rolling_ball(img, radius=rolling_radius)
    else:
        out = np.stack([img[..., c] - rolling_ball(img[..., c], radius=rolling_radius)
                        for c in range(img.shape[-1])], axis=-1)
    out[out < 0] = 0.0
    return out


def load_image(path, z_index="middle", rolling_radius: int = 0) -> np.ndarray:
    """read_image → channel-last 2D image → optional background subtraction."""
    img = to_channel_last(read_image(path), z_index)
    return subtract_background(img, rolling_radius)


# -------- path resolution --------
def _strip_leading_slashes(p: str) -> str:
    # Avoid absolute path from accidental leading '/' or '\'
    if p.startswith("\\") or p.startswith("/"):
        return p.lstrip("\\/")
    return p


def resolve_input_path(user_path) -> Path:
    """
    Try to resolve input path robustly on Windows/Linux:
    - Accept absolute paths as-is (if they exist).
    - If the path starts with '/' or '\\', strip and treat as relative.
    - Try relative to CWD and the project root.
    """
    raw = Path(str(user_path))
    if raw.is_file():
        return raw.resolve()

    stripped = Path(_strip_leading_slashes(str(raw)))
    project_root = Path(__file__).resolve().parent.parent
    candidates = [(base / stripped).resolve() for base in (Path.cwd(), project_root)]
    for cand in candidates:
        if cand.is_file():
            return cand

    tried = "\n  - ".join(str(c) for c in dict.fromkeys([raw] + candidates))
    raise FileNotFoundError(
        f"Image not found. I tried resolving these locations:\n  - {tried}\n"
        "Tip: In configs, prefer relative paths like 'data/sample_1.tif' (without a leading slash)."
    )


# -------- core per-image analysis --------
def analyze_image(
    image: np.ndarray,
    seg_channel: Channel = 0,
    intensity_channel: Optional[Channel] = None,
    params: Optional[SegmentationParams] = None,
) -> Tuple[LabelMap, List[FeatureRecord]]:
    """Segment on `seg_channel`, measure on `intensity_channel` (None → same channel)."""
    label_map = segment(image, seg_channel, params or SegmentationParams())
    records = extract_features(label_map, image, channel=intensity_channel)
    return label_map, records


def run_single(
    input_path,
    save_prefix: str,
    *,
    seg_channel: Channel = 0,
    intensity_channel: Optional[Channel] = None,
    params: Optional[SegmentationParams] = None,
    z_index="middle",
    rolling_radius: int = 0,
    make_overlay: bool = True,
) -> dict:
    """Run the pipeline on one file and write labels/CSV/overlay next to `save_prefix`."""
    resolved = resolve_input_path(input_path)
    print("[pipeline] resolved image path:", resolved)
    image = load_image(resolved, z_index=z_index, rolling_radius=rolling_radius)
    print("[pipeline] image shape (Y, X[, C]):", image.shape)

    label_map, records = analyze_image(image, seg_channel, intensity_channel, params)
    print(f"[pipeline] threshold={label_map.threshold:.4g} nuclei={label_map.n_regions}")

    prefix = Path(save_prefix)
    prefix.parent.mkdir(parents=True, exist_ok=True)

    label_path = f"{prefix}_labels.tif"
    tifffile.imwrite(label_path, label_map.labels.astype(np.uint16))

    csv_path = f"{prefix}_per_nucleus.csv"
    features_to_frame(records, image_name=resolved.name).to_csv(csv_path, index=False)

    overlay_path = ""
    if make_overlay:
        overlay_path = f"{prefix}_overlay.png"
        make_overlay_png(image, label_map.labels, overlay_path, channel=label_map.channel,
                         title=f"{resolved.name}: {label_map.n_regions} nuclei")

    print(f"[pipeline] wrote {label_path}, {csv_path}" + (f", {overlay_path}" if overlay_path else ""))
    return {
        "image": str(resolved),
        "nuclei": label_map.n_regions,
        "threshold": label_map.threshold,
        "labels_tif": label_path,
        "per_nucleus_csv": csv_path,
        "overlay_png": overlay_path,
    }


# -------- CLI / config --------
def load_config(path: Optional[str]) -> dict:
    if not path:
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def parse_mode_to_zindex(mode_str: Optional[str]):
    """'middle' → "middle", 'mip'/'none' → None (MIP), 'z=<int>' → int."""
    if not mode_str or str(mode_str).lower() == "middle":
        return "middle"
    m = str(mode_str).lower()
    if m in ("mip", "none"):
        return None
    if m.startswith("z="):
        try:
            return int(m.split("=", 1)[1])
        except ValueError:
            raise ValueError(f"Invalid z mode {mode_str!r}; expected 'z=<int>'")
    raise ValueError(f"Unknown mode {mode_str!r}; use 'middle', 'mip' or 'z=<int>'")


def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Segment and measure nuclei in one image.")
    ap.add_argument("--config", type=str, required=False, help="YAML config file")
    ap.add_argument("--input_path", type=str, required=False, help="Image path (overrides config)")
    ap.add_argument("--save_prefix", type=str, required=False, help="Prefix for saved outputs")
    ap.add_argument("--mode", type=str, default=None,
                    help="z selection: 'middle' (default), 'mip'/'none' for MIP, or 'z=<int>'")
    ap.add_argument("--seg_channel", type=str, default=None,
                    help="Channel index used for segmentation, or 'luminance' (default 0)")
    ap.add_argument("--intensity_channel", type=str, default=None,
                    help="Channel index measured for mean intensity (default: segmentation channel)")
    ap.add_argument("--min_region_pixels", type=int, default=None, help="Minimum nucleus size in pixels")
    ap.add_argument("--threshold", type=float, default=None, help="Explicit intensity threshold (default Otsu)")
    ap.add_argument("--keep_border", action="store_true", help="Keep nuclei touching the image border")
    ap.add_argument("--rolling_radius", type=int, default=None, help="Rolling-ball radius (0 = off)")
    ap.add_argument("--no-overlay", dest="no_overlay", action="store_true", help="Skip the overlay PNG")
    return ap.parse_args(argv)


def segmentation_params_from(cfg: dict, args=None) -> SegmentationParams:
    """`segmentation:` block of the config, with CLI overrides applied on top."""
    seg_cfg = dict(cfg.get("segmentation", {}) or {})
    if args is not None:
        if args.min_region_pixels is not None:
            seg_cfg["min_region_pixels"] = args.min_region_pixels
        if args.threshold is not None:
            seg_cfg["threshold_override"] = args.threshold
        if args.keep_border:
            seg_cfg["exclude_border_regions"] = False
    return SegmentationParams.from_config(seg_cfg)


def main(argv=None):
    args = parse_args(argv)
    cfg = load_config(args.config)

    # Gather parameters with precedence: CLI > config > defaults
    input_path = args.input_path or cfg.get("input_path")
    save_prefix = args.save_prefix or cfg.get("save_prefix", "outputs/sample")
    mode = args.mode or cfg.get("mode", "middle")
    seg_channel = parse_channel(args.seg_channel if args.seg_channel is not None
                                else cfg.get("segmentation_channel", 0))
    ic = args.intensity_channel if args.intensity_channel is not None else cfg.get("intensity_channel")
    intensity_channel = parse_channel(ic) if ic is not None else None
    rolling_radius = args.rolling_radius if args.rolling_radius is not None else cfg.get("rolling_radius", 0)

    if not input_path:
        raise SystemExit("Please provide --input_path or set 'input_path' in the config YAML.")

    params = segmentation_params_from(cfg, args)
    z_index = parse_mode_to_zindex(mode)

    print("[pipeline] config:", args.config or "(none)")
    print("[pipeline] input_path:", input_path)
    print("[pipeline] save_prefix:", save_prefix)
    print("[pipeline] mode:", "mip" if z_index is None else z_index)
    print("[pipeline] segmentation:", params)

    summary = run_single(
        input_path,
        save_prefix,
        seg_channel=seg_channel,
        intensity_channel=intensity_channel,
        params=params,
        z_index=z_index,
        rolling_radius=int(rolling_radius or 0),
        make_overlay=not (args.no_overlay or cfg.get("make_overlay") is False),
    )
    print("Outputs saved with prefix:", os.path.abspath(save_prefix))
    return summary


if __name__ == "__main__":
    main()
