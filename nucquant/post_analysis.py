# nucquant/post_analysis.py
import os
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
from skimage.segmentation import find_boundaries

from nucquant.comparison import ComparisonResult, Dataset, FeatureKey, summarize
from nucquant.features import FEATURE_COLUMNS
from nucquant.segmentation import Channel, reduce_channel

RAW_COLUMNS = ["dataset_name", "image_name", *FEATURE_COLUMNS]
COMPARISON_COLUMNS = ["comparison", "p_value", "corrected_p_value", "statistic", "test", "significant"]

# ---------------------------
# CSV emitters
# ---------------------------

def datasets_to_frame(datasets: Sequence[Dataset]) -> pd.DataFrame:
    """Long per-nucleus table over all datasets (one row per nucleus)."""
    frames = [ds.to_frame() for ds in datasets]
    if not frames:
        return pd.DataFrame(columns=RAW_COLUMNS)
    return pd.concat(frames, ignore_index=True)[RAW_COLUMNS]


def comparisons_to_frame(results: Sequence[ComparisonResult], alpha: float = 0.05) -> pd.DataFrame:
    rows = [{
        "comparison": r.comparison,
        "p_value": r.p_value,
        "corrected_p_value": r.corrected_p_value,
        "statistic": r.statistic,
        "test": r.test,
        "significant": bool(r.corrected_p_value < alpha),
    } for r in results]
    return pd.DataFrame(rows, columns=COMPARISON_COLUMNS)


def _ensure_parent(path: str) -> None:
    parent = os.path.dirname(str(path))
    if parent:
        os.makedirs(parent, exist_ok=True)


def write_features_csv(datasets: Sequence[Dataset], path: str) -> str:
    """dataset_name,image_name,nucleus_id,area,perimeter,circularity,mean_intensity"""
    _ensure_parent(path)
    datasets_to_frame(datasets).to_csv(path, index=False)
    print(f"[analysis] wrote {path}")
    return str(path)


def write_comparisons_csv(results: Sequence[ComparisonResult], path: str, alpha: float = 0.05) -> str:
    _ensure_parent(path)
    comparisons_to_frame(results, alpha=alpha).to_csv(path, index=False)
    print(f"[analysis] wrote {path}")
    return str(path)


def write_summary_csv(datasets: Sequence[Dataset], path: str) -> str:
    """Per-dataset n/mean/std/median for every feature, one row per dataset."""
    summary = None
    for key in FeatureKey:
        part = summarize(datasets, key)
        summary = part if summary is None else summary.merge(
            part.drop(columns=["images", "n"]), on="dataset_name")
    _ensure_parent(path)
    summary.to_csv(path, index=False)
    print(f"[analysis] wrote {path}")
    return str(path)

# ---------------------------
# Overlay rendering
# ---------------------------

def make_overlay_png(
    image: np.ndarray,
    labels: np.ndarray,
    out_path: str,
    channel: Channel = 0,
    title: Optional[str] = None,
) -> None:
    """
    Build an RGB overlay:
      - background: selected channel, grayscale
      - nuclei: dimmed interior
      - nucleus outlines: yellow
    """
    gray = reduce_channel(image, channel)
    # Normalize robustly to [0,1]
    gmin = float(gray.min())
    grng = float(np.ptp(gray)) + 1e-8
    gray01 = (gray - gmin) / grng

    rgb = np.stack([gray01, gray01, gray01], axis=-1).astype(np.float32)
    inside = labels > 0
    rgb[inside] = rgb[inside] * 0.6
    rgb[find_boundaries(labels, mode="inner")] = [1.0, 1.0, 0.0]

    _ensure_parent(out_path)
    plt.figure(figsize=(7, 7))
    plt.imshow(rgb)
    plt.axis("off")
    if title:
        plt.title(title)
    plt.tight_layout()
    plt.savefig(out_path, dpi=200)
    plt.close()

# ---------------------------
# Plotting helpers
# ---------------------------

def save_metric_bar(datasets: Sequence[Dataset], metric, out_png: str,
                    results: Optional[List[ComparisonResult]] = None) -> str:
    """
    Mean ± SD of one metric per dataset. When comparison results are given,
    their corrected p-values are listed under the plot.
    """
    key = FeatureKey.parse(metric)
    s = summarize(datasets, key)
    means = s[f"{key.value}_mean"].values
    sds = np.nan_to_num(s[f"{key.value}_std"].values)

    plt.figure(figsize=(max(5, 1.5 * len(s)), 5))
    plt.bar(s["dataset_name"].astype(str), means, yerr=sds, capsize=4)
    plt.xticks(rotation=45, ha="right")
    plt.ylabel(f"Mean {key.value}")
    plt.title(f"{key.value} per dataset (mean ± SD)")
    if results:
        text = "\n".join(f"{r.comparison}: p_adj={r.corrected_p_value:.3g}" for r in results)
        plt.figtext(0.01, 0.01, text, fontsize=8, va="bottom")
        plt.subplots_adjust(bottom=min(0.6, 0.25 + 0.03 * len(results)))
    else:
        plt.tight_layout()
    _ensure_parent(out_png)
    plt.savefig(out_png, dpi=160)
    plt.close()
    return str(out_png)
