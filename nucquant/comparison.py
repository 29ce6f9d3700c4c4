"""
Statistical comparison of per-nucleus features across datasets.

- Welch's t-test (unequal variances) for exactly two datasets.
- One-way ANOVA for two or more datasets, followed by pairwise Welch post-hoc
  tests for every pair i < j.
- Multiple-comparison correction (Bonferroni, Benjamini-Hochberg, None) over
  all p-values produced by one `compare` call.

p-values come from the Student t and F survival functions (scipy.stats).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from itertools import combinations
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from nucquant.errors import InsufficientDataError
from nucquant.features import FeatureRecord, features_to_frame


class _ParsableEnum(Enum):
    @classmethod
    def parse(cls, value):
        """Accept an enum member, its display value or its name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        key = str(value).strip().lower()
        for member in cls:
            if key in (member.value.lower(), member.name.lower()):
                return member
        choices = ", ".join(m.value for m in cls)
        raise ValueError(f"Unknown {cls.__name__} {value!r}; expected one of: {choices}")


class TestKind(_ParsableEnum):
    __test__ = False  # not a pytest class

    T_TEST = "t-test"
    ANOVA = "ANOVA"


class CorrectionKind(_ParsableEnum):
    BONFERRONI = "Bonferroni"
    BENJAMINI_HOCHBERG = "Benjamini-Hochberg"
    NONE = "None"


class FeatureKey(_ParsableEnum):
    AREA = "area"
    PERIMETER = "perimeter"
    CIRCULARITY = "circularity"
    MEAN_INTENSITY = "mean_intensity"


# ---------------------------
# Data containers
# ---------------------------

@dataclass
class ImageFeatures:
    image_name: str
    records: Tuple[FeatureRecord, ...]


@dataclass
class Dataset:
    """A named experimental condition: one feature-record list per source image."""
    name: str
    images: List[ImageFeatures] = field(default_factory=list)

    def add_image(self, records: Sequence[FeatureRecord], image_name: Optional[str] = None) -> None:
        if image_name is None:
            image_name = f"image_{len(self.images) + 1}"
        self.images.append(ImageFeatures(image_name, tuple(records)))

    @property
    def n_images(self) -> int:
        return len(self.images)

    @property
    def n_nuclei(self) -> int:
        return sum(len(im.records) for im in self.images)

    def values(self, metric) -> np.ndarray:
        """Pooled metric values over all images, in image then region order."""
        attr = FeatureKey.parse(metric).value
        return np.array([getattr(r, attr) for im in self.images for r in im.records], dtype=np.float64)

    def to_frame(self) -> pd.DataFrame:
        frames = [features_to_frame(list(im.records), dataset_name=self.name, image_name=im.image_name)
                  for im in self.images]
        if not frames:
            return features_to_frame([], dataset_name=self.name, image_name="")
        return pd.concat(frames, ignore_index=True)


@dataclass(frozen=True)
class ComparisonResult:
    comparison: str
    p_value: float
    corrected_p_value: float
    statistic: float = float("nan")
    test: str = ""


# ---------------------------
# Tests
# ---------------------------

def welch_t_test(a: np.ndarray, b: np.ndarray) -> Tuple[float, float, float]:
    """
    Welch's unequal-variance t-test. Returns (t, df, two-sided p).
    Zero variance in both groups: p = 1 when the means agree, else p = 0.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    n1, n2 = a.size, b.size
    m1, m2 = a.mean(), b.mean()
    v1, v2 = a.var(ddof=1), b.var(ddof=1)
    se1, se2 = v1 / n1, v2 / n2
    se = np.sqrt(se1 + se2)

    if se == 0:
        if m1 == m2:
            return 0.0, float(n1 + n2 - 2), 1.0
        return float(np.copysign(np.inf, m1 - m2)), float(n1 + n2 - 2), 0.0

    t = (m1 - m2) / se
    # Welch–Satterthwaite
    df = (se1 + se2) ** 2 / (se1 ** 2 / (n1 - 1) + se2 ** 2 / (n2 - 1))
    p = 2.0 * stats.t.sf(abs(t), df)
    return float(t), float(df), float(min(1.0, max(0.0, p)))


def one_way_anova(groups: Sequence[np.ndarray]) -> Tuple[float, int, int, float]:
    """
    One-way ANOVA. Returns (F, df_between, df_within, p).
    Zero within-group variance: p = 1 when all means agree, else p = 0.
    """
    groups = [np.asarray(g, dtype=np.float64) for g in groups]
    k = len(groups)
    n_total = sum(g.size for g in groups)
    grand = np.concatenate(groups).mean()

    ss_between = sum(g.size * (g.mean() - grand) ** 2 for g in groups)
    ss_within = sum(((g - g.mean()) ** 2).sum() for g in groups)
    df_b, df_w = k - 1, n_total - k

    if ss_within == 0:
        if ss_between == 0:
            return 0.0, df_b, df_w, 1.0
        return float("inf"), df_b, df_w, 0.0

    F = (ss_between / df_b) / (ss_within / df_w)
    p = stats.f.sf(F, df_b, df_w)
    return float(F), df_b, df_w, float(min(1.0, max(0.0, p)))


# ---------------------------
# Multiple-comparison correction
# ---------------------------

def correct_p_values(raw: Sequence[float], method) -> np.ndarray:
    """Correct a family of p-values; output is in the input order."""
    method = CorrectionKind.parse(method)
    p = np.asarray(raw, dtype=np.float64)
    n = p.size
    if n == 0 or method is CorrectionKind.NONE:
        return p.copy()

    if method is CorrectionKind.BONFERRONI:
        return np.minimum(1.0, p * n)

    # Benjamini-Hochberg step-up
    order = np.argsort(p, kind="stable")
    ranks = np.arange(1, n + 1, dtype=np.float64)
    candidates = p[order] * n / ranks
    # enforce monotonicity from the largest p-value down
    adjusted = np.minimum.accumulate(candidates[::-1])[::-1]
    adjusted = np.minimum(1.0, adjusted)
    out = np.empty(n, dtype=np.float64)
    out[order] = adjusted
    return out


# ---------------------------
# Comparator
# ---------------------------

def _metric_samples(datasets: Sequence[Dataset], metric: FeatureKey) -> List[np.ndarray]:
    samples = []
    for ds in datasets:
        vals = ds.values(metric)
        vals = vals[np.isfinite(vals)]
        if vals.size < 2:
            raise InsufficientDataError(
                f"Dataset {ds.name!r} has {vals.size} usable '{metric.value}' value(s); at least 2 are required",
                dataset=ds.name,
            )
        samples.append(vals)
    return samples


def compare(
    datasets: Sequence[Dataset],
    test="t-test",
    correction="Bonferroni",
    metric="area",
) -> List[ComparisonResult]:
    """
    Compare `metric` across datasets.

    t-test : exactly two datasets → one result.
    ANOVA  : omnibus result first, then one Welch post-hoc result per pair (i < j).
    Correction is applied across every p-value produced here.
    """
    test = TestKind.parse(test)
    correction = CorrectionKind.parse(correction)
    metric = FeatureKey.parse(metric)

    if len(datasets) < 2:
        raise InsufficientDataError(f"Need at least 2 datasets to compare, got {len(datasets)}")
    if test is TestKind.T_TEST and len(datasets) != 2:
        raise ValueError(f"t-test compares exactly 2 datasets, got {len(datasets)}; use ANOVA instead")

    samples = _metric_samples(datasets, metric)
    names = [ds.name for ds in datasets]

    labels: List[str] = []
    raw: List[float] = []
    statistics: List[float] = []
    kinds: List[str] = []

    if test is TestKind.ANOVA:
        F, _, _, p = one_way_anova(samples)
        labels.append(f"ANOVA ({', '.join(names)})")
        raw.append(p); statistics.append(F); kinds.append("ANOVA")

    for i, j in combinations(range(len(datasets)), 2):
        t, _, p = welch_t_test(samples[i], samples[j])
        labels.append(f"{names[i]} vs {names[j]}")
        raw.append(p); statistics.append(t); kinds.append("Welch t-test")

    corrected = correct_p_values(raw, correction)
    return [
        ComparisonResult(comparison=lab, p_value=float(p), corrected_p_value=float(c),
                         statistic=float(s), test=kind)
        for lab, p, c, s, kind in zip(labels, raw, corrected, statistics, kinds)
    ]


def summarize(datasets: Sequence[Dataset], metric="area") -> pd.DataFrame:
    """n / mean / std / median of one metric per dataset."""
    metric = FeatureKey.parse(metric)
    rows: List[Dict] = []
    for ds in datasets:
        v = ds.values(metric)
        v = v[np.isfinite(v)]
        rows.append({
            "dataset_name": ds.name,
            "images": ds.n_images,
            "n": int(v.size),
            f"{metric.value}_mean": float(v.mean()) if v.size else float("nan"),
            f"{metric.value}_std": float(v.std(ddof=1)) if v.size > 1 else float("nan"),
            f"{metric.value}_median": float(np.median(v)) if v.size else float("nan"),
        })
    return pd.DataFrame(rows)
