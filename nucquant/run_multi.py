# nucquant/run_multi.py
"""
Batch runner: segment + measure every image of every dataset, then compare
datasets statistically.

Datasets (experimental conditions) come from, in order:
  1) the `datasets:` block of the YAML config  {name: [file | dir | glob, ...]}
  2) --dataset NAME=PATTERN flags (repeatable)
  3) --nd_dir DIR: every MetaMorph .nd file in DIR becomes a dataset, one
     multi-channel image per stage position.

Per image we write labels/CSV/overlay under <outputs_dir>/<dataset>/; across
datasets we write ALL_per_nucleus.csv, ALL_summary.csv, comparisons.csv, a bar
plot and report.html. Images that fail to load are reported and left out.
"""

import argparse
import base64
import glob
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import pandas as pd
import tifffile

from nucquant.comparison import (
    ComparisonResult, CorrectionKind, Dataset, FeatureKey, TestKind, compare,
)
from nucquant.errors import NucQuantError
from nucquant.features import features_to_frame
from nucquant.nd_files import scan_folder_for_nd
from nucquant.nuclei_pipeline import (
    analyze_image, load_config, load_image, parse_mode_to_zindex,
    segmentation_params_from, stack_channel_files, subtract_background,
)
from nucquant.post_analysis import (
    comparisons_to_frame, make_overlay_png, save_metric_bar,
    write_comparisons_csv, write_features_csv, write_summary_csv,
)
from nucquant.segmentation import LUMINANCE, parse_channel

IMAGE_EXTS = {".tif", ".tiff", ".png", ".jpg", ".jpeg"}


@dataclass
class ImageJob:
    dataset: str
    name: str
    source: Union[Path, List[Path]]     # one file, or one file per channel (.nd stages)
    channel_names: List[str] = field(default_factory=list)


def is_image(p: Path) -> bool:
    return p.suffix.lower() in IMAGE_EXTS and p.is_file()


def expand_inputs(patterns: Sequence[str]) -> List[Path]:
    """Files, directories (recursive) and globs → sorted unique image paths."""
    files = []
    for s in patterns or []:
        p = Path(s)
        if p.is_dir():
            files += [q for q in p.rglob("*") if is_image(q)]
        elif p.is_file() and is_image(p):
            files.append(p)
        else:
            files += [Path(x) for x in glob.glob(s, recursive=True) if is_image(Path(x))]
    # de-dup & sort
    uniq = sorted({str(p.resolve()) for p in files})
    return [Path(u) for u in uniq]


def parse_dataset_flags(flags: Sequence[str]) -> Dict[str, List[str]]:
    """['Control=data/ctrl/*.tif', 'Control=more/*.tif', 'KO=data/ko'] → {name: [patterns]}"""
    out: Dict[str, List[str]] = {}
    for f in flags or []:
        name, sep, pattern = f.partition("=")
        if not sep or not name.strip() or not pattern.strip():
            raise ValueError(f"--dataset expects NAME=PATTERN, got {f!r}")
        out.setdefault(name.strip(), []).append(pattern.strip())
    return out


def collect_jobs(dataset_patterns: Dict[str, List[str]], nd_dir: Optional[str] = None) -> List[ImageJob]:
    jobs: List[ImageJob] = []
    for name, patterns in dataset_patterns.items():
        if isinstance(patterns, str):
            patterns = [patterns]
        files = expand_inputs(patterns)
        if not files:
            print(f"[batch] dataset '{name}': no images matched {patterns}")
        jobs += [ImageJob(dataset=str(name), name=f.name, source=f) for f in files]

    if nd_dir:
        for scan in scan_folder_for_nd(nd_dir):
            for missing in scan.missing:
                print(f"[batch] {scan.nd_path.name}: image not found: {missing}")
            for stage_name, paths in scan.stacks.items():
                jobs.append(ImageJob(dataset=scan.dataset_name, name=stage_name,
                                     source=paths, channel_names=list(scan.nd.channels)))
    return jobs


def resolve_channel(value, channel_names: Sequence[str]):
    """Channel selector → index/"luminance"; names such as 'DAPI' are looked up in `channel_names`."""
    if value is None:
        return None
    try:
        return parse_channel(value)
    except ValueError:
        lowered = [c.lower() for c in channel_names]
        if str(value).lower() in lowered:
            return lowered.index(str(value).lower())
        raise ValueError(f"Unknown channel {value!r}; available: {list(channel_names) or 'indices only'}")


def _safe_stem(name: str) -> str:
    return "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in Path(name).stem) or "image"


# ----------------- per-image worker (for parallel) -----------------

def process_one_image(job: ImageJob, out_dir: Path, settings: dict) -> dict:
    """Segment + measure one image. Returns a status dict carrying the feature records."""
    status = {"dataset": job.dataset, "image": job.name, "ok": True, "error": "",
              "records": [], "nuclei": 0}
    try:
        if isinstance(job.source, list):
            image = stack_channel_files([str(p) for p in job.source], settings["z_index"])
            image = subtract_background(image, settings["rolling_radius"])
        else:
            image = load_image(job.source, settings["z_index"], settings["rolling_radius"])

        seg_ch = resolve_channel(settings["seg_channel"], job.channel_names)
        int_ch = resolve_channel(settings["intensity_channel"], job.channel_names)
        label_map, records = analyze_image(image, seg_ch, int_ch, settings["params"])
    except (NucQuantError, OSError, ValueError) as e:
        status["ok"] = False
        status["error"] = f"{type(e).__name__}: {e}"
        return status

    prefix = out_dir / _safe_stem(job.dataset) / _safe_stem(job.name)
    prefix.parent.mkdir(parents=True, exist_ok=True)
    tifffile.imwrite(f"{prefix}_labels.tif", label_map.labels.astype(np.uint16))
    features_to_frame(records, dataset_name=job.dataset, image_name=job.name).to_csv(
        f"{prefix}_per_nucleus.csv", index=False)
    if settings["make_overlay"]:
        make_overlay_png(image, label_map.labels, f"{prefix}_overlay.png", channel=seg_ch,
                         title=f"{job.dataset} / {job.name}: {label_map.n_regions} nuclei")

    status["records"] = records
    status["nuclei"] = label_map.n_regions
    return status


def build_datasets(jobs: Sequence[ImageJob], statuses: Sequence[dict]) -> List[Dataset]:
    """Group successful results into Datasets, keeping job (enumeration) order."""
    datasets: Dict[str, Dataset] = {}
    for job, st in zip(jobs, statuses):
        ds = datasets.setdefault(job.dataset, Dataset(job.dataset))
        if st["ok"]:
            ds.add_image(st["records"], image_name=job.name)
    return list(datasets.values())


def run_jobs(jobs: Sequence[ImageJob], out_dir: Path, settings: dict, n_jobs: int = 1) -> List[dict]:
    """Run every job; statuses are returned in job order whatever the completion order."""
    statuses: List[Optional[dict]] = [None] * len(jobs)

    def _report(s):
        print(("OK  " if s["ok"] else "FAIL") + f" :: {s['dataset']} / {s['image']} :: "
              + (f"{s['nuclei']} nuclei" if s["ok"] else s["error"]))

    if n_jobs and n_jobs > 1:
        with ProcessPoolExecutor(max_workers=n_jobs) as ex:
            futs = {ex.submit(process_one_image, j, out_dir, settings): i for i, j in enumerate(jobs)}
            for fut in as_completed(futs):
                statuses[futs[fut]] = fut.result()
                _report(statuses[futs[fut]])
    else:
        for i, j in enumerate(jobs):
            statuses[i] = process_one_image(j, out_dir, settings)
            _report(statuses[i])
    return statuses


# ----------------- HTML report -----------------

def img_to_data_uri(path: Path) -> str:
    with open(path, "rb") as f:
        b = f.read()
    b64 = base64.b64encode(b).decode("ascii")
    mime = "image/png" if path.suffix.lower() == ".png" else "image/jpeg"
    return f"data:{mime};base64,{b64}"


def write_html_report(out_dir: Path, csv_paths: List[Path], comparisons: Optional[pd.DataFrame],
                      plot_paths: List[Path], failures: List[dict]) -> Path:
    html = []
    html.append("<html><head><meta charset='utf-8'><title>Nuclei Quantification Report</title>")
    html.append("""
    <style>
      body{font-family: Arial, sans-serif; margin: 24px; }
      h1,h2{margin: 0 0 12px 0;}
      .grid{display:grid; grid-template-columns: repeat(auto-fit,minmax(320px,1fr)); gap:12px;}
      .card{border:1px solid #ddd; border-radius:8px; padding:12px; margin-bottom:12px;}
      table{border-collapse: collapse; width:100%;}
      th,td{border:1px solid #ddd; padding:6px; font-size: 13px;}
      th{background:#f6f6f6;}
    </style>
    """)
    html.append("</head><body>")
    html.append("<h1>Nuclei Quantification – Batch Report</h1>")

    html.append("<div class='card'><h2>Downloads</h2><ul>")
    for p in csv_paths:
        if p.exists():
            html.append(f"<li><a href='{p.name}' download>{p.name}</a></li>")
    html.append("</ul></div>")

    if comparisons is not None and len(comparisons):
        html.append("<div class='card'><h2>Comparisons</h2>")
        html.append(comparisons.to_html(index=False, float_format=lambda v: f"{v:.4g}"))
        html.append("</div>")

    if failures:
        html.append("<div class='card'><h2>Skipped images</h2><ul>")
        for s in failures:
            html.append(f"<li>{s['dataset']} / {s['image']}: {s['error']}</li>")
        html.append("</ul></div>")

    if plot_paths:
        html.append("<h2>Plots</h2><div class='grid'>")
        for p in plot_paths:
            if p.exists():
                uri = img_to_data_uri(p)
                html.append(f"<div class='card'><h3>{p.name}</h3><img src='{uri}' style='width:100%'></div>")
        html.append("</div>")

    html.append("<p style='margin-top:24px;color:#777'>Generated by nucquant.run_multi</p>")
    html.append("</body></html>")

    out_html = out_dir / "report.html"
    with open(out_html, "w", encoding="utf-8") as f:
        f.write("\n".join(html))
    print(f"[report] wrote {out_html}")
    return out_html


# ----------------- main -----------------

def parse_args(argv=None):
    ap = argparse.ArgumentParser(description="Batch nuclei quantification + dataset comparison.")
    ap.add_argument("--config", type=str, help="YAML config (datasets, segmentation, analysis blocks)")
    ap.add_argument("--dataset", action="append", default=[], metavar="NAME=PATTERN",
                    help="Add files/dirs/globs to a named dataset (repeatable)")
    ap.add_argument("--nd_dir", type=str, default=None, help="Folder with MetaMorph .nd files + TIFFs")
    ap.add_argument("--outputs_dir", type=str, default=None, help="Base outputs directory")
    ap.add_argument("--mode", type=str, default=None, help="z selection: 'middle' (default), 'mip'/'none', or 'z=<int>'")
    ap.add_argument("--seg_channel", type=str, default=None, help="Segmentation channel (index, name or 'luminance')")
    ap.add_argument("--intensity_channel", type=str, default=None, help="Intensity channel (index, name or 'luminance')")
    ap.add_argument("--min_region_pixels", type=int, default=None, help="Minimum nucleus size in pixels")
    ap.add_argument("--threshold", type=float, default=None, help="Explicit intensity threshold (default Otsu)")
    ap.add_argument("--keep_border", action="store_true", help="Keep nuclei touching the image border")
    ap.add_argument("--rolling_radius", type=int, default=None, help="Rolling-ball radius (0 = off)")
    ap.add_argument("--test", type=str, default=None, choices=[t.value for t in TestKind])
    ap.add_argument("--correction", type=str, default=None, choices=[c.value for c in CorrectionKind])
    ap.add_argument("--metric", type=str, default=None, choices=[k.value for k in FeatureKey])
    ap.add_argument("--alpha", type=float, default=None, help="Significance level for the report (default 0.05)")
    ap.add_argument("--jobs", type=int, default=1, help="Parallel workers (>=1).")
    ap.add_argument("--no-overlay", dest="no_overlay", action="store_true", help="Skip per-image overlays")
    return ap.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    cfg = load_config(args.config)
    analysis_cfg = cfg.get("analysis", {}) or {}

    out_dir = Path(args.outputs_dir or cfg.get("outputs_dir", "outputs"))
    out_dir.mkdir(parents=True, exist_ok=True)

    # Pull defaults from config if not set on CLI
    mode = args.mode or cfg.get("mode", "middle")
    seg_channel = args.seg_channel if args.seg_channel is not None else cfg.get("segmentation_channel", 0)
    intensity_channel = (args.intensity_channel if args.intensity_channel is not None
                         else cfg.get("intensity_channel"))
    rolling_radius = args.rolling_radius if args.rolling_radius is not None else cfg.get("rolling_radius", 0)
    test = TestKind.parse(args.test or analysis_cfg.get("test", "t-test"))
    correction = CorrectionKind.parse(args.correction or analysis_cfg.get("correction", "Bonferroni"))
    metric = FeatureKey.parse(args.metric or analysis_cfg.get("metric", "area"))
    alpha = args.alpha if args.alpha is not None else float(analysis_cfg.get("alpha", 0.05))

    settings = {
        "z_index": parse_mode_to_zindex(mode),
        "rolling_radius": int(rolling_radius or 0),
        "seg_channel": seg_channel if seg_channel is not None else LUMINANCE,
        "intensity_channel": intensity_channel,
        "params": segmentation_params_from(cfg, args),
        "make_overlay": not (args.no_overlay or cfg.get("make_overlay") is False),
    }

    patterns: Dict[str, List[str]] = {}
    for name, pats in (cfg.get("datasets", {}) or {}).items():
        patterns.setdefault(str(name), []).extend([pats] if isinstance(pats, str) else list(pats))
    for name, pats in parse_dataset_flags(args.dataset).items():
        patterns.setdefault(name, []).extend(pats)

    jobs = collect_jobs(patterns, nd_dir=args.nd_dir or cfg.get("nd_dir"))
    if not jobs:
        raise SystemExit("No input images found. Use --dataset NAME=PATTERN, --nd_dir or a 'datasets:' config block.")

    print(f"[batch] {len(jobs)} image(s) in {len({j.dataset for j in jobs})} dataset(s). jobs={args.jobs}")
    print("[batch] segmentation:", settings["params"])

    statuses = run_jobs(jobs, out_dir, settings, n_jobs=args.jobs)
    failures = [s for s in statuses if not s["ok"]]
    datasets = build_datasets(jobs, statuses)

    features_csv = Path(write_features_csv(datasets, str(out_dir / "ALL_per_nucleus.csv")))
    summary_csv = Path(write_summary_csv(datasets, str(out_dir / "ALL_summary.csv")))

    print(f"[analysis] {test.value} on '{metric.value}' with {correction.value} correction")
    try:
        results: List[ComparisonResult] = compare(datasets, test, correction, metric)
    except ValueError as e:
        # InsufficientDataError, or a t-test asked for with != 2 datasets
        raise SystemExit(f"[analysis] cannot compare datasets: {e}")
    comparisons_csv = Path(write_comparisons_csv(results, str(out_dir / "comparisons.csv"), alpha=alpha))
    for r in results:
        print(f"[analysis] {r.comparison}: p={r.p_value:.4g} p_adj={r.corrected_p_value:.4g}")

    plot = Path(save_metric_bar(datasets, metric, str(out_dir / f"plot_{metric.value}_per_dataset.png"),
                                results=results))

    write_html_report(out_dir,
                      csv_paths=[features_csv, summary_csv, comparisons_csv],
                      comparisons=comparisons_to_frame(results, alpha=alpha),
                      plot_paths=[plot],
                      failures=failures)

    if failures:
        print(f"[batch] {len(failures)} image(s) skipped; see report.html")
    print("\n[batch] done.")
    return results


if __name__ == "__main__":
    main()
