"""
MetaMorph .nd metadata files.

An .nd file is a list of `"Key", value` lines describing a multi-dimensional
acquisition; the image data lives in one TIFF per (wavelength, stage, time):

    "NDInfoFile", Version 1.0
    "LiveMode", FALSE
    "DoStage", TRUE
    "NStagePositions", 2
    "Stage1", "Position1"
    "Stage2", "Position2"
    "DoWave", TRUE
    "NWavelengths", 2
    "WaveName1", "DAPI"
    "WaveName2", "FITC"
    "EndFile"

MetaMorph names the files <base>_w<i><WaveName>_s<j>[_t<k>].TIF; the wave name
is dropped when "WaveInFileName" is FALSE, _s when DoStage is FALSE and _t when
DoTimelapse is FALSE. Some exports instead list the files explicitly, one
"Stage N" block per position with "channel_name_X" / "do_channel_X" pairs; those
names are used as written.

This module only resolves which file holds which channel at which stage; the
pixels are read by nuclei_pipeline.read_image.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple

TIFF_EXTS = {".tif", ".tiff"}
_STAGE_HEADER = re.compile(r"^stage\s*(\d+)$", re.IGNORECASE)
_CHANNEL_KEY = re.compile(r"^(channel_name|do_channel)_(\d+)$", re.IGNORECASE)


@dataclass
class ChannelImage:
    channel: str
    filename: str
    timepoint: Optional[int] = None


@dataclass
class StagePosition:
    position: int
    name: str
    images: List[ChannelImage] = field(default_factory=list)


@dataclass
class NDFile:
    version: str
    live_mode: bool
    channels: List[str]
    stage_positions: List[StagePosition]
    raw: Dict[str, object] = field(default_factory=dict)


@dataclass
class NDFolderScan:
    nd_path: Path
    dataset_name: str
    nd: NDFile
    # stage name -> channel-ordered TIFF paths (only stages with every channel present)
    stacks: Dict[str, List[Path]]
    missing: List[str]


def _parse_value(text: str):
    v = text.strip()
    if len(v) >= 2 and v[0] == '"' and v[-1] == '"':
        return v[1:-1]
    if v.upper() == "TRUE":
        return True
    if v.upper() == "FALSE":
        return False
    try:
        return int(v)
    except ValueError:
        return v


def parse_nd_entries(text: str) -> Dict[str, object]:
    """Read `"Key", value` lines up to "EndFile" into an ordered dict."""
    entries: Dict[str, object] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        key, sep, value = line.partition(",")
        key = key.strip().strip('"')
        if key == "EndFile":
            break
        entries[key] = _parse_value(value) if sep else ""
    return entries


def _stage_blocks(text: str) -> List[Tuple[int, str, Dict[int, Dict[str, str]]]]:
    """
    Explicit per-stage channel listings, as written by acquisition exports:

        "STAGES"
        "Stage 1"
        "channel_name_1", "DAPI"
        "do_channel_1", "img_s1_dapi.tif"

    Returns [(position, stage name, {index: {"channel_name": .., "do_channel": ..}})];
    empty when the file lists no do_channel entries.
    """
    blocks = []
    current = None
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        key, _, value = line.partition(",")
        key = key.strip().strip('"')
        if key == "EndFile":
            break
        header = _STAGE_HEADER.match(key)
        if header and not value.strip():
            current = (int(header.group(1)), key, {})
            blocks.append(current)
            continue
        m = _CHANNEL_KEY.match(key)
        if m:
            if current is None:
                current = (1, "Stage 1", {})
                blocks.append(current)
            current[2].setdefault(int(m.group(2)), {})[m.group(1).lower()] = str(_parse_value(value))
    return [b for b in blocks if any("do_channel" in v for v in b[2].values())]


def _listed_stages(blocks) -> Tuple[List[str], List[StagePosition]]:
    channels: List[str] = []
    for _, _, entries in blocks:
        for idx in sorted(entries):
            name = entries[idx].get("channel_name", f"channel_{idx}")
            if name not in channels:
                channels.append(name)

    stages = []
    for position, name, entries in blocks:
        images = [ChannelImage(channel=entries[i].get("channel_name", f"channel_{i}"),
                               filename=entries[i]["do_channel"])
                  for i in sorted(entries) if "do_channel" in entries[i]]
        # same channel order at every stage, so stacked images line up
        images.sort(key=lambda im: channels.index(im.channel))
        stages.append(StagePosition(position=position, name=name, images=images))
    return channels, stages


def _metamorph_stages(e: Dict[str, object], base_name: str) -> Tuple[List[str], List[StagePosition]]:
    """Rebuild MetaMorph filenames from the DoWave/DoStage/DoTimelapse entries."""
    if e.get("DoWave", False):
        n_waves = int(e.get("NWavelengths", 0))
        channels = [str(e.get(f"WaveName{i}", f"w{i}")) for i in range(1, n_waves + 1)]
    else:
        channels = []
    wave_in_name = bool(e.get("WaveInFileName", True))

    do_stage = bool(e.get("DoStage", False))
    if do_stage:
        n_stages = int(e.get("NStagePositions", 0))
        stage_names = [str(e.get(f"Stage{j}", f"Stage{j}")) for j in range(1, n_stages + 1)]
    else:
        stage_names = ["Stage1"]

    timepoints: List[Optional[int]] = [None]
    if e.get("DoTimelapse", False):
        timepoints = list(range(1, int(e.get("NTimePoints", 1)) + 1))

    stages = []
    for j, stage_name in enumerate(stage_names, start=1):
        stage = StagePosition(position=j, name=stage_name)
        for t in timepoints:
            for i, ch in enumerate(channels or [""], start=1):
                parts = [base_name]
                if channels:
                    parts.append(f"_w{i}{ch}" if wave_in_name else f"_w{i}")
                if do_stage:
                    parts.append(f"_s{j}")
                if t is not None:
                    parts.append(f"_t{t}")
                stage.images.append(ChannelImage(channel=ch or "default",
                                                 filename="".join(parts) + ".TIF",
                                                 timepoint=t))
        stages.append(stage)
    return channels, stages


def parse_nd(text: str, base_name: str) -> NDFile:
    """
    Parse .nd content. `base_name` is the .nd file stem, which prefixes every
    reconstructed MetaMorph filename. Files that list do_channel_N filenames per
    stage are taken as written.
    """
    e = parse_nd_entries(text)

    version = e.get("ND_VERSION", e.get("NDInfoFile"))
    if version is None or version == "":
        raise ValueError("Not an .nd file: missing NDInfoFile/ND_VERSION entry")
    version = str(version)
    if version.lower().startswith("version"):
        version = version[len("version"):].strip()

    live_mode = bool(e.get("LiveMode", False))

    blocks = _stage_blocks(text)
    if blocks:
        channels, stages = _listed_stages(blocks)
    else:
        channels, stages = _metamorph_stages(e, base_name)

    return NDFile(version=version, live_mode=live_mode, channels=channels,
                  stage_positions=stages, raw=e)


def read_nd(path: str | Path) -> NDFile:
    p = Path(path)
    return parse_nd(p.read_text(encoding="utf-8", errors="replace"), base_name=p.stem)


def _index_tiffs(folder: Path) -> Dict[str, Path]:
    """Case-insensitive filename → path for TIFFs in `folder`, ignoring the extension spelling."""
    out = {}
    for p in sorted(folder.iterdir()):
        if p.is_file() and p.suffix.lower() in TIFF_EXTS:
            out[p.stem.lower()] = p
    return out


def scan_folder_for_nd(folder: str | Path) -> List[NDFolderScan]:
    """
    Find .nd files in `folder` and pair each stage position with the TIFF files
    it references (first timepoint only). Stages missing a channel file, or not
    listing every channel of the file, are left out and reported in `missing`.
    """
    d = Path(folder)
    tiffs = _index_tiffs(d)
    results = []
    for nd_path in sorted(p for p in d.iterdir() if p.is_file() and p.suffix.lower() == ".nd"):
        nd = read_nd(nd_path)
        stacks: Dict[str, List[Path]] = {}
        missing: List[str] = []
        for stage in nd.stage_positions:
            first_t = stage.images[0].timepoint if stage.images else None
            wanted = [img for img in stage.images if img.timepoint == first_t]
            paths = []
            for img in wanted:
                hit = tiffs.get(Path(img.filename).stem.lower())
                if hit is None:
                    missing.append(img.filename)
                else:
                    paths.append(hit)
            listed = {img.channel for img in wanted}
            absent = [c for c in nd.channels if c not in listed]
            missing += [f"{stage.name}: no {c} image" for c in absent]
            if paths and len(paths) == len(wanted) and not absent:
                stacks[stage.name] = paths
        results.append(NDFolderScan(nd_path=nd_path, dataset_name=nd_path.stem,
                                    nd=nd, stacks=stacks, missing=missing))
    return results


def channel_index(nd: NDFile, channel_name: str) -> int:
    """Position of a named wavelength (case-insensitive) in the file's channel order."""
    names = [c.lower() for c in nd.channels]
    try:
        return names.index(channel_name.lower())
    except ValueError:
        raise ValueError(f"Channel {channel_name!r} not in .nd channels {nd.channels}")
