import numpy as np
import pytest
import tifffile

from nucquant.nd_files import channel_index, parse_nd, parse_nd_entries, read_nd, scan_folder_for_nd

ND_TWO_STAGES = '''"NDInfoFile", Version 1.0
"Description", File recreated from images.
"StartTime1", 20240102 10:11:12.000
"DoTimelapse", FALSE
"DoStage", TRUE
"NStagePositions", 2
"Stage1", "Position1"
"Stage2", "Position2"
"DoWave", TRUE
"NWavelengths", 2
"WaveName1", "DAPI"
"WaveName2", "FITC"
"WaveInFileName", TRUE
"NEvents", 0
"EndFile"
'''


def test_entries_stop_at_endfile():
    e = parse_nd_entries('"A", 1\n"B", "x"\n"EndFile"\n"C", TRUE\n')
    assert e == {"A": 1, "B": "x"}


def test_parse_two_stages_two_waves():
    nd = parse_nd(ND_TWO_STAGES, "exp")
    assert nd.version == "1.0"
    assert nd.live_mode is False
    assert nd.channels == ["DAPI", "FITC"]
    assert [s.name for s in nd.stage_positions] == ["Position1", "Position2"]
    files = [img.filename for img in nd.stage_positions[1].images]
    assert files == ["exp_w1DAPI_s2.TIF", "exp_w2FITC_s2.TIF"]
    assert nd.raw["NEvents"] == 0


def test_parse_without_stage_or_wave_name():
    text = ND_TWO_STAGES.replace('"DoStage", TRUE', '"DoStage", FALSE').replace(
        '"WaveInFileName", TRUE', '"WaveInFileName", FALSE')
    nd = parse_nd(text, "exp")
    assert len(nd.stage_positions) == 1
    assert nd.stage_positions[0].name == "Stage1"
    assert [i.filename for i in nd.stage_positions[0].images] == ["exp_w1.TIF", "exp_w2.TIF"]


def test_parse_timelapse():
    text = ND_TWO_STAGES.replace('"DoTimelapse", FALSE', '"DoTimelapse", TRUE\n"NTimePoints", 2')
    nd = parse_nd(text, "exp")
    imgs = nd.stage_positions[0].images
    assert [(i.filename, i.timepoint) for i in imgs] == [
        ("exp_w1DAPI_s1_t1.TIF", 1), ("exp_w2FITC_s1_t1.TIF", 1),
        ("exp_w1DAPI_s1_t2.TIF", 2), ("exp_w2FITC_s1_t2.TIF", 2),
    ]


def test_parse_single_channel_file():
    nd = parse_nd('"NDInfoFile", Version 1.0\n"DoWave", FALSE\n"EndFile"\n', "plain")
    assert nd.channels == []
    assert nd.stage_positions[0].images[0].filename == "plain.TIF"


def test_missing_version_is_rejected():
    with pytest.raises(ValueError, match="NDInfoFile"):
        parse_nd('"DoWave", FALSE\n"EndFile"\n', "x")


def test_channel_index():
    nd = parse_nd(ND_TWO_STAGES, "exp")
    assert channel_index(nd, "fitc") == 1
    with pytest.raises(ValueError):
        channel_index(nd, "TRITC")


def test_scan_folder(tmp_path):
    (tmp_path / "exp.nd").write_text(ND_TWO_STAGES)
    img = np.zeros((8, 8), dtype=np.uint16)
    # extension case differs from what the .nd names
    tifffile.imwrite(tmp_path / "exp_w1DAPI_s1.tif", img)
    tifffile.imwrite(tmp_path / "exp_w2FITC_s1.tif", img)
    tifffile.imwrite(tmp_path / "exp_w1DAPI_s2.TIF", img)

    scan, = scan_folder_for_nd(tmp_path)
    assert scan.dataset_name == "exp"
    assert list(scan.stacks) == ["Position1"]
    assert [p.name for p in scan.stacks["Position1"]] == ["exp_w1DAPI_s1.tif", "exp_w2FITC_s1.tif"]
    assert scan.missing == ["exp_w2FITC_s2.TIF"]


def test_read_nd_uses_file_stem(tmp_path):
    p = tmp_path / "run42.nd"
    p.write_text(ND_TWO_STAGES)
    nd = read_nd(p)
    assert nd.stage_positions[0].images[0].filename.startswith("run42_w1DAPI")


ND_LISTED = '''"ND_VERSION","2.0"
"LiveMode", FALSE
"STAGES"
"Stage 1"
"channel_name_1","DAPI"
"do_channel_1","img_s1_dapi.tif"
"channel_name_2","FITC"
"do_channel_2","img_s1_fitc.tif"
"Stage 2"
"channel_name_1","FITC"
"do_channel_1","img_s2_fitc.tif"
"channel_name_2","DAPI"
"do_channel_2","img_s2_dapi.tif"
"EndFile"
'''


def test_parse_listed_stage_files():
    nd = parse_nd(ND_LISTED, "img")
    assert nd.version == "2.0"
    assert nd.live_mode is False
    assert nd.channels == ["DAPI", "FITC"]
    assert [(s.position, s.name) for s in nd.stage_positions] == [(1, "Stage 1"), (2, "Stage 2")]
    # every stage lists channels in the file's channel order
    assert [(i.channel, i.filename) for i in nd.stage_positions[1].images] == [
        ("DAPI", "img_s2_dapi.tif"), ("FITC", "img_s2_fitc.tif"),
    ]


def test_scan_folder_with_listed_files(tmp_path):
    text = ND_LISTED.replace('"channel_name_2","DAPI"\n"do_channel_2","img_s2_dapi.tif"\n', "")
    (tmp_path / "img.nd").write_text(text)
    img = np.zeros((8, 8), dtype=np.uint16)
    for name in ("img_s1_dapi.tif", "img_s1_fitc.tif", "img_s2_fitc.tif"):
        tifffile.imwrite(tmp_path / name, img)

    scan, = scan_folder_for_nd(tmp_path)
    assert [p.name for p in scan.stacks["Stage 1"]] == ["img_s1_dapi.tif", "img_s1_fitc.tif"]
    assert "Stage 2" not in scan.stacks
    assert scan.missing == ["Stage 2: no DAPI image"]
