import numpy as np
import pytest
from scipy import stats

from nucquant.errors import InsufficientDataError
from nucquant.comparison import (
    ComparisonResult, CorrectionKind, Dataset, FeatureKey, TestKind, compare,
    correct_p_values, one_way_anova, summarize, welch_t_test,
)
from nucquant.features import FeatureRecord


def make_dataset(name, areas, per_image=None):
    """Dataset whose records carry `areas`; optionally split across images."""
    ds = Dataset(name)
    chunks = [areas] if per_image is None else [areas[i:i + per_image] for i in range(0, len(areas), per_image)]
    next_id = 1
    for k, chunk in enumerate(chunks):
        recs = []
        for a in chunk:
            recs.append(FeatureRecord(id=next_id, area=a, perimeter=4 * a ** 0.5,
                                      circularity=0.8, mean_intensity=float(a) * 2))
            next_id += 1
        ds.add_image(recs, image_name=f"{name}_{k}.tif")
    return ds


BASE = [10.0, 11.0, 9.0, 10.5, 9.5]


def test_identical_datasets_give_p_one():
    a = make_dataset("A", [100] * 5)
    b = make_dataset("B", [100] * 5)
    res, = compare([a, b], "t-test", "None", "area")
    assert res.p_value == 1.0
    assert res.corrected_p_value == 1.0
    assert res.comparison == "A vs B"


def test_well_separated_means_are_more_significant():
    sd = np.std(BASE, ddof=1)
    far = compare([make_dataset("A", BASE), make_dataset("B", [v + 10 * sd for v in BASE])],
                  TestKind.T_TEST, CorrectionKind.NONE, FeatureKey.AREA)[0]
    same = compare([make_dataset("A", BASE), make_dataset("B", BASE[::-1])],
                   TestKind.T_TEST, CorrectionKind.NONE, FeatureKey.AREA)[0]
    assert far.p_value < same.p_value
    assert far.p_value < 1e-4


def test_welch_matches_scipy():
    a = np.array([5.1, 4.9, 6.2, 5.8, 6.0, 5.5])
    b = np.array([6.5, 7.1, 6.9, 7.8, 6.2])
    t, df, p = welch_t_test(a, b)
    ref = stats.ttest_ind(a, b, equal_var=False)
    assert t == pytest.approx(ref.statistic)
    assert p == pytest.approx(ref.pvalue)
    assert 4 < df < 9


def test_welch_zero_variance_distinct_means():
    t, _, p = welch_t_test(np.array([1.0, 1.0]), np.array([2.0, 2.0]))
    assert p == 0.0
    assert t < 0


def test_anova_matches_scipy():
    groups = [np.array([1.0, 2.0, 3.0, 2.5]), np.array([2.0, 3.5, 4.0]), np.array([5.0, 6.0, 5.5, 7.0])]
    F, dfb, dfw, p = one_way_anova(groups)
    ref = stats.f_oneway(*groups)
    assert F == pytest.approx(ref.statistic)
    assert p == pytest.approx(ref.pvalue)
    assert (dfb, dfw) == (2, 8)


def test_anova_emits_omnibus_then_pairs_in_index_order():
    ds = [make_dataset("A", BASE), make_dataset("B", [v + 1 for v in BASE]),
          make_dataset("C", [v + 3 for v in BASE])]
    results = compare(ds, "ANOVA", "Bonferroni", "area")
    assert [r.comparison for r in results] == ["ANOVA (A, B, C)", "A vs B", "A vs C", "B vs C"]
    assert results[0].test == "ANOVA"
    n = len(results)
    for r in results:
        assert 0.0 <= r.p_value <= 1.0
        assert r.corrected_p_value == pytest.approx(min(1.0, r.p_value * n))


def test_anova_with_two_datasets():
    results = compare([make_dataset("A", BASE), make_dataset("B", [v + 2 for v in BASE])], "ANOVA", "None")
    assert len(results) == 2
    # with two groups F == t^2
    assert results[0].statistic == pytest.approx(results[1].statistic ** 2)


def test_bonferroni_single_comparison_is_identity():
    assert correct_p_values([0.03], "Bonferroni")[0] == pytest.approx(0.03)
    assert correct_p_values([0.3, 0.6], "Bonferroni").tolist() == [0.6, 1.0]


def test_benjamini_hochberg_known_values():
    raw = [0.01, 0.04, 0.03, 0.005]
    adj = correct_p_values(raw, "Benjamini-Hochberg")
    assert adj == pytest.approx([0.02, 0.04, 0.04, 0.02])


def test_benjamini_hochberg_properties():
    rng = np.random.default_rng(1)
    raw = rng.uniform(0, 0.2, size=25)
    adj = correct_p_values(raw, CorrectionKind.BENJAMINI_HOCHBERG)
    order = np.argsort(raw)
    assert np.all(np.diff(adj[order]) >= -1e-15)
    assert np.all(adj >= raw)
    assert np.all(adj <= 1.0)


def test_no_correction_is_identity():
    raw = [0.2, 0.01]
    assert correct_p_values(raw, None).tolist() == raw


def test_needs_two_datasets():
    with pytest.raises(InsufficientDataError):
        compare([make_dataset("A", BASE)], "t-test", "None")


def test_empty_dataset_is_named_in_error():
    with pytest.raises(InsufficientDataError) as exc:
        compare([make_dataset("A", BASE), Dataset("Empty")], "ANOVA", "None")
    assert exc.value.dataset == "Empty"
    assert "Empty" in str(exc.value)


def test_single_value_dataset_is_rejected():
    with pytest.raises(InsufficientDataError):
        compare([make_dataset("A", BASE), make_dataset("One", [3.0])], "t-test", "None")


def test_t_test_rejects_more_than_two_datasets():
    ds = [make_dataset(n, BASE) for n in "ABC"]
    with pytest.raises(ValueError, match="exactly 2"):
        compare(ds, "t-test", "None")


def test_other_metrics_are_compared():
    a = make_dataset("A", BASE)
    b = make_dataset("B", [v * 3 for v in BASE])
    res, = compare([a, b], "t-test", "None", "mean_intensity")
    assert res.p_value < 0.001
    res, = compare([a, b], "t-test", "None", FeatureKey.CIRCULARITY)
    assert res.p_value == 1.0


def test_enum_parsing():
    assert TestKind.parse("anova") is TestKind.ANOVA
    assert TestKind.parse("T_TEST") is TestKind.T_TEST
    assert CorrectionKind.parse("benjamini-hochberg") is CorrectionKind.BENJAMINI_HOCHBERG
    assert FeatureKey.parse("Mean_Intensity") is FeatureKey.MEAN_INTENSITY
    with pytest.raises(ValueError):
        CorrectionKind.parse("holm")


def test_dataset_pools_values_in_image_order():
    ds = make_dataset("A", [1, 2, 3, 4, 5], per_image=2)
    assert ds.n_images == 3
    assert ds.n_nuclei == 5
    assert ds.values("area").tolist() == [1, 2, 3, 4, 5]
    df = ds.to_frame()
    assert df["image_name"].tolist() == ["A_0.tif", "A_0.tif", "A_1.tif", "A_1.tif", "A_2.tif"]


def test_results_are_immutable():
    res = ComparisonResult("A vs B", 0.1, 0.2)
    with pytest.raises(AttributeError):
        res.p_value = 0.5


def test_summarize():
    s = summarize([make_dataset("A", BASE), make_dataset("B", [1.0, 3.0])], "area")
    assert s["dataset_name"].tolist() == ["A", "B"]
    assert s["n"].tolist() == [5, 2]
    assert s["area_mean"].tolist() == pytest.approx([10.0, 2.0])
