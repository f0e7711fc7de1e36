import numpy as np
import pandas as pd
import pytest

from doscan.utils.data_types import GenoProbs, MarkerMap
from doscan.matrix.kinship import DOSCAN_Kinship
from doscan.association.scan import (
    DOSCAN_Scan1, estimate_heritability, maxlod, max_scan1, lod_int, find_peaks,
)


def _make_data(seed: int = 42, n_samples: int = 60, n_markers: int = 6, effect: float = 0.0):
    rng = np.random.default_rng(seed)
    ids = [f"M{i:03d}" for i in range(n_samples)]
    arrays = {}
    markers = {}
    for chrom in ("1", "2"):
        arrays[chrom] = rng.dirichlet(np.ones(8) * 0.5, size=(n_samples, n_markers)).transpose(0, 2, 1)
        markers[chrom] = [f"{chrom}_{i}" for i in range(n_markers)]
    probs = GenoProbs(arrays, ids, markers)

    covar = pd.DataFrame({
        "sex": rng.integers(0, 2, n_samples).astype(float),
        "log10_wbc": rng.normal(0.8, 0.2, n_samples),
    }, index=ids)
    y = (0.3 * covar["sex"] + 0.5 * covar["log10_wbc"]
         + effect * arrays["2"][:, 0, 3] + rng.normal(0, 0.2, n_samples))
    pheno = pd.DataFrame({"log10_neut": y.to_numpy()}, index=ids)

    map_data = MarkerMap(pd.DataFrame({
        "marker": markers["1"] + markers["2"],
        "chr": ["1"] * n_markers + ["2"] * n_markers,
        "pos": list(np.arange(n_markers) * 10.0) * 2,
    }), units="cM")
    return probs, pheno, covar, map_data


def _rss(X, y):
    beta, _, _, _ = np.linalg.lstsq(X, y, rcond=None)
    resid = y - X @ beta
    return float(resid @ resid)


def _ols_lod(probs, pheno, covar, samples):
    ids = probs.sample_ids
    rows = [ids.index(s) for s in samples]
    y = pheno.loc[samples, "log10_neut"].to_numpy()
    X0 = np.column_stack([np.ones(len(samples)), covar.loc[samples].to_numpy()])
    rss0 = _rss(X0, y)
    lods = []
    for chrom in probs.chromosomes:
        arr = probs[chrom][rows]
        for m in range(arr.shape[2]):
            rss1 = _rss(np.column_stack([X0, arr[:, :, m]]), y)
            lods.append(len(samples) / 2 * np.log10(rss0 / rss1))
    return np.maximum(np.array(lods), 0.0)


def _gls_lod(probs, pheno, covar, kinship_for, h2_for):
    """LOD from a direct GLS fit with V = h2 K + (1 - h2) I held at the null h2."""
    samples = probs.sample_ids
    y = pheno.loc[samples, "log10_neut"].to_numpy()
    X0 = np.column_stack([np.ones(len(samples)), covar.loc[samples].to_numpy()])
    lods = []
    for chrom in probs.chromosomes:
        h2 = h2_for(chrom)
        V = h2 * kinship_for(chrom) + (1.0 - h2) * np.eye(len(samples))
        L = np.linalg.cholesky(V)
        yw = np.linalg.solve(L, y)
        rss0 = _rss(np.linalg.solve(L, X0), yw)
        arr = probs[chrom]
        for m in range(arr.shape[2]):
            rss1 = _rss(np.linalg.solve(L, np.column_stack([X0, arr[:, :, m]])), yw)
            lods.append(len(samples) / 2 * np.log10(rss0 / rss1))
    return np.maximum(np.array(lods), 0.0)


def test_scan1_without_kinship_matches_ols() -> None:
    probs, pheno, covar, _ = _make_data()
    results = DOSCAN_Scan1(probs, pheno, addcovar=covar, verbose=False)

    assert results.phenotypes == ["log10_neut"]
    assert list(results.lod.index) == probs.all_markers()
    assert list(results.chromosomes) == ["1"] * 6 + ["2"] * 6
    np.testing.assert_allclose(results.lod["log10_neut"].to_numpy(),
                               _ols_lod(probs, pheno, covar, probs.sample_ids),
                               rtol=1e-6, atol=1e-8)
    assert np.isnan(results.hsq.loc["all", "log10_neut"])


def test_scan1_drops_missing_observations() -> None:
    probs, pheno, covar, _ = _make_data(seed=5)
    pheno.iloc[0, 0] = np.nan
    covar.iloc[1, 1] = np.nan
    results = DOSCAN_Scan1(probs, pheno["log10_neut"], addcovar=covar, verbose=False)

    used = probs.sample_ids[2:]
    np.testing.assert_allclose(results.lod["log10_neut"].to_numpy(),
                               _ols_lod(probs, pheno, covar, used),
                               rtol=1e-6, atol=1e-8)


def test_scan1_with_kinship_is_non_negative() -> None:
    probs, pheno, covar, _ = _make_data(seed=9)
    kinship = DOSCAN_Kinship(probs, verbose=False)
    results = DOSCAN_Scan1(probs, pheno, kinship=kinship, addcovar=covar, verbose=False)

    lod = results.lod["log10_neut"].to_numpy()
    assert lod.shape == (12,)
    assert np.all(np.isfinite(lod))
    assert np.all(lod >= 0)
    h2 = results.hsq.loc["all", "log10_neut"]
    assert 0.0 <= h2 <= 1.0


def test_scan1_loco_reports_heritability_per_chromosome() -> None:
    probs, pheno, covar, _ = _make_data(seed=13)
    loco = DOSCAN_Kinship(probs, type="loco", verbose=False)
    results = DOSCAN_Scan1(probs, pheno, kinship=loco, addcovar=covar, cores=2, verbose=False)

    assert list(results.hsq.index) == ["1", "2"]
    assert np.all(results.lod.to_numpy() >= 0)

    serial = DOSCAN_Scan1(probs, pheno, kinship=loco, addcovar=covar, cores=1, verbose=False)
    np.testing.assert_allclose(results.lod.to_numpy(), serial.lod.to_numpy())


def test_scan1_with_kinship_matches_direct_gls() -> None:
    probs, pheno, covar, _ = _make_data(seed=9, effect=1.0)
    kinship = DOSCAN_Kinship(probs, verbose=False)
    results = DOSCAN_Scan1(probs, pheno, kinship=kinship, addcovar=covar, verbose=False)

    h2 = results.hsq.loc["all", "log10_neut"]
    expected = _gls_lod(probs, pheno, covar, lambda chrom: kinship.to_numpy(), lambda chrom: h2)
    np.testing.assert_allclose(results.lod["log10_neut"].to_numpy(), expected, rtol=1e-4, atol=1e-4)


def test_scan1_loco_matches_direct_gls_per_chromosome() -> None:
    probs, pheno, covar, _ = _make_data(seed=13, effect=1.0)
    loco = DOSCAN_Kinship(probs, type="loco", verbose=False)
    results = DOSCAN_Scan1(probs, pheno, kinship=loco, addcovar=covar, verbose=False)

    expected = _gls_lod(probs, pheno, covar,
                        lambda chrom: loco.get_loco(chrom).to_numpy(),
                        lambda chrom: results.hsq.loc[chrom, "log10_neut"])
    np.testing.assert_allclose(results.lod["log10_neut"].to_numpy(), expected, rtol=1e-4, atol=1e-4)


def test_scan1_aligns_kinship_by_sample_id() -> None:
    probs, pheno, covar, _ = _make_data(seed=21)
    kinship = DOSCAN_Kinship(probs, verbose=False)
    shuffled = kinship.subset(list(reversed(kinship.sample_ids)))

    expected = DOSCAN_Scan1(probs, pheno, kinship=kinship, addcovar=covar, verbose=False)
    results = DOSCAN_Scan1(probs, pheno, kinship=shuffled, addcovar=covar, verbose=False)
    np.testing.assert_allclose(results.lod.to_numpy(), expected.lod.to_numpy(), rtol=1e-6, atol=1e-8)


def test_scan1_requires_enough_observations() -> None:
    probs, pheno, covar, _ = _make_data()
    pheno.iloc[2:, 0] = np.nan
    with pytest.raises(ValueError, match="fewer than 3"):
        DOSCAN_Scan1(probs, pheno, addcovar=covar, verbose=False)


def test_estimate_heritability_bounds() -> None:
    probs, pheno, covar, _ = _make_data(seed=3)
    eigenvals, eigenvecs = DOSCAN_Kinship(probs, verbose=False).eigendecomposition()
    y = eigenvecs.T @ pheno["log10_neut"].to_numpy()
    X = eigenvecs.T @ np.ones((len(y), 1))
    for reml in (True, False):
        h2 = estimate_heritability(y, X, eigenvals, reml=reml)
        assert 0.0 <= h2 <= 1.0


def test_peak_summaries_find_planted_qtl() -> None:
    probs, pheno, covar, map_data = _make_data(seed=1, n_samples=120, effect=3.0)
    results = DOSCAN_Scan1(probs, pheno, addcovar=covar, verbose=False)

    peak = max_scan1(results, map_data)
    assert peak["chr"] == "2"
    assert peak["marker"] == "2_3"
    assert peak["pos"] == pytest.approx(30.0)
    assert maxlod(results) == pytest.approx(peak["lod"])

    on_chr1 = max_scan1(results, map_data, chr="1")
    assert on_chr1["chr"] == "1"
    assert on_chr1["lod"] < peak["lod"]

    ci_lo, pos, ci_hi = lod_int(results, map_data, "2")
    assert ci_lo <= pos <= ci_hi
    assert pos == pytest.approx(30.0)

    peaks = find_peaks(results, map_data, threshold=3.0, drop=1.5)
    assert list(peaks.columns) == ["lodcolumn", "chr", "marker", "pos", "lod", "ci_lo", "ci_hi"]
    assert "2" in set(peaks["chr"])

    with pytest.raises(KeyError):
        max_scan1(results, map_data, chr="9")
    with pytest.raises(KeyError):
        lod_int(results, map_data, "9")
