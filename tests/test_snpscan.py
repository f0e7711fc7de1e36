import sqlite3
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from doscan.utils.data_types import GenoProbs, MarkerMap, DO_FOUNDER_STRAINS
from doscan.matrix.kinship import DOSCAN_Kinship
from doscan.association.snpscan import (
    calc_sdp, create_variant_query_func, index_snps, genoprob_to_snpprob,
    DOSCAN_Scan1SNPs, top_snps,
)


def _make_data(seed: int = 17, n_samples: int = 50):
    rng = np.random.default_rng(seed)
    ids = [f"M{i:03d}" for i in range(n_samples)]
    arr = rng.dirichlet(np.ones(8) * 0.5, size=(n_samples, 4)).transpose(0, 2, 1)
    markers = ["m1", "m2", "m3", "m4"]
    probs = GenoProbs({"1": arr}, ids, {"1": markers})
    pmap = MarkerMap(pd.DataFrame({
        "marker": markers,
        "chr": ["1"] * 4,
        "pos": [1.0, 2.0, 3.0, 4.0],
    }), units="Mbp")
    covar = pd.DataFrame({"sex": rng.integers(0, 2, n_samples).astype(float)}, index=ids)
    y = 2.0 * arr[:, 0, 0] + 0.2 * covar["sex"].to_numpy() + rng.normal(0, 0.3, n_samples)
    pheno = pd.DataFrame({"log10_neut": y}, index=ids)
    return probs, pmap, pheno, covar


def _snpinfo() -> pd.DataFrame:
    return pd.DataFrame({
        "snp_id": ["rs1", "rs2", "rs3", "rs4", "rs5", "rs6"],
        "chr": ["1", "1", "1", "1", "1", "1"],
        "pos": [1.1, 1.2, 1.45, 3.6, 2.0, 2.5],
        "sdp": [1, 1, 5, 1, 0, 255],
    })


def test_calc_sdp() -> None:
    calls = np.array([
        [1, 3, 1, 1, 1, 1, 1, 3],
        [3, 1, 1, 1, 1, 1, 1, 1],
    ])
    np.testing.assert_array_equal(calc_sdp(calls), [130, 1])
    np.testing.assert_array_equal(calc_sdp(np.array([1, 1, 3, 1, 1, 1, 1, 1])), [4])
    with pytest.raises(ValueError):
        calc_sdp(np.array([[0, 1, 3, 1, 1, 1, 1, 1]]))


def test_index_snps_groups_by_nearest_marker_and_sdp() -> None:
    _, pmap, _, _ = _make_data()
    snps = _snpinfo().iloc[:4]
    extra = pd.DataFrame({"snp_id": ["rsY"], "chr": ["Y"], "pos": [1.0], "sdp": [3]})
    indexed = index_snps(pmap, pd.concat([snps, extra], ignore_index=True))

    assert list(indexed["snp_id"]) == ["rs1", "rs2", "rs3", "rs4"]
    assert list(indexed["marker_index"]) == [0, 0, 0, 3]
    assert list(indexed["interval"]) == [0, 0, 0, 2]
    assert list(indexed["index"]) == [0, 0, 2, 3]


def test_index_snps_handles_maps_not_sorted_by_position() -> None:
    rng = np.random.default_rng(3)
    ids = [f"M{i:03d}" for i in range(10)]
    markers = ["m1", "m2", "m3", "m4", "m5"]
    arr = rng.dirichlet(np.ones(8), size=(10, 5)).transpose(0, 2, 1)
    probs = GenoProbs({"1": arr}, ids, {"1": markers})
    # genetic order of the markers differs from their physical order
    pmap = MarkerMap(pd.DataFrame({
        "marker": markers,
        "chr": ["1"] * 5,
        "pos": [1.0, 9.0, 2.0, 8.0, 5.0],
    }), units="Mbp")
    snps = pd.DataFrame({
        "snp_id": ["rsA", "rsB", "rsC", "rsD"],
        "chr": ["1"] * 4,
        "pos": [8.9, 1.9, 0.5, 5.2],
        "sdp": [1, 2, 4, 8],
    })
    indexed = index_snps(pmap, snps)

    assert list(indexed["marker_index"]) == [1, 2, 0, 4]
    assert list(indexed["interval"]) == [3, 0, -1, 4]

    snp_probs = genoprob_to_snpprob(probs, indexed)
    np.testing.assert_allclose(snp_probs["1"][:, 1, 0], arr[:, 0, 1])
    np.testing.assert_allclose(snp_probs["1"][:, 1, 1], arr[:, 1, 2])


def test_genoprob_to_snpprob_collapses_founders() -> None:
    probs, pmap, _, _ = _make_data()
    indexed = index_snps(pmap, _snpinfo().iloc[[0, 2]])
    snp_probs = genoprob_to_snpprob(probs, indexed)

    assert snp_probs.states == ["ref", "alt"]
    assert snp_probs.markers("1") == ["rs1", "rs3"]
    np.testing.assert_allclose(snp_probs["1"][:, 1, 0], probs["1"][:, 0, 0])
    np.testing.assert_allclose(snp_probs["1"][:, 1, 1], probs["1"][:, 0, 0] + probs["1"][:, 2, 0])
    np.testing.assert_allclose(snp_probs["1"].sum(axis=1), 1.0)


def test_scan1snps_matches_direct_regression() -> None:
    probs, pmap, pheno, covar = _make_data()
    results = DOSCAN_Scan1SNPs(probs, pmap, pheno, addcovar=covar, snpinfo=_snpinfo(), verbose=False)

    # Monomorphic SDPs (0 and 255) are dropped
    assert results.n_snps == 4
    assert list(results.lod.index) == ["rs1", "rs2", "rs3", "rs4"]
    lod = results.lod["log10_neut"]
    assert lod["rs1"] == pytest.approx(lod["rs2"])

    y = pheno["log10_neut"].to_numpy()
    X0 = np.column_stack([np.ones(len(y)), covar["sex"].to_numpy()])
    X1 = np.column_stack([X0, probs["1"][:, 0, 0]])
    rss0 = np.sum((y - X0 @ np.linalg.lstsq(X0, y, rcond=None)[0]) ** 2)
    rss1 = np.sum((y - X1 @ np.linalg.lstsq(X1, y, rcond=None)[0]) ** 2)
    assert lod["rs1"] == pytest.approx(len(y) / 2 * np.log10(rss0 / rss1), rel=1e-6)

    distinct = DOSCAN_Scan1SNPs(probs, pmap, pheno, addcovar=covar, snpinfo=_snpinfo(),
                                keep_all_snps=False, verbose=False)
    assert list(distinct.lod.index) == ["rs1", "rs3", "rs4"]

    top = top_snps(results)
    assert top.iloc[0]["snp_id"] in ("rs1", "rs2")
    assert top["log10_neut"].is_monotonic_decreasing


def test_scan1snps_with_loco_kinship() -> None:
    probs, pmap, pheno, covar = _make_data(seed=4)
    arr2 = np.random.default_rng(0).dirichlet(np.ones(8), size=(probs.n_samples, 5)).transpose(0, 2, 1)
    genome = GenoProbs({"1": probs["1"], "2": arr2}, probs.sample_ids,
                       {"1": probs.markers("1"), "2": [f"c2_{i}" for i in range(5)]})
    loco = DOSCAN_Kinship(genome, type="loco", verbose=False)

    results = DOSCAN_Scan1SNPs(probs, pmap, pheno, kinship=loco, addcovar=covar,
                               snpinfo=_snpinfo(), verbose=False)
    assert np.all(results.lod.to_numpy() >= 0)
    assert results.n_snps == 4


def test_scan1snps_requires_region_or_snpinfo() -> None:
    probs, pmap, pheno, _ = _make_data()
    with pytest.raises(ValueError):
        DOSCAN_Scan1SNPs(probs, pmap, pheno, verbose=False)


def _write_db(path: Path, df: pd.DataFrame) -> None:
    conn = sqlite3.connect(str(path))
    try:
        df.to_sql("variants", conn, index=False)
    finally:
        conn.close()


def test_variant_query_with_sdp_column(tmp_path: Path) -> None:
    db = tmp_path / "snps.sqlite"
    _write_db(db, _snpinfo())
    query = create_variant_query_func(db)

    snps = query("1", 1.0, 2.0)
    assert list(snps["snp_id"]) == ["rs1", "rs2", "rs3", "rs5"]
    assert snps["sdp"].dtype == np.int64

    assert query("2", 0.0, 10.0).empty
    with pytest.raises(ValueError):
        query("1", 3.0, 2.0)


def test_variant_query_computes_sdp_from_strains(tmp_path: Path) -> None:
    calls = np.ones((2, 8), dtype=int)
    calls[0, 1] = 3
    calls[1, [0, 7]] = 3
    df = pd.DataFrame(calls, columns=DO_FOUNDER_STRAINS)
    df.insert(0, "position", [5.5, 6.5])
    df.insert(0, "chrom", ["1", "1"])
    df.insert(0, "id", ["rsA", "rsB"])

    db = tmp_path / "strains.sqlite"
    _write_db(db, df)
    query = create_variant_query_func(db, id_field="id", chr_field="chrom", pos_field="position")
    snps = query("1", 5.0, 7.0)
    assert list(snps["sdp"]) == [2, 129]
    assert list(snps["pos"]) == [5.5, 6.5]


def test_variant_query_missing_database(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        create_variant_query_func(tmp_path / "none.sqlite")
