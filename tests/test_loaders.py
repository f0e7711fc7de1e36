from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from doscan.data.loaders import (
    detect_file_format, load_phenotype_file, load_genoprobs, load_marker_map,
)
from doscan.data.io_utils import (
    write_genoprobs_h5, write_flat_genoprobs_h5, save_scan_results, load_scan_results,
    validate_input_files,
)
from doscan.utils.data_types import GenoProbs, ScanResults, DO_FOUNDERS


def _random_probs(rng, n_samples, n_states, n_markers):
    return rng.dirichlet(np.ones(n_states), size=(n_samples, n_markers)).transpose(0, 2, 1)


def test_detect_file_format(tmp_path: Path) -> None:
    assert detect_file_format(tmp_path / "a.csv") == "csv"
    assert detect_file_format(tmp_path / "a.h5") == "hdf5"
    assert detect_file_format(tmp_path / "a.npz") == "npz"

    unknown = tmp_path / "pheno.dat"
    unknown.write_text("Sample\tNEUT\nS1\t1.0\n")
    assert detect_file_format(unknown) == "tsv"


def test_load_phenotype_file_detects_id_column(tmp_path: Path) -> None:
    path = tmp_path / "pheno.csv"
    pd.DataFrame({
        "Sample": ["S1", "S2", "S3"],
        "Sex": ["F", "M", "F"],
        "NEUT": [1.2, "NA", 0.8],
    }).to_csv(path, index=False)

    pheno = load_phenotype_file(path, verbose=False)
    assert list(pheno.index) == ["S1", "S2", "S3"]
    assert pheno.index.name == "ID"
    assert np.isnan(pheno.loc["S2", "NEUT"])


def test_load_phenotype_file_errors(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_phenotype_file(tmp_path / "missing.csv")

    path = tmp_path / "dups.csv"
    pd.DataFrame({"Sample": ["S1", "S1"], "NEUT": [1.0, 2.0]}).to_csv(path, index=False)
    with pytest.raises(ValueError, match="Duplicated"):
        load_phenotype_file(path, verbose=False)
    with pytest.raises(ValueError):
        load_phenotype_file(path, id_column="Mouse", verbose=False)


def test_load_phenotype_file_falls_back_to_first_column(tmp_path: Path) -> None:
    path = tmp_path / "pheno.csv"
    pd.DataFrame({"mouse": ["a", "b"], "NEUT": [1.0, 2.0]}).to_csv(path, index=False)
    with pytest.warns(UserWarning):
        pheno = load_phenotype_file(path, verbose=False)
    assert list(pheno.index) == ["a", "b"]


def test_grouped_genoprobs_written_then_loaded(tmp_path: Path) -> None:
    rng = np.random.default_rng(7)
    probs = GenoProbs(
        {"1": _random_probs(rng, 4, 8, 3), "X": _random_probs(rng, 4, 8, 2)},
        ["a", "b", "c", "d"],
        {"1": ["m1", "m2", "m3"], "X": ["x1", "x2"]},
    )
    path = tmp_path / "alt_probs.h5"
    write_genoprobs_h5(probs, path)

    loaded = load_genoprobs(path, verbose=False)
    assert isinstance(loaded, GenoProbs)
    assert loaded.chromosomes == ["1", "X"]
    assert loaded.sample_ids == ["a", "b", "c", "d"]
    assert loaded.markers("X") == ["x1", "x2"]
    assert loaded.states == DO_FOUNDERS
    np.testing.assert_allclose(loaded["1"], probs["1"])


def test_flat_genoprobs_without_and_with_chromosomes(tmp_path: Path) -> None:
    rng = np.random.default_rng(3)
    arr = _random_probs(rng, 3, 8, 4)
    markers = ["m1", "m2", "m3", "m4"]

    flat = tmp_path / "flat.h5"
    write_flat_genoprobs_h5(arr, ["a", "b", "c"], markers, flat, states=DO_FOUNDERS)
    loaded = load_genoprobs(flat, verbose=False)
    assert isinstance(loaded, dict)
    assert loaded["markers"] == markers
    assert loaded["states"] == DO_FOUNDERS
    np.testing.assert_allclose(loaded["probs"], arr)

    split = tmp_path / "flat_chr.h5"
    write_flat_genoprobs_h5(arr, ["a", "b", "c"], markers, split, chromosomes=["1", "1", "2", "2"])
    probs = load_genoprobs(split, verbose=False)
    assert isinstance(probs, GenoProbs)
    assert probs.n_markers == {"1": 2, "2": 2}
    np.testing.assert_allclose(probs["2"], arr[:, :, 2:])


def test_npz_genoprobs(tmp_path: Path) -> None:
    rng = np.random.default_rng(5)
    arr = _random_probs(rng, 2, 8, 3)
    path = tmp_path / "probs.npz"
    np.savez(path, probs=arr, samples=np.array(["a", "b"]), markers=np.array(["m1", "m2", "m3"]))
    loaded = load_genoprobs(path, verbose=False)
    assert loaded["samples"] == ["a", "b"]
    assert loaded["states"] is None


def test_load_genoprobs_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_genoprobs(tmp_path / "none.h5")


def test_load_marker_map_csv_converts_bp(tmp_path: Path) -> None:
    path = tmp_path / "map.csv"
    pd.DataFrame({
        "SNP": ["m1", "m2"],
        "Chr": ["chr1", "chr2"],
        "pos": [3_000_000, 4_500_000],
    }).to_csv(path, index=False)

    map_df = load_marker_map(path, verbose=False)
    assert list(map_df.columns) == ["marker", "chr", "Mbp"]
    assert list(map_df["chr"]) == ["1", "2"]
    np.testing.assert_allclose(map_df["Mbp"], [3.0, 4.5])


def test_load_marker_map_with_declared_units(tmp_path: Path) -> None:
    path = tmp_path / "gmap.csv"
    pd.DataFrame({"marker": ["m1", "m2"], "chr": ["1", "1"], "pos": [0.1, 2.3]}).to_csv(path, index=False)
    gmap = load_marker_map(path, pos_units="cM", verbose=False)
    assert list(gmap.columns) == ["marker", "chr", "cM"]

    with pytest.raises(ValueError):
        load_marker_map(path, pos_units="furlong", verbose=False)


def test_load_marker_map_hdf5_store(tmp_path: Path) -> None:
    path = tmp_path / "markers.h5"
    pd.DataFrame({
        "marker": ["m1", "m2", "m3"],
        "chr": ["1", "1", "X"],
        "cM": [0.5, 1.0, 3.0],
        "Mbp": [3.1, 4.2, 10.0],
    }).to_hdf(path, key="map")

    map_df = load_marker_map(path, verbose=False)
    assert list(map_df.columns) == ["marker", "chr", "cM", "Mbp"]
    assert len(map_df) == 3


def test_save_and_load_scan_results(tmp_path: Path) -> None:
    lod = pd.DataFrame({"log10_neut": [0.1, 3.2]}, index=pd.Index(["m1", "m2"], name="marker"))
    path = save_scan_results(ScanResults(lod, ["1", "2"]), tmp_path / "lod.tsv")
    table = load_scan_results(path)
    assert list(table.columns) == ["marker", "chr", "log10_neut"]
    np.testing.assert_allclose(table["log10_neut"], [0.1, 3.2])

    with pytest.raises(FileNotFoundError):
        load_scan_results(tmp_path / "none.tsv")


def test_validate_input_files(tmp_path: Path) -> None:
    present = tmp_path / "p.csv"
    present.write_text("x\n")
    result = validate_input_files(phenotype=present, probs=tmp_path / "missing.h5", snp_db=None)
    assert result["valid"] is False
    assert len(result["errors"]) == 1
