"""
Format converters between loaded objects and scan inputs
"""

import warnings
import numpy as np
import pandas as pd
from typing import Dict, List, Optional, Sequence

from ..utils.data_types import GenoProbs, MarkerMap, natural_sort_key, DO_FOUNDERS


class SampleOrderError(ValueError):
    """Sample IDs of genotype probabilities and phenotypes are not in the same order."""


def check_sample_order(probs_ids: Sequence[str], pheno_ids: Sequence[str],
                       label: str = "genotype probabilities") -> None:
    """Require identical sample ID order between probabilities and phenotypes.

    Raises:
        SampleOrderError: on any length or position mismatch
    """
    probs_ids = [str(s) for s in probs_ids]
    pheno_ids = [str(s) for s in pheno_ids]
    if len(probs_ids) != len(pheno_ids):
        raise SampleOrderError(
            f"{label}: {len(probs_ids)} samples but phenotype table has {len(pheno_ids)}"
        )
    mismatches = [i for i, (a, b) in enumerate(zip(probs_ids, pheno_ids)) if a != b]
    if mismatches:
        first = mismatches[0]
        raise SampleOrderError(
            f"{label}: sample order differs from phenotype table at {len(mismatches)} positions "
            f"(first at row {first}: '{probs_ids[first]}' vs '{pheno_ids[first]}')"
        )


def split_flat_probs(probs: np.ndarray,
                     sample_ids: Sequence[str],
                     marker_ids: Sequence[str],
                     marker_map: pd.DataFrame,
                     pos_column: str = 'cM',
                     states: Optional[Sequence[str]] = None,
                     verbose: bool = True) -> GenoProbs:
    """Split a genome-wide (n, states, M) array into per-chromosome arrays.

    Markers absent from the map are dropped. Chromosomes follow natural
    order; markers are ordered by position within each chromosome.
    """
    probs = np.asarray(probs)
    if probs.ndim != 3 or probs.shape[2] != len(marker_ids):
        raise ValueError(
            f"Probability array shape {probs.shape} does not match {len(marker_ids)} markers"
        )
    if pos_column not in marker_map.columns:
        raise ValueError(f"Marker map has no '{pos_column}' column")

    marker_ids = [str(m) for m in marker_ids]
    map_df = marker_map.drop_duplicates(subset=['marker']).set_index('marker')
    in_map = np.array([m in map_df.index for m in marker_ids])
    n_dropped = int((~in_map).sum())
    if n_dropped == len(marker_ids):
        raise ValueError("None of the probability markers are present in the marker map")
    if n_dropped:
        warnings.warn(f"Dropping {n_dropped} markers not present in the marker map")

    col_index = np.where(in_map)[0]
    kept = pd.DataFrame({
        'marker': [marker_ids[i] for i in col_index],
        'col': col_index,
    })
    kept['chr'] = map_df.loc[kept['marker'], 'chr'].astype(str).values
    kept['pos'] = map_df.loc[kept['marker'], pos_column].astype(float).values

    arrays: Dict[str, np.ndarray] = {}
    markers: Dict[str, List[str]] = {}
    for chrom in sorted(kept['chr'].unique(), key=natural_sort_key):
        sub = kept[kept['chr'] == chrom].sort_values('pos', kind='mergesort')
        arrays[chrom] = probs[:, :, sub['col'].values]
        markers[chrom] = sub['marker'].tolist()

    if verbose:
        print(f"   Split probabilities into {len(arrays)} chromosomes, "
              f"{len(kept)} markers kept")
    return GenoProbs(arrays, sample_ids, markers, states)


def genoprob_to_alleleprob(probs: GenoProbs) -> GenoProbs:
    """Collapse genotype probabilities to founder allele probabilities.

    Homozygote XX contributes 1 to X; heterozygote XY contributes 0.5 to each
    of X and Y. Allele probabilities are returned unchanged.
    """
    if probs.is_allele_probs:
        return probs

    alleles: List[str] = []
    for state in probs.states:
        if len(state) != 2:
            raise ValueError(f"Cannot interpret genotype state '{state}'")
        for a in state:
            if a not in alleles:
                alleles.append(a)
    alleles = sorted(alleles, key=lambda a: DO_FOUNDERS.index(a) if a in DO_FOUNDERS else a)

    # Genotype -> allele dosage / 2 (rows: genotype states, cols: alleles)
    contrib = np.zeros((len(probs.states), len(alleles)))
    for g, state in enumerate(probs.states):
        contrib[g, alleles.index(state[0])] += 0.5
        contrib[g, alleles.index(state[1])] += 0.5

    arrays = {
        chrom: np.einsum('ngm,ga->nam', arr, contrib)
        for chrom, arr in probs.items()
    }
    return GenoProbs(arrays, probs.sample_ids,
                     {c: probs.markers(c) for c in probs.chromosomes}, alleles)


def map_to_lists(marker_map: pd.DataFrame, pos_column: str = 'cM',
                 probs: Optional[GenoProbs] = None) -> MarkerMap:
    """Select one coordinate column and return a MarkerMap.

    With ``probs`` the map is aligned to the probabilities' markers.
    """
    if pos_column not in marker_map.columns:
        raise ValueError(f"Marker map has no '{pos_column}' column")
    units = 'cM' if pos_column == 'cM' else 'Mbp'
    df = marker_map[['marker', 'chr', pos_column]].rename(columns={pos_column: 'pos'})
    geno_map = MarkerMap(df, units=units)
    if probs is not None:
        geno_map = align_map_to_probs(geno_map, probs)
    return geno_map


def align_map_to_probs(marker_map: MarkerMap, probs: GenoProbs) -> MarkerMap:
    """Restrict a map to the probabilities' markers, in the probabilities' order."""
    df = marker_map.data.drop_duplicates(subset=['marker']).set_index('marker')
    order = probs.all_markers()
    missing = [m for m in order if m not in df.index]
    if missing:
        raise ValueError(f"{len(missing)} markers missing from map (e.g. {missing[:5]})")
    aligned = df.loc[order].reset_index()
    expected_chr = np.concatenate([[c] * n for c, n in probs.n_markers.items()])
    if not np.array_equal(aligned['chr'].astype(str).values, expected_chr):
        raise ValueError("Marker chromosomes in map disagree with genotype probabilities")
    return MarkerMap(aligned, units=marker_map.units)


def build_covariates(pheno: pd.DataFrame,
                     sex_column: str = 'Sex',
                     wbc_column: str = 'WBC',
                     male_code: str = 'M') -> pd.DataFrame:
    """Additive covariate matrix: sex indicator (male = 1) and log10 WBC.

    One row per phenotype sample, in phenotype order.
    """
    for col in (sex_column, wbc_column):
        if col not in pheno.columns:
            raise ValueError(f"Phenotype table has no '{col}' column")

    sex = pheno[sex_column].astype(str).str.strip().str.upper()
    wbc = pd.to_numeric(pheno[wbc_column], errors='coerce')
    if (wbc <= 0).any():
        warnings.warn(f"Non-positive {wbc_column} values set to missing before log10")
        wbc = wbc.where(wbc > 0)

    covar = pd.DataFrame({
        'sex': (sex == male_code.upper()).astype(float),
        'log10_wbc': np.log10(wbc),
    }, index=pheno.index)
    covar.loc[pheno[sex_column].isna(), 'sex'] = np.nan
    return covar


def build_phenotype(pheno: pd.DataFrame, neut_column: str = 'NEUT') -> pd.DataFrame:
    """Phenotype matrix with log10 neutrophil count, indexed like the phenotype table."""
    if neut_column not in pheno.columns:
        raise ValueError(f"Phenotype table has no '{neut_column}' column")
    neut = pd.to_numeric(pheno[neut_column], errors='coerce')
    if (neut <= 0).any():
        warnings.warn(f"Non-positive {neut_column} values set to missing before log10")
        neut = neut.where(neut > 0)
    return pd.DataFrame({'log10_neut': np.log10(neut)}, index=pheno.index)


__all__ = [
    'SampleOrderError',
    'check_sample_order',
    'split_flat_probs',
    'genoprob_to_alleleprob',
    'map_to_lists',
    'align_map_to_probs',
    'build_covariates',
    'build_phenotype',
]
