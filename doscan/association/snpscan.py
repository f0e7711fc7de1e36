"""
SNP association scan in a genomic region

Each SNP is tested through its strain distribution pattern (SDP): the set of
founders carrying the alternate allele. Founder allele probabilities at the
nearest marker are collapsed to two-state SNP probabilities, SNPs sharing a
marker and an SDP are scanned once, and the LOD is copied to the rest.
"""

import sqlite3
from pathlib import Path
from typing import Callable, Optional, Sequence, Union

import numpy as np
import pandas as pd

from ..utils.data_types import GenoProbs, MarkerMap, SnpScanResults, DO_FOUNDER_STRAINS
from ..matrix.kinship import LocoKinship
from .scan import DOSCAN_Scan1, KinshipLike

REF_CODE = 1
ALT_CODE = 3


def calc_sdp(genotypes: Union[np.ndarray, pd.DataFrame]) -> np.ndarray:
    """Strain distribution pattern from founder genotype calls

    Args:
        genotypes: (n_snps, n_founders) calls coded 1 (reference) / 3 (alternate)

    Returns:
        Integer SDP per SNP; bit i is set when founder i carries the alternate
        allele. Values lie in (0, 2^n_founders - 1) for polymorphic SNPs.
    """
    calls = np.asarray(genotypes)
    if calls.ndim == 1:
        calls = calls[np.newaxis, :]
    invalid = ~np.isin(calls, (REF_CODE, ALT_CODE))
    if invalid.any():
        bad = np.unique(calls[invalid])[:5]
        raise ValueError(f"Founder genotypes must be coded {REF_CODE}/{ALT_CODE}, found {bad}")
    bits = (calls == ALT_CODE).astype(np.int64)
    weights = 2 ** np.arange(calls.shape[1], dtype=np.int64)
    return bits @ weights


def create_variant_query_func(dbfile: Union[str, Path],
                              table: str = 'variants',
                              id_field: str = 'snp_id',
                              chr_field: str = 'chr',
                              pos_field: str = 'pos',
                              sdp_field: str = 'sdp',
                              strains: Optional[Sequence[str]] = None) -> Callable[[str, float, float], pd.DataFrame]:
    """Build a function that queries SNPs in a region of a SQLite database

    Args:
        dbfile: SQLite database with one row per SNP
        table: Table name
        id_field, chr_field, pos_field, sdp_field: Column names; positions in Mbp
        strains: Founder strain columns used to compute the SDP when the table
                 has no SDP column (default: the eight DO founder strains)

    Returns:
        Function (chr, start, end) -> DataFrame with snp_id, chr, pos, sdp
    """
    dbfile = Path(dbfile)
    if not dbfile.exists():
        raise FileNotFoundError(f"SNP database not found: {dbfile}")
    strains = list(strains) if strains is not None else list(DO_FOUNDER_STRAINS)

    def query_variants(chr: str, start: float, end: float) -> pd.DataFrame:
        if start > end:
            raise ValueError(f"start ({start}) must not exceed end ({end})")
        sql = (f"SELECT * FROM {table} WHERE {chr_field} = ? "
               f"AND {pos_field} >= ? AND {pos_field} <= ? ORDER BY {pos_field}")
        with sqlite3.connect(str(dbfile)) as conn:
            snps = pd.read_sql_query(sql, conn, params=(str(chr), float(start), float(end)))

        snps = snps.rename(columns={id_field: 'snp_id', chr_field: 'chr', pos_field: 'pos'})
        if sdp_field in snps.columns:
            snps = snps.rename(columns={sdp_field: 'sdp'})
        else:
            missing = [s for s in strains if s not in snps.columns]
            if missing:
                raise ValueError(f"SNP table has no '{sdp_field}' column and lacks strain columns {missing}")
            snps['sdp'] = calc_sdp(snps[strains].to_numpy()) if len(snps) else np.array([], dtype=np.int64)

        snps['snp_id'] = snps['snp_id'].astype(str)
        snps['chr'] = snps['chr'].astype(str)
        snps['sdp'] = snps['sdp'].astype(np.int64)
        return snps

    return query_variants


def index_snps(map_data: MarkerMap, snpinfo: pd.DataFrame) -> pd.DataFrame:
    """Assign each SNP to its nearest marker and find equivalent SNPs

    Adds columns:
        marker_index: position of the nearest marker on its chromosome
        interval: position of the marker at the left end of the physical
                  interval containing the SNP (-1 left of the map)
        index: row of the representative SNP sharing (marker_index, sdp)

    Returns:
        Copy of ``snpinfo`` with the added columns; SNPs on chromosomes absent
        from the map are dropped.
    """
    snpinfo = snpinfo.reset_index(drop=True).copy()
    if snpinfo.empty:
        for col in ('marker_index', 'interval', 'index'):
            snpinfo[col] = pd.Series(dtype=np.int64)
        return snpinfo

    frames = []
    for chrom in pd.unique(snpinfo['chr'].astype(str)):
        sub = snpinfo[snpinfo['chr'].astype(str) == chrom].copy()
        try:
            marker_pos = map_data.chrom(chrom).to_numpy(dtype=np.float64)
        except KeyError:
            continue
        snp_pos = sub['pos'].to_numpy(dtype=np.float64)

        # map order follows the probabilities (cM), which need not be sorted by Mbp
        order = np.argsort(marker_pos, kind='mergesort')
        sorted_pos = marker_pos[order]
        right = np.searchsorted(sorted_pos, snp_pos, side='left')
        right = np.clip(right, 0, len(sorted_pos) - 1)
        left = np.clip(right - 1, 0, len(sorted_pos) - 1)
        nearest = np.where(np.abs(sorted_pos[left] - snp_pos) <= np.abs(sorted_pos[right] - snp_pos),
                           left, right)
        flank = np.searchsorted(sorted_pos, snp_pos, side='right') - 1
        sub['marker_index'] = order[nearest].astype(np.int64)
        sub['interval'] = np.where(flank >= 0, order[np.maximum(flank, 0)], -1).astype(np.int64)
        frames.append(sub)

    if not frames:
        raise ValueError("No SNPs fall on chromosomes present in the marker map")

    indexed = pd.concat(frames).reset_index(drop=True)
    keys = list(zip(indexed['chr'], indexed['marker_index'], indexed['sdp']))
    lookup = {}
    for row, key in zip(indexed.index, keys):
        lookup.setdefault(key, row)
    indexed['index'] = np.array([lookup[k] for k in keys], dtype=np.int64)
    return indexed


def genoprob_to_snpprob(allele_probs: GenoProbs, snpinfo: pd.DataFrame) -> GenoProbs:
    """Collapse founder allele probabilities to two-state SNP probabilities

    Args:
        allele_probs: Founder allele probabilities
        snpinfo: Output of ``index_snps``; one SNP per row (typically the
                 distinct SNPs only)

    Returns:
        GenoProbs with one chromosome per SNP chromosome, states
        ['ref', 'alt'] and one "marker" per SNP (named by snp_id)
    """
    if not allele_probs.is_allele_probs:
        raise ValueError("genoprob_to_snpprob needs founder allele probabilities")
    n_founders = allele_probs.n_states

    arrays = {}
    markers = {}
    for chrom in pd.unique(snpinfo['chr'].astype(str)):
        sub = snpinfo[snpinfo['chr'].astype(str) == chrom]
        pr = allele_probs[chrom]
        sdp = sub['sdp'].to_numpy(dtype=np.int64)
        if np.any(sdp <= 0) or np.any(sdp >= 2 ** n_founders - 1):
            raise ValueError("SDP values must lie strictly between 0 and 2^n_founders - 1")
        # (snps, founders) indicator of the alternate allele
        carriers = ((sdp[:, np.newaxis] >> np.arange(n_founders)) & 1).astype(np.float64)
        at_snp = pr[:, :, sub['marker_index'].to_numpy(dtype=int)]
        alt = np.einsum('nks,sk->ns', at_snp, carriers)
        alt = np.clip(alt, 0.0, 1.0)
        arrays[chrom] = np.stack([1.0 - alt, alt], axis=1)
        markers[chrom] = sub['snp_id'].astype(str).tolist()

    return GenoProbs(arrays, allele_probs.sample_ids, markers, ['ref', 'alt'])


def DOSCAN_Scan1SNPs(probs: GenoProbs,
                     map_data: MarkerMap,
                     pheno: Union[pd.DataFrame, pd.Series],
                     kinship: Optional[KinshipLike] = None,
                     addcovar: Optional[pd.DataFrame] = None,
                     query_func: Optional[Callable[[str, float, float], pd.DataFrame]] = None,
                     chr: Optional[str] = None,
                     start: Optional[float] = None,
                     end: Optional[float] = None,
                     snpinfo: Optional[pd.DataFrame] = None,
                     keep_all_snps: bool = True,
                     cores: int = 1,
                     verbose: bool = True) -> SnpScanResults:
    """SNP association scan in a region

    Args:
        probs: Founder allele probabilities (genotype probabilities are not accepted)
        map_data: Physical map (Mbp) aligned with ``probs``
        pheno: Phenotypes indexed by sample ID
        kinship: Kinship; for LocoKinship the matrix omitting ``chr`` is used
        addcovar: Additive covariates indexed by sample ID
        query_func: Function (chr, start, end) -> SNP table
        chr, start, end: Region to query (Mbp)
        snpinfo: SNP table to use instead of ``query_func``
        keep_all_snps: Return every SNP (True) or only one per equivalence class
        cores: Number of threads
        verbose: Print progress information

    Returns:
        SnpScanResults
    """
    if snpinfo is None:
        if query_func is None or chr is None or start is None or end is None:
            raise ValueError("Provide snpinfo, or query_func with chr, start and end")
        snpinfo = query_func(str(chr), float(start), float(end))
    if snpinfo is None or len(snpinfo) == 0:
        raise ValueError(f"No SNPs found in region chr{chr}:{start}-{end}")

    snpinfo = snpinfo.copy()
    snpinfo['chr'] = snpinfo['chr'].astype(str)
    polymorphic = (snpinfo['sdp'] > 0) & (snpinfo['sdp'] < 2 ** probs.n_states - 1)
    if not polymorphic.all():
        snpinfo = snpinfo[polymorphic]

    indexed = index_snps(map_data, snpinfo)
    distinct = indexed[indexed['index'] == indexed.index]

    if verbose:
        print(f"SNP scan: {len(indexed)} SNPs, {len(distinct)} distinct patterns")

    snp_probs = genoprob_to_snpprob(probs, distinct)

    if isinstance(kinship, LocoKinship):
        chroms = snp_probs.chromosomes
        if len(chroms) != 1:
            raise ValueError("LOCO SNP scans cover a single chromosome")
        kinship = kinship.get_loco(chroms[0])

    scan = DOSCAN_Scan1(snp_probs, pheno, kinship=kinship, addcovar=addcovar,
                        cores=cores, verbose=verbose)

    distinct_lod = scan.lod.reset_index(drop=True)
    distinct_lod.index = distinct.index

    if keep_all_snps:
        lod = distinct_lod.loc[indexed['index'].to_numpy()].reset_index(drop=True)
        lod.index = indexed['snp_id'].to_numpy()
        return SnpScanResults(lod, indexed)

    lod = distinct_lod.copy()
    lod.index = distinct['snp_id'].to_numpy()
    return SnpScanResults(lod, distinct)


def top_snps(results: SnpScanResults, column: Optional[str] = None, drop: float = 1.5) -> pd.DataFrame:
    """SNPs with LOD within ``drop`` of the maximum, sorted by decreasing LOD."""
    if column is None:
        column = results.lod.columns[0]
    df = results.to_dataframe()
    cutoff = df[column].max() - drop
    return df[df[column] >= cutoff].sort_values(column, ascending=False).reset_index(drop=True)
