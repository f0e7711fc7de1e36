"""
Core data structures for doscan package
"""

import re
import numpy as np
import pandas as pd
from typing import Optional, Union, Tuple, Dict, List, Sequence

DO_FOUNDERS = ['A', 'B', 'C', 'D', 'E', 'F', 'G', 'H']

DO_FOUNDER_STRAINS = [
    'A_J', 'C57BL_6J', '129S1_SvImJ', 'NOD_ShiLtJ',
    'NZO_HlLtJ', 'CAST_EiJ', 'PWK_PhJ', 'WSB_EiJ',
]


def natural_sort_key(value) -> List[Union[int, str]]:
    """Return a key for natural sorting of chromosome labels."""

    text = str(value).strip()
    if not text:
        return [""]
    parts = re.split(r'(\d+)', text)
    key: List[Union[int, str]] = []
    for part in parts:
        if part.isdigit():
            key.append(int(part))
        else:
            key.append(part.lower())
    return key


def genotype_labels(alleles: Sequence[str] = DO_FOUNDERS) -> List[str]:
    """Unphased genotype labels in the order AA, AB, BB, AC, BC, CC, ...

    For the eight DO founders this yields the 36 genotype states.
    """
    labels = []
    for j, second in enumerate(alleles):
        for first in alleles[:j + 1]:
            labels.append(f"{first}{second}")
    return labels


class GenoProbs:
    """Genotype probabilities split by chromosome

    Each chromosome holds an array of shape (n_samples, n_states, n_markers)
    where states are founder alleles (A..H) or unphased genotypes (AA, AB, ...).
    Chromosome order is the insertion order of ``probs``.
    """

    def __init__(self,
                 probs: Dict[str, np.ndarray],
                 sample_ids: Sequence[str],
                 marker_ids: Dict[str, Sequence[str]],
                 states: Optional[Sequence[str]] = None):
        if not probs:
            raise ValueError("Genotype probabilities must contain at least one chromosome")

        self.sample_ids = [str(s) for s in sample_ids]
        self._probs: Dict[str, np.ndarray] = {}
        self._markers: Dict[str, List[str]] = {}

        n_states = None
        for chrom, arr in probs.items():
            chrom = str(chrom)
            arr = np.asarray(arr, dtype=np.float64)
            if arr.ndim != 3:
                raise ValueError(f"Probabilities for chromosome {chrom} must be 3D, got {arr.ndim}D")
            if arr.shape[0] != len(self.sample_ids):
                raise ValueError(
                    f"Chromosome {chrom}: {arr.shape[0]} rows but {len(self.sample_ids)} sample IDs"
                )
            if chrom not in marker_ids:
                raise ValueError(f"No marker IDs supplied for chromosome {chrom}")
            markers = [str(m) for m in marker_ids[chrom]]
            if arr.shape[2] != len(markers):
                raise ValueError(
                    f"Chromosome {chrom}: {arr.shape[2]} markers but {len(markers)} marker IDs"
                )
            if n_states is None:
                n_states = arr.shape[1]
            elif arr.shape[1] != n_states:
                raise ValueError("All chromosomes must have the same number of genotype states")
            self._probs[chrom] = arr
            self._markers[chrom] = markers

        if states is None:
            if n_states == len(DO_FOUNDERS):
                states = list(DO_FOUNDERS)
            elif n_states == len(genotype_labels()):
                states = genotype_labels()
            else:
                states = [f"S{i + 1}" for i in range(n_states)]
        states = [str(s) for s in states]
        if len(states) != n_states:
            raise ValueError(f"Expected {n_states} state names, got {len(states)}")
        self.states = states

    @property
    def chromosomes(self) -> List[str]:
        """Chromosome labels in storage order"""
        return list(self._probs.keys())

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    @property
    def n_states(self) -> int:
        return len(self.states)

    @property
    def n_markers(self) -> Dict[str, int]:
        """Number of markers per chromosome"""
        return {chrom: arr.shape[2] for chrom, arr in self._probs.items()}

    @property
    def is_allele_probs(self) -> bool:
        """True when every state is a single founder letter"""
        return all(len(s) == 1 for s in self.states)

    def __getitem__(self, chrom) -> np.ndarray:
        chrom = str(chrom)
        if chrom not in self._probs:
            raise KeyError(f"Chromosome {chrom} not found in genotype probabilities")
        return self._probs[chrom]

    def __contains__(self, chrom) -> bool:
        return str(chrom) in self._probs

    def items(self):
        return self._probs.items()

    def markers(self, chrom) -> List[str]:
        """Marker IDs on a chromosome"""
        chrom = str(chrom)
        if chrom not in self._markers:
            raise KeyError(f"Chromosome {chrom} not found in genotype probabilities")
        return list(self._markers[chrom])

    def all_markers(self) -> List[str]:
        """Marker IDs across all chromosomes in storage order"""
        out: List[str] = []
        for chrom in self._markers:
            out.extend(self._markers[chrom])
        return out

    def subset_samples(self, indices: Union[np.ndarray, list]) -> "GenoProbs":
        """Return probabilities restricted to a subset of samples (by position)."""
        indexer = np.asarray(indices)
        if indexer.dtype != bool:
            indexer = indexer.astype(int)
        ids = list(np.asarray(self.sample_ids, dtype=object)[indexer])
        return GenoProbs(
            {chrom: arr[indexer, :, :] for chrom, arr in self._probs.items()},
            ids,
            self._markers,
            self.states,
        )

    def subset_chromosomes(self, chromosomes: Sequence) -> "GenoProbs":
        """Return probabilities restricted to the given chromosomes."""
        keep = [str(c) for c in chromosomes]
        missing = [c for c in keep if c not in self._probs]
        if missing:
            raise KeyError(f"Chromosomes not found in genotype probabilities: {missing}")
        return GenoProbs(
            {c: self._probs[c] for c in keep},
            self.sample_ids,
            {c: self._markers[c] for c in keep},
            self.states,
        )


class MarkerMap:
    """Marker positions for one coordinate system (cM or Mbp)

    Expected columns: [marker, chr, pos]
    """

    def __init__(self, data: pd.DataFrame, units: str = ''):
        if not isinstance(data, pd.DataFrame):
            raise ValueError("Data must be DataFrame")
        required_cols = ['marker', 'chr', 'pos']
        for col in required_cols:
            if col not in data.columns:
                raise ValueError(f"Missing required column: {col}")

        self.data = data[required_cols].copy()
        self.data['marker'] = self.data['marker'].astype(str)
        self.data['chr'] = self.data['chr'].astype(str)
        self.data['pos'] = pd.to_numeric(self.data['pos'], errors='raise').astype(float)
        self.data = self.data.reset_index(drop=True)
        self.units = units

    @classmethod
    def from_lists(cls, lists: Dict[str, pd.Series], units: str = '') -> "MarkerMap":
        """Build from a dict of chromosome -> Series of positions indexed by marker."""
        frames = []
        for chrom, series in lists.items():
            frames.append(pd.DataFrame({
                'marker': series.index.astype(str),
                'chr': str(chrom),
                'pos': series.values,
            }))
        return cls(pd.concat(frames, ignore_index=True), units=units)

    @property
    def chromosomes(self) -> List[str]:
        """Chromosome labels in order of first appearance"""
        return list(pd.unique(self.data['chr']))

    @property
    def n_markers(self) -> int:
        return len(self.data)

    def chrom(self, chrom) -> pd.Series:
        """Positions on one chromosome as a Series indexed by marker"""
        chrom = str(chrom)
        sub = self.data[self.data['chr'] == chrom]
        if sub.empty:
            raise KeyError(f"Chromosome {chrom} not found in marker map")
        return pd.Series(sub['pos'].values, index=sub['marker'].values, name=chrom)

    def positions_for(self, chrom, markers: Sequence[str]) -> np.ndarray:
        """Positions of the given markers on one chromosome, in the order given"""
        positions = self.chrom(chrom).reindex([str(m) for m in markers])
        if positions.isna().any():
            missing = positions.index[positions.isna()].tolist()
            raise KeyError(f"Markers not on chromosome {chrom}: {missing[:5]}")
        return positions.to_numpy(dtype=np.float64)

    def to_list(self) -> Dict[str, pd.Series]:
        """Chromosome -> positions Series indexed by marker"""
        return {chrom: self.chrom(chrom) for chrom in self.chromosomes}

    def to_dataframe(self) -> pd.DataFrame:
        return self.data.copy()


class KinshipMatrix:
    """Kinship matrix with validation and properties

    Must be a square symmetric matrix; rows and columns follow ``sample_ids``.
    """

    def __init__(self, data: np.ndarray,
                 sample_ids: Optional[Sequence[str]] = None):
        if not isinstance(data, np.ndarray):
            raise ValueError("Kinship data must be a numpy array")
        self._data = data.astype(np.float64, copy=True)

        # Validate properties
        if self._data.ndim != 2:
            raise ValueError("Kinship matrix must be 2D")
        if self._data.shape[0] != self._data.shape[1]:
            raise ValueError("Kinship matrix must be square")
        if not np.allclose(self._data, self._data.T, atol=1e-10):
            raise ValueError("Kinship matrix must be symmetric")

        self.n = self._data.shape[0]
        if sample_ids is None:
            sample_ids = [str(i) for i in range(self.n)]
        self.sample_ids = [str(s) for s in sample_ids]
        if len(self.sample_ids) != self.n:
            raise ValueError("Number of sample IDs must match kinship dimensions")

    @property
    def shape(self) -> Tuple[int, int]:
        return self._data.shape

    def __getitem__(self, key):
        return self._data[key]

    def to_numpy(self) -> np.ndarray:
        return self._data.copy()

    def to_dataframe(self) -> pd.DataFrame:
        return pd.DataFrame(self._data, index=self.sample_ids, columns=self.sample_ids)

    def subset(self, sample_ids: Sequence[str]) -> "KinshipMatrix":
        """Return the submatrix for the given sample IDs, in that order."""
        lookup = {sid: i for i, sid in enumerate(self.sample_ids)}
        missing = [s for s in sample_ids if str(s) not in lookup]
        if missing:
            raise ValueError(f"Samples missing from kinship matrix: {missing[:5]}")
        idx = np.array([lookup[str(s)] for s in sample_ids], dtype=int)
        return KinshipMatrix(self._data[np.ix_(idx, idx)], sample_ids=[str(s) for s in sample_ids])

    def eigendecomposition(self) -> Tuple[np.ndarray, np.ndarray]:
        """Eigenvalues (descending) and eigenvectors"""
        eigenvals, eigenvecs = np.linalg.eigh(self._data)
        order = np.argsort(eigenvals)[::-1]
        return eigenvals[order], eigenvecs[:, order]


class ScanResults:
    """Genome scan results

    LOD scores with one row per marker and one column per phenotype, plus the
    chromosome of each marker and the heritability estimated under the null.
    """

    def __init__(self, lod: pd.DataFrame, chromosomes: Sequence[str],
                 hsq: Optional[pd.DataFrame] = None):
        if len(chromosomes) != len(lod):
            raise ValueError("Chromosome labels must align with LOD rows")
        self.lod = lod
        self.chromosomes = np.asarray([str(c) for c in chromosomes])
        self.hsq = hsq

    @property
    def n_markers(self) -> int:
        return len(self.lod)

    @property
    def phenotypes(self) -> List[str]:
        return list(self.lod.columns)

    def subset_chromosome(self, chrom) -> pd.DataFrame:
        """LOD rows on one chromosome"""
        mask = self.chromosomes == str(chrom)
        if not mask.any():
            raise KeyError(f"Chromosome {chrom} not found in scan results")
        return self.lod.loc[mask]

    def to_dataframe(self, map_data: Optional[MarkerMap] = None) -> pd.DataFrame:
        """LOD table with marker, chr (and pos when a map is supplied)"""
        df = self.lod.copy()
        df.insert(0, 'chr', self.chromosomes)
        df.insert(0, 'marker', df.index.astype(str))
        if map_data is not None:
            pos = map_data.data.set_index('marker')['pos']
            df.insert(2, 'pos', pos.reindex(df['marker']).values)
        return df.reset_index(drop=True)


class SnpScanResults:
    """SNP association results

    ``lod`` has one row per SNP (all SNPs, or only distinct ones) and one
    column per phenotype; ``snpinfo`` holds snp_id, chr, pos, sdp and index.
    """

    def __init__(self, lod: pd.DataFrame, snpinfo: pd.DataFrame):
        if len(lod) != len(snpinfo):
            raise ValueError("SNP info must align with LOD rows")
        self.lod = lod
        self.snpinfo = snpinfo.reset_index(drop=True)

    @property
    def n_snps(self) -> int:
        return len(self.lod)

    def to_dataframe(self) -> pd.DataFrame:
        df = self.snpinfo.copy()
        for col in self.lod.columns:
            df[col] = self.lod[col].values
        return df
