"""
Kinship matrices from genotype probabilities

K_ij = sum over markers and states of p_i * p_j, divided by the number of
markers. Overall, leave-one-chromosome-out (LOCO) and per-chromosome versions
are built from the same per-chromosome cross-products.
"""

from typing import Dict, List, Optional, Union, Tuple
import multiprocessing
import warnings
import numpy as np
from joblib import Parallel, delayed

from ..utils.data_types import GenoProbs, KinshipMatrix

KINSHIP_TYPES = ('overall', 'loco', 'chr')

X_CHROMOSOMES = ('X', 'x', '20')


class LocoKinship:
    """Container for LOCO kinship computations and cached eigendecompositions."""

    def __init__(self,
                 total_raw: np.ndarray,
                 total_markers: int,
                 chrom_raw: Dict[str, np.ndarray],
                 chrom_markers: Dict[str, int],
                 chrom_order: List[str],
                 sample_ids: List[str]):
        self._total_raw = total_raw
        self._total_markers = total_markers
        self._chrom_raw = chrom_raw
        self._chrom_markers = chrom_markers
        self._chrom_order = list(chrom_order)
        self.sample_ids = list(sample_ids)

        self._loco_cache: Dict[str, KinshipMatrix] = {}
        self._eigen_cache: Dict[str, Dict[str, np.ndarray]] = {}
        self._full_cache: Optional[KinshipMatrix] = None

    @property
    def chromosomes(self) -> List[str]:
        """Chromosome labels in the order they appeared."""
        return list(self._chrom_order)

    def _normalize(self, raw: np.ndarray, n_markers: int, label: str) -> KinshipMatrix:
        kin = (raw + raw.T) / 2.0
        if n_markers > 0:
            kin = kin / n_markers
        else:
            warnings.warn(f"No markers left for {label}; kinship is all zeros")
        return KinshipMatrix(kin, sample_ids=self.sample_ids)

    def get_full(self) -> KinshipMatrix:
        """Return the full (non-LOCO) kinship matrix."""
        if self._full_cache is None:
            self._full_cache = self._normalize(self._total_raw, self._total_markers, "full")
        return self._full_cache

    def get_loco(self, chrom: Union[str, int]) -> KinshipMatrix:
        """Return the kinship matrix that omits one chromosome."""
        chrom_key = str(chrom)
        if chrom_key in self._loco_cache:
            return self._loco_cache[chrom_key]
        if chrom_key not in self._chrom_raw:
            raise KeyError(f"Chromosome {chrom_key} not found in LOCO kinship")

        raw_loco = self._total_raw - self._chrom_raw[chrom_key]
        n_loco = self._total_markers - self._chrom_markers[chrom_key]
        kin = self._normalize(raw_loco, n_loco, f"loco:{chrom_key}")
        self._loco_cache[chrom_key] = kin
        return kin

    def get_eigen(self, chrom: Union[str, int]) -> Dict[str, np.ndarray]:
        """Return cached eigendecomposition for a LOCO kinship matrix."""
        chrom_key = str(chrom)
        if chrom_key in self._eigen_cache:
            return self._eigen_cache[chrom_key]

        eigenvals, eigenvecs = self.get_loco(chrom_key).eigendecomposition()
        eigen = {"eigenvals": eigenvals, "eigenvecs": eigenvecs}
        self._eigen_cache[chrom_key] = eigen
        return eigen


def _compute_chrom_kinship(chrom: str,
                           probs: np.ndarray,
                           maxLine: int) -> Tuple[str, np.ndarray, int]:
    """Sum of P_m P_m' over the markers of one chromosome.

    Designed to be called in parallel.

    Returns:
        Tuple of (chrom, raw cross-product sum, number of markers)
    """
    n_samples, n_states, n_markers = probs.shape
    raw = np.zeros((n_samples, n_samples), dtype=np.float64)

    for start in range(0, n_markers, maxLine):
        end = min(start + maxLine, n_markers)
        # (n, states, b) -> (n, b * states); cross-product sums over markers and states
        block = probs[:, :, start:end].transpose(0, 2, 1).reshape(n_samples, -1)
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            raw += block @ block.T

    return chrom, raw, n_markers


def DOSCAN_Kinship(probs: GenoProbs,
                   type: str = 'overall',
                   omit_x: bool = False,
                   maxLine: int = 500,
                   cores: int = 1,
                   verbose: bool = True) -> Union[KinshipMatrix, LocoKinship, Dict[str, KinshipMatrix]]:
    """Kinship matrix from genotype (or allele) probabilities

    Args:
        probs: Genotype probabilities split by chromosome
        type: 'overall' (one matrix), 'loco' (LocoKinship) or 'chr'
              (dict of per-chromosome matrices)
        omit_x: Leave the X chromosome out of the overall kinship
        maxLine: Markers per cross-product block
        cores: Number of worker processes for per-chromosome computation
               (0 means all available cores)
        verbose: Print progress information

    Returns:
        KinshipMatrix, LocoKinship or dict of KinshipMatrix, all indexed by
        ``probs.sample_ids``
    """
    if not isinstance(probs, GenoProbs):
        raise ValueError("probs must be GenoProbs")
    if type not in KINSHIP_TYPES:
        raise ValueError(f"Unknown kinship type '{type}'; choose from {KINSHIP_TYPES}")

    chrom_order = probs.chromosomes
    n_chroms = len(chrom_order)

    if verbose:
        n_markers = sum(probs.n_markers.values())
        print(f"Calculating {type} kinship for {probs.n_samples} samples, "
              f"{n_markers} markers on {n_chroms} chromosomes")

    if cores == 0:
        cores = multiprocessing.cpu_count()

    if cores > 1 and n_chroms > 1:
        if verbose:
            print(f"Using parallel processing with {min(cores, n_chroms)} workers")
        results = Parallel(n_jobs=min(cores, n_chroms), backend='loky')(
            delayed(_compute_chrom_kinship)(chrom, probs[chrom], maxLine)
            for chrom in chrom_order
        )
    else:
        results = []
        for chrom in chrom_order:
            if verbose:
                print(f"Processing chromosome {chrom} ({probs.n_markers[chrom]} markers)")
            results.append(_compute_chrom_kinship(chrom, probs[chrom], maxLine))

    raw_by_chrom: Dict[str, np.ndarray] = {}
    markers_by_chrom: Dict[str, int] = {}
    for chrom, raw, n_markers in results:
        raw_by_chrom[chrom] = (raw + raw.T) / 2.0
        markers_by_chrom[chrom] = n_markers

    if type == 'chr':
        return {
            chrom: KinshipMatrix(raw_by_chrom[chrom] / max(markers_by_chrom[chrom], 1),
                                 sample_ids=probs.sample_ids)
            for chrom in chrom_order
        }

    in_total = [c for c in chrom_order if not (omit_x and c in X_CHROMOSOMES)]
    total_raw = np.zeros((probs.n_samples, probs.n_samples), dtype=np.float64)
    total_markers = 0
    for chrom in in_total:
        total_raw += raw_by_chrom[chrom]
        total_markers += markers_by_chrom[chrom]

    # Chromosomes left out of the total are not subtracted again for LOCO
    zeros = np.zeros_like(total_raw)
    loco = LocoKinship(
        total_raw=total_raw,
        total_markers=total_markers,
        chrom_raw={c: raw_by_chrom[c] if c in in_total else zeros for c in chrom_order},
        chrom_markers={c: markers_by_chrom[c] if c in in_total else 0 for c in chrom_order},
        chrom_order=chrom_order,
        sample_ids=probs.sample_ids,
    )

    if type == 'loco':
        return loco

    kinship = loco.get_full()
    if verbose:
        print(f"Kinship matrix computation complete. Mean diagonal: {np.mean(np.diag(kinship.to_numpy())):.6f}")
    return kinship
