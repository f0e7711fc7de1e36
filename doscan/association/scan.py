"""
Linear mixed model genome scan with genotype probabilities

For each phenotype the model is

    y = X*beta + P*alpha + u + e

where X holds an intercept and additive covariates, P the genotype (or
founder allele) probabilities at one marker, u ~ N(0, sigma_g^2 * K) the
polygenic effect and e ~ N(0, sigma_e^2 * I) the residual. The heritability
h2 = sigma_g^2 / (sigma_g^2 + sigma_e^2) is estimated once under the null
model (no marker) and held fixed across markers, so each marker needs only a
weighted least-squares fit in the kinship eigenspace:

    LOD = n/2 * log10(RSS0 / RSS1)
"""

import multiprocessing
import time
import warnings
from typing import Optional, Union, Dict, Tuple, List

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import optimize

from ..utils.data_types import GenoProbs, KinshipMatrix, ScanResults, MarkerMap
from ..matrix.kinship import LocoKinship

KinshipLike = Union[KinshipMatrix, LocoKinship, np.ndarray]


def _calculate_neg_reml_likelihood(h2: float, y: np.ndarray, X: np.ndarray, eigenvals: np.ndarray) -> float:
    """Calculate REML NEGATIVE log-likelihood for a given heritability h2

    Args:
        h2: Heritability (variance explained by kinship)
        y: Transformed phenotype vector (U'y)
        X: Transformed covariate matrix (U'X)
        eigenvals: Eigenvalues of kinship matrix

    Returns:
        Negative REML log-likelihood (to minimize)
    """
    n = len(y)
    p = X.shape[1]

    eig_safe = np.maximum(eigenvals, 1e-6)

    # Variance matrix in eigenspace: h2 * lambda + (1 - h2)
    V0b = h2 * eig_safe + (1.0 - h2)
    if np.any(V0b <= 0):
        return np.inf
    V0bi = 1.0 / V0b

    ViX = V0bi[:, np.newaxis] * X
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        XViX = X.T @ ViX

    try:
        XViX_inv = np.linalg.solve(XViX, np.eye(XViX.shape[0]))
        sign, log_det_XViX = np.linalg.slogdet(XViX)
    except (np.linalg.LinAlgError, ValueError):
        return np.inf
    if sign <= 0:
        return np.inf

    # REML residuals: P0y = V^-1 y - V^-1 X (X'V^-1 X)^-1 X'V^-1 y
    Viy = V0bi * y
    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        P0y = Viy - ViX @ (XViX_inv @ (ViX.T @ y))
    yP0y = float(np.dot(P0y, y))
    if yP0y <= 0:
        return np.inf

    df = n - p
    neg_loglik = 0.5 * (np.sum(np.log(V0b)) + log_det_XViX +
                        df * np.log(yP0y) + df * (1.0 - np.log(df)))
    return neg_loglik


def _calculate_neg_ml_likelihood(h2: float, y: np.ndarray, X: np.ndarray, eigenvals: np.ndarray) -> float:
    """Calculate ML NEGATIVE log-likelihood for a given heritability h2

    This profiles out beta and sigma^2; constants cancel in likelihood ratios.
    """
    n = len(y)
    eig_safe = np.maximum(eigenvals, 1e-6)

    V0b = h2 * eig_safe + (1.0 - h2)
    if np.any(V0b <= 0):
        return np.inf
    V0bi = 1.0 / V0b

    ViX = V0bi[:, np.newaxis] * X
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        XViX = X.T @ ViX

    try:
        XViX_inv = np.linalg.solve(XViX, np.eye(XViX.shape[0]))
    except (np.linalg.LinAlgError, ValueError):
        return np.inf

    Viy = V0bi * y
    with np.errstate(divide="ignore", invalid="ignore", over="ignore"):
        P0y = Viy - ViX @ (XViX_inv @ (ViX.T @ y))
    yP0y = float(np.dot(P0y, y))
    if yP0y <= 0:
        return np.inf

    return 0.5 * (np.sum(np.log(V0b)) + n * np.log(yP0y / max(1, n)))


def estimate_heritability(y: np.ndarray,
                          X: np.ndarray,
                          eigenvals: np.ndarray,
                          reml: bool = True,
                          verbose: bool = False) -> float:
    """Heritability under the null model by bounded Brent optimization

    Args:
        y: Transformed phenotype vector (MUST be in eigenspace U'y)
        X: Transformed covariate matrix (MUST be in eigenspace U'X)
        eigenvals: Eigenvalues of kinship matrix
        reml: Use REML (default) rather than ML likelihood
        verbose: Print optimization progress

    Returns:
        h2 in [0, 1]
    """
    objective = _calculate_neg_reml_likelihood if reml else _calculate_neg_ml_likelihood

    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        result = optimize.minimize_scalar(
            lambda h2: objective(h2, y, X, eigenvals),
            bounds=(0.0, 1.0),
            method='bounded',
            options={'xatol': 1.22e-4, 'maxiter': 500},
        )

    if result.success and np.isfinite(result.fun):
        h2_hat = float(result.x)
    else:
        h2_hat = 0.5
        warnings.warn(f"Heritability optimization did not converge ({result.message}); using h2 = 0.5")

    if verbose:
        print(f"Brent optimization: h2 = {h2_hat:.6f}, neg-log-likelihood = {result.fun:.6f}")

    return h2_hat


def _weighted_null(y: np.ndarray,
                   X0: np.ndarray,
                   eigen: Optional[Tuple[np.ndarray, np.ndarray]],
                   reml: bool) -> Dict[str, np.ndarray]:
    """Rotate and weight the null model; returns what every marker fit needs."""
    n = len(y)
    if eigen is None:
        return {
            'h2': np.nan,
            'U': None,
            'sqrt_w': np.ones(n),
            'y_w': y.copy(),
            'X_w': X0.copy(),
        }

    eigenvals, eigenvecs = eigen
    y_t = eigenvecs.T @ y
    X_t = eigenvecs.T @ X0
    h2 = estimate_heritability(y_t, X_t, eigenvals, reml=reml)
    weights = 1.0 / (h2 * np.maximum(eigenvals, 1e-6) + (1.0 - h2))
    sqrt_w = np.sqrt(weights)
    return {
        'h2': h2,
        'U': eigenvecs,
        'sqrt_w': sqrt_w,
        'y_w': y_t * sqrt_w,
        'X_w': X_t * sqrt_w[:, np.newaxis],
    }


def _scan_chromosome(chrom: str,
                     probs: np.ndarray,
                     null: Dict[str, np.ndarray],
                     maxLine: int) -> Tuple[str, np.ndarray]:
    """LOD score at every marker of one chromosome.

    ``probs`` is (n, states, m) restricted to the samples used for ``null``.
    """
    n_samples, n_states, n_markers = probs.shape
    U = null['U']
    sqrt_w = null['sqrt_w']

    # Project the null design out of y and of every marker's probabilities
    Q, _ = np.linalg.qr(null['X_w'])
    y_r = null['y_w'] - Q @ (Q.T @ null['y_w'])
    rss0 = float(y_r @ y_r)

    lod = np.zeros(n_markers, dtype=np.float64)
    if rss0 <= 0:
        return chrom, lod

    for start in range(0, n_markers, maxLine):
        end = min(start + maxLine, n_markers)
        b = end - start
        flat = probs[:, :, start:end].transpose(0, 2, 1).reshape(n_samples, b * n_states)
        with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
            if U is not None:
                flat = U.T @ flat
            flat = flat * sqrt_w[:, np.newaxis]
            flat = flat - Q @ (Q.T @ flat)
        G = flat.reshape(n_samples, b, n_states)

        for j in range(b):
            Gj = G[:, j, :]
            beta, _, _, _ = np.linalg.lstsq(Gj, y_r, rcond=None)
            resid = y_r - Gj @ beta
            rss1 = max(float(resid @ resid), np.finfo(float).tiny)
            lod[start + j] = 0.5 * n_samples * np.log10(rss0 / rss1)

    np.maximum(lod, 0.0, out=lod)
    return chrom, lod


def _kinship_ids(kinship: KinshipLike, probs: GenoProbs) -> Optional[List[str]]:
    if kinship is None:
        return None
    if isinstance(kinship, (KinshipMatrix, LocoKinship)):
        return list(kinship.sample_ids)
    if isinstance(kinship, np.ndarray):
        if kinship.shape != (probs.n_samples, probs.n_samples):
            raise ValueError("Kinship array dimensions must match the number of samples in probs")
        return list(probs.sample_ids)
    raise ValueError("Kinship must be KinshipMatrix, LocoKinship or numpy array")


def _kinship_for(kinship: KinshipLike, chrom: Optional[str], ids: List[str],
                 probs: GenoProbs) -> Optional[Tuple[np.ndarray, np.ndarray]]:
    """Eigendecomposition of the kinship relevant to ``chrom``, restricted to ``ids``."""
    if kinship is None:
        return None
    if isinstance(kinship, LocoKinship):
        if list(ids) == kinship.sample_ids:
            eigen = kinship.get_eigen(chrom)
            return eigen['eigenvals'], eigen['eigenvecs']
        return kinship.get_loco(chrom).subset(ids).eigendecomposition()
    if isinstance(kinship, np.ndarray):
        kinship = KinshipMatrix(kinship, sample_ids=probs.sample_ids)
    return kinship.subset(ids).eigendecomposition()


def _align_samples(probs: GenoProbs, pheno: pd.DataFrame,
                   addcovar: Optional[pd.DataFrame],
                   kinship_ids: Optional[List[str]]) -> List[str]:
    """Sample IDs common to all inputs, in probabilities order."""
    keep = set(pheno.index.astype(str))
    if addcovar is not None:
        keep &= set(addcovar.index.astype(str))
    if kinship_ids is not None:
        keep &= set(kinship_ids)
    ids = [s for s in probs.sample_ids if s in keep]
    if not ids:
        raise ValueError("No samples in common between genotype probabilities, phenotypes and covariates")
    return ids


def DOSCAN_Scan1(probs: GenoProbs,
                 pheno: Union[pd.DataFrame, pd.Series],
                 kinship: Optional[KinshipLike] = None,
                 addcovar: Optional[pd.DataFrame] = None,
                 reml: bool = True,
                 maxLine: int = 200,
                 cores: int = 1,
                 verbose: bool = True) -> ScanResults:
    """Genome scan with a single-QTL linear mixed model

    Args:
        probs: Genotype or allele probabilities split by chromosome
        pheno: Phenotypes indexed by sample ID (one column per trait)
        kinship: KinshipMatrix (one matrix for all chromosomes), LocoKinship
                 (chromosome-specific matrices) or None for ordinary least squares
        addcovar: Additive covariates indexed by sample ID
        reml: Estimate heritability by REML (otherwise ML)
        maxLine: Markers per block
        cores: Number of threads for per-chromosome scans (0 means all cores)
        verbose: Print progress information

    Returns:
        ScanResults with one LOD column per phenotype
    """
    if isinstance(pheno, pd.Series):
        pheno = pheno.to_frame(name=pheno.name or 'pheno')
    if not isinstance(pheno, pd.DataFrame):
        raise ValueError("Phenotypes must be a DataFrame indexed by sample ID")
    pheno = pheno.copy()
    pheno.index = pheno.index.astype(str)
    if addcovar is not None:
        addcovar = addcovar.copy()
        addcovar.index = addcovar.index.astype(str)

    if cores == 0:
        cores = multiprocessing.cpu_count()

    ids = _align_samples(probs, pheno, addcovar, _kinship_ids(kinship, probs))
    position = {sid: i for i, sid in enumerate(probs.sample_ids)}
    chrom_order = probs.chromosomes
    is_loco = isinstance(kinship, LocoKinship)

    if verbose:
        mode = "LOCO kinship" if is_loco else ("kinship" if kinship is not None else "no kinship")
        print(f"Genome scan: {len(ids)} samples, {pheno.shape[1]} phenotypes, "
              f"{sum(probs.n_markers.values())} markers ({mode})")

    start_time = time.time()
    lod_columns: Dict[str, np.ndarray] = {}
    hsq_rows: Dict[str, Dict[str, float]] = {}

    for column in pheno.columns:
        y_all = pd.to_numeric(pheno.loc[ids, column], errors='coerce')
        complete = y_all.notna()
        if addcovar is not None:
            complete &= addcovar.loc[ids].notna().all(axis=1)
        used = [sid for sid, ok in zip(ids, complete.values) if ok]
        if len(used) < 3:
            raise ValueError(f"Phenotype '{column}' has fewer than 3 complete observations")

        y = y_all.loc[used].to_numpy(dtype=np.float64)
        X0 = np.ones((len(used), 1))
        if addcovar is not None:
            X0 = np.column_stack([X0, addcovar.loc[used].to_numpy(dtype=np.float64)])

        idx = np.array([position[sid] for sid in used], dtype=int)

        if is_loco:
            nulls = {chrom: _weighted_null(y, X0, _kinship_for(kinship, chrom, used, probs), reml)
                     for chrom in chrom_order}
        else:
            shared = _weighted_null(y, X0, _kinship_for(kinship, None, used, probs), reml)
            nulls = {chrom: shared for chrom in chrom_order}

        if cores > 1 and len(chrom_order) > 1:
            results = Parallel(n_jobs=min(cores, len(chrom_order)), backend='threading')(
                delayed(_scan_chromosome)(chrom, probs[chrom][idx], nulls[chrom], maxLine)
                for chrom in chrom_order
            )
        else:
            results = [_scan_chromosome(chrom, probs[chrom][idx], nulls[chrom], maxLine)
                       for chrom in chrom_order]

        by_chrom = dict(results)
        lod_columns[column] = np.concatenate([by_chrom[c] for c in chrom_order])
        hsq_rows[column] = {c: nulls[c]['h2'] for c in chrom_order} if is_loco else {'all': nulls[chrom_order[0]]['h2']}

        if verbose:
            h2_text = ", ".join(f"{v:.3f}" for v in list(hsq_rows[column].values())[:3])
            print(f"  {column}: n = {len(used)}, max LOD = {np.max(lod_columns[column]):.2f}, h2 = {h2_text}"
                  + (" ..." if len(hsq_rows[column]) > 3 else ""))

    marker_index = probs.all_markers()
    chromosomes = np.concatenate([[c] * probs.n_markers[c] for c in chrom_order])
    lod = pd.DataFrame(lod_columns, index=pd.Index(marker_index, name='marker'))
    hsq = pd.DataFrame(hsq_rows)

    if verbose:
        print(f"Genome scan complete in {time.time() - start_time:.2f} seconds")

    return ScanResults(lod, chromosomes, hsq=hsq)


def _positions(results: ScanResults, map_data: MarkerMap) -> np.ndarray:
    pos = map_data.data.drop_duplicates(subset=['marker']).set_index('marker')['pos']
    values = pos.reindex(results.lod.index.astype(str)).to_numpy(dtype=np.float64)
    if np.isnan(values).any():
        raise ValueError("Map does not cover every scanned marker")
    return values


def _resolve_column(results: ScanResults, column: Optional[str]) -> str:
    if column is None:
        return results.phenotypes[0]
    if column not in results.lod.columns:
        raise KeyError(f"Phenotype '{column}' not found in scan results")
    return column


def maxlod(results: ScanResults, column: Optional[str] = None) -> float:
    """Maximum LOD score over the genome (for one phenotype, or all)."""
    if column is None:
        return float(np.nanmax(results.lod.to_numpy()))
    return float(np.nanmax(results.lod[_resolve_column(results, column)].to_numpy()))


def max_scan1(results: ScanResults, map_data: MarkerMap,
              chr: Optional[str] = None, column: Optional[str] = None) -> Dict[str, object]:
    """Marker with the maximum LOD score, genome-wide or on one chromosome.

    Returns:
        Dict with 'marker', 'chr', 'pos', 'lod'
    """
    column = _resolve_column(results, column)
    lod = results.lod[column].to_numpy()
    pos = _positions(results, map_data)
    mask = np.ones(len(lod), dtype=bool) if chr is None else results.chromosomes == str(chr)
    if not mask.any():
        raise KeyError(f"Chromosome {chr} not found in scan results")
    candidates = np.where(mask)[0]
    best = candidates[np.nanargmax(lod[candidates])]
    return {
        'marker': str(results.lod.index[best]),
        'chr': str(results.chromosomes[best]),
        'pos': float(pos[best]),
        'lod': float(lod[best]),
    }


def lod_int(results: ScanResults, map_data: MarkerMap, chr: str,
            column: Optional[str] = None, drop: float = 1.5) -> Tuple[float, float, float]:
    """LOD support interval around the peak on one chromosome.

    Returns:
        Tuple of (ci_lo, peak position, ci_hi); the interval is the contiguous
        run of markers around the peak with LOD >= max - drop.
    """
    column = _resolve_column(results, column)
    mask = results.chromosomes == str(chr)
    if not mask.any():
        raise KeyError(f"Chromosome {chr} not found in scan results")
    pos = _positions(results, map_data)[mask]
    lod = results.lod[column].to_numpy()[mask]
    order = np.argsort(pos, kind='mergesort')
    pos, lod = pos[order], lod[order]

    peak = int(np.nanargmax(lod))
    cutoff = lod[peak] - drop
    lo = peak
    while lo > 0 and lod[lo - 1] >= cutoff:
        lo -= 1
    hi = peak
    while hi < len(lod) - 1 and lod[hi + 1] >= cutoff:
        hi += 1
    return float(pos[lo]), float(pos[peak]), float(pos[hi])


def find_peaks(results: ScanResults, map_data: MarkerMap,
               threshold: float = 3.0, drop: Optional[float] = None) -> pd.DataFrame:
    """Highest peak per chromosome and phenotype with LOD >= threshold

    Args:
        results: Genome scan results
        map_data: Marker map used to report positions
        threshold: Minimum LOD to report a peak
        drop: If given, add LOD support interval columns ci_lo / ci_hi

    Returns:
        DataFrame with columns lodcolumn, chr, marker, pos, lod [, ci_lo, ci_hi]
    """
    rows = []
    for column in results.phenotypes:
        for chrom in pd.unique(results.chromosomes):
            peak = max_scan1(results, map_data, chr=chrom, column=column)
            if peak['lod'] < threshold:
                continue
            row = {'lodcolumn': column, **peak}
            if drop is not None:
                ci_lo, _, ci_hi = lod_int(results, map_data, chrom, column=column, drop=drop)
                row['ci_lo'] = ci_lo
                row['ci_hi'] = ci_hi
            rows.append(row)

    columns = ['lodcolumn', 'chr', 'marker', 'pos', 'lod'] + (['ci_lo', 'ci_hi'] if drop is not None else [])
    return pd.DataFrame(rows, columns=columns)
