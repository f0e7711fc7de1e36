"""
Data loading utilities for phenotypes, genotype probabilities and marker maps
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import Union, Optional, List, Dict
import warnings

from ..utils.data_types import GenoProbs
from .io_utils import read_genoprobs_h5

NA_VALUES = [
    '', 'NA', 'NaN', 'nan', 'NAN', 'na', 'N/A', 'n/a', 'Null', 'NULL',
    '.', '-', '--'
]

POSSIBLE_ID_COLUMNS = [
    'Sample', 'sample', 'Sample.ID', 'SampleID', 'sample_id',
    'ID', 'id', 'IID', 'Mouse.ID', 'mouse_id',
]

MAP_COLUMN_ALIASES = {
    'marker': ['marker', 'Marker', 'SNP', 'snp', 'snp_id', 'marker_id', 'SNP_ID'],
    'chr': ['chr', 'Chr', 'CHR', 'CHROM', 'chrom', 'chromosome', 'Chromosome'],
    'cM': ['cM', 'cm', 'CM', 'gmap', 'pos_cM', 'cM_pos'],
    'Mbp': ['Mbp', 'mbp', 'Mb', 'pmap', 'pos_Mbp', 'Mb_pos'],
    'bp': ['bp', 'pos_bp', 'POS', 'position', 'Position'],
}


def detect_file_format(filepath: Union[str, Path]) -> str:
    """Detect file format based on extension and content

    Args:
        filepath: Path to file

    Returns:
        Detected format: 'csv', 'tsv', 'hdf5', 'npz' or 'unknown'
    """
    filepath = Path(filepath)

    suffix = filepath.suffix.lower()
    if suffix in ['.h5', '.hdf5', '.hdf']:
        return 'hdf5'
    elif suffix == '.npz':
        return 'npz'
    elif suffix in ['.tsv', '.txt']:
        return 'tsv'
    elif suffix == '.csv':
        return 'csv'

    # Try to detect by content
    try:
        with open(filepath, 'rb') as f:
            signature = f.read(8)
        if signature == b'\x89HDF\r\n\x1a\n':
            return 'hdf5'
        if signature[:4] == b'PK\x03\x04':
            return 'npz'
        with open(filepath, 'r') as f:
            first_line = f.readline().strip()
        if '\t' in first_line and ',' not in first_line:
            return 'tsv'
        elif ',' in first_line:
            return 'csv'
        return 'unknown'
    except (OSError, UnicodeDecodeError):
        return 'unknown'


def _read_table(filepath: Path) -> pd.DataFrame:
    file_format = detect_file_format(filepath)
    read_kwargs = dict(na_values=NA_VALUES, keep_default_na=True)
    if file_format == 'csv':
        return pd.read_csv(filepath, **read_kwargs)
    elif file_format == 'tsv':
        return pd.read_csv(filepath, sep='\t', **read_kwargs)
    raise ValueError(f"Unsupported table format for {filepath}: {file_format}")


def load_phenotype_file(filepath: Union[str, Path],
                        id_column: Optional[str] = None,
                        verbose: bool = True) -> pd.DataFrame:
    """Load a phenotype table indexed by sample ID

    Args:
        filepath: Path to phenotype CSV/TSV file
        id_column: Name of ID column (if None, auto-detect)
        verbose: Print progress information

    Returns:
        DataFrame indexed by sample ID (str), all other columns as read
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Phenotype file not found: {filepath}")

    df = _read_table(filepath)

    if id_column is not None:
        if id_column not in df.columns:
            raise ValueError(f"ID column '{id_column}' not found in {filepath}")
        detected = id_column
    else:
        present_candidates = [c for c in df.columns if c in POSSIBLE_ID_COLUMNS]
        if present_candidates:
            if len(present_candidates) > 1:
                warnings.warn(
                    "Multiple potential ID columns found: {}. Selecting leftmost '{}' as ID.".format(
                        present_candidates, present_candidates[0]
                    )
                )
            detected = present_candidates[0]
        else:
            detected = df.columns[0]
            warnings.warn(
                "No recognized ID column found; using first column '{}' as ID.".format(detected)
            )

    if verbose:
        print(f"   Using ID column: '{detected}'")

    df[detected] = df[detected].astype(str)
    if df[detected].duplicated().any():
        dups = df.loc[df[detected].duplicated(), detected].unique()[:5]
        raise ValueError(f"Duplicated sample IDs in {filepath}: {list(dups)}")

    df = df.set_index(detected)
    df.index.name = 'ID'

    if verbose:
        print(f"   Loaded {len(df)} samples, {df.shape[1]} columns")
    return df


def load_genoprobs(filepath: Union[str, Path], verbose: bool = True):
    """Load genotype probabilities

    Args:
        filepath: HDF5 (.h5) or numpy archive (.npz)
        verbose: Print progress information

    Returns:
        GenoProbs when the file is split by chromosome (or carries a per-marker
        'chr' field); otherwise a dict with keys 'probs', 'samples', 'markers'
        and 'states' to be split with a marker map.
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Genotype probability file not found: {filepath}")

    file_format = detect_file_format(filepath)
    if file_format == 'hdf5':
        loaded, meta = read_genoprobs_h5(filepath)
    elif file_format == 'npz':
        with np.load(filepath, allow_pickle=False) as archive:
            for key in ('probs', 'samples', 'markers'):
                if key not in archive:
                    raise ValueError(f"No '{key}' entry in {filepath}")
            loaded = archive['probs']
            meta = {
                'layout': 'flat',
                'samples': [str(s) for s in archive['samples']],
                'markers': [str(m) for m in archive['markers']],
                'states': [str(s) for s in archive['states']] if 'states' in archive else None,
                'chr': [str(c) for c in archive['chr']] if 'chr' in archive else None,
            }
    else:
        raise ValueError(f"Unsupported genotype probability format: {file_format}")

    if meta['layout'] == 'grouped':
        if verbose:
            n_markers = sum(loaded.n_markers.values())
            print(f"   Loaded probabilities: {loaded.n_samples} samples, {loaded.n_states} states, "
                  f"{n_markers} markers on {len(loaded.chromosomes)} chromosomes")
        return loaded

    probs = np.asarray(loaded)
    if probs.ndim != 3:
        raise ValueError(f"Flat probabilities must be 3D, got shape {probs.shape}")
    if probs.shape[0] != len(meta['samples']) or probs.shape[2] != len(meta['markers']):
        raise ValueError(
            f"Probability array shape {probs.shape} does not match "
            f"{len(meta['samples'])} samples and {len(meta['markers'])} markers"
        )

    if verbose:
        print(f"   Loaded probabilities: {probs.shape[0]} samples, {probs.shape[1]} states, "
              f"{probs.shape[2]} markers")

    if meta.get('chr'):
        chroms = np.asarray(meta['chr'])
        markers = np.asarray(meta['markers'])
        arrays: Dict[str, np.ndarray] = {}
        marker_ids: Dict[str, List[str]] = {}
        for chrom in pd.unique(chroms):
            idx = np.where(chroms == chrom)[0]
            arrays[str(chrom)] = probs[:, :, idx]
            marker_ids[str(chrom)] = markers[idx].tolist()
        return GenoProbs(arrays, meta['samples'], marker_ids, meta['states'])

    return {
        'probs': probs,
        'samples': meta['samples'],
        'markers': meta['markers'],
        'states': meta['states'],
    }


def _normalize_map_columns(df: pd.DataFrame, pos_units: Optional[str] = None) -> pd.DataFrame:
    """Rename common map column aliases to marker/chr/cM/Mbp/bp"""
    if not any(c in df.columns for c in MAP_COLUMN_ALIASES['marker']):
        if not isinstance(df.index, pd.RangeIndex):
            df = df.reset_index().rename(columns={df.index.name or 'index': 'marker'})

    renames = {}
    for target, aliases in MAP_COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in df.columns:
                renames[alias] = target
                break
    df = df.rename(columns=renames)

    if pos_units is not None and 'pos' in df.columns and pos_units not in df.columns:
        df = df.rename(columns={'pos': pos_units})

    # Bare 'pos' is Mbp in the DOQTL marker files unless values look like bp
    if 'pos' in df.columns and 'Mbp' not in df.columns and 'bp' not in df.columns:
        pos = pd.to_numeric(df['pos'], errors='coerce')
        if pos.max() > 1e4:
            df['bp'] = pos
        else:
            df['Mbp'] = pos
    if 'bp' in df.columns and 'Mbp' not in df.columns:
        df['Mbp'] = pd.to_numeric(df['bp'], errors='coerce') / 1e6
    return df


def load_marker_map(filepath: Union[str, Path],
                    key: Optional[str] = None,
                    pos_units: Optional[str] = None,
                    verbose: bool = True) -> pd.DataFrame:
    """Load a marker map

    Args:
        filepath: pandas HDF5 store (.h5) or CSV/TSV file
        key: HDF5 store key (if None, the store must hold a single object)
        pos_units: Units of a bare 'pos' column ('cM', 'Mbp' or 'bp'); if None,
                   guessed as Mbp, or bp when values exceed 1e4
        verbose: Print progress information

    Returns:
        DataFrame with 'marker', 'chr' and every coordinate column found
        among 'cM', 'Mbp' ('bp' converted to Mbp)
    """
    filepath = Path(filepath)
    if not filepath.exists():
        raise FileNotFoundError(f"Map file not found: {filepath}")

    file_format = detect_file_format(filepath)
    if file_format == 'hdf5':
        df = pd.read_hdf(filepath, key=key)
    else:
        df = _read_table(filepath)

    if pos_units not in (None, 'cM', 'Mbp', 'bp'):
        raise ValueError(f"Unknown position units '{pos_units}'")
    df = _normalize_map_columns(df, pos_units=pos_units)
    for required in ('marker', 'chr'):
        if required not in df.columns:
            raise ValueError(f"Required column {required} not found in map file {filepath}")
    if 'cM' not in df.columns and 'Mbp' not in df.columns:
        raise ValueError(f"Map file {filepath} has no cM or Mbp position column")

    df['marker'] = df['marker'].astype(str)
    df['chr'] = df['chr'].astype(str).str.replace(r'^chr', '', regex=True)
    keep = ['marker', 'chr'] + [c for c in ('cM', 'Mbp') if c in df.columns]
    df = df[keep].copy()

    if df['marker'].duplicated().any():
        n_dups = int(df['marker'].duplicated().sum())
        warnings.warn(f"Dropping {n_dups} duplicated marker records from {filepath}")
        df = df.drop_duplicates(subset=['marker'], keep='first')

    if verbose:
        print(f"   Loaded map: {len(df)} markers on {df['chr'].nunique()} chromosomes "
              f"({', '.join(c for c in ('cM', 'Mbp') if c in df.columns)})")
    return df.reset_index(drop=True)
