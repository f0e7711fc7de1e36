"""
File I/O utilities for doscan package
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Union, Tuple, Optional, Dict, List, Any
import h5py

from ..utils.data_types import GenoProbs, ScanResults, MarkerMap


def _decode_strings(values) -> List[str]:
    """Decode an HDF5 string dataset (bytes or str) to a list of str"""
    out = []
    for v in np.asarray(values).ravel():
        if isinstance(v, bytes):
            out.append(v.decode('utf-8'))
        else:
            out.append(str(v))
    return out


def _read_string_field(container, name: str) -> Optional[List[str]]:
    """Read a string list stored either as a dataset or as an attribute"""
    if isinstance(container, h5py.Group) and name in container:
        return _decode_strings(container[name][()])
    if name in container.attrs:
        return _decode_strings(container.attrs[name])
    return None


def read_genoprobs_h5(file_path: Union[str, Path]) -> Tuple[Any, Dict[str, Any]]:
    """Read genotype probabilities from HDF5

    Two layouts are recognized:

    * flat: dataset ``probs`` of shape (n_samples, n_states, n_markers) with
      ``samples`` and ``markers`` datasets, optional ``states`` and ``chr``.
    * grouped: group ``probs`` with one dataset per chromosome, each of shape
      (n_samples, n_states, n_markers_chr) and a ``markers`` attribute or
      sibling group ``markers/<chr>``; top-level ``samples`` and ``states``.

    Returns:
        Tuple of (GenoProbs for grouped files or raw array for flat files,
        metadata dict with 'layout', 'samples', 'markers', 'states', 'chr')
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Genotype probability file not found: {file_path}")

    with h5py.File(file_path, 'r') as f:
        if 'probs' not in f:
            raise ValueError(f"No 'probs' entry in {file_path}")

        samples = _read_string_field(f, 'samples')
        if samples is None:
            raise ValueError(f"No 'samples' entry in {file_path}")
        states = _read_string_field(f, 'states')

        if isinstance(f['probs'], h5py.Dataset):
            probs = f['probs'][()]
            markers = _read_string_field(f, 'markers')
            if markers is None:
                raise ValueError(f"No 'markers' entry in {file_path}")
            chroms = _read_string_field(f, 'chr')
            metadata = {
                'layout': 'flat',
                'samples': samples,
                'markers': markers,
                'states': states,
                'chr': chroms,
            }
            return probs, metadata

        group = f['probs']
        chrom_order = _read_string_field(f, 'chromosomes') or list(group.keys())
        arrays: Dict[str, np.ndarray] = {}
        marker_ids: Dict[str, List[str]] = {}
        for chrom in chrom_order:
            dset = group[chrom]
            arrays[chrom] = dset[()]
            markers = _read_string_field(dset, 'markers')
            if markers is None and 'markers' in f and isinstance(f['markers'], h5py.Group):
                markers = _read_string_field(f['markers'], chrom)
            if markers is None:
                raise ValueError(f"No marker IDs for chromosome {chrom} in {file_path}")
            marker_ids[chrom] = markers

    metadata = {
        'layout': 'grouped',
        'samples': samples,
        'markers': marker_ids,
        'states': states,
        'chr': chrom_order,
    }
    return GenoProbs(arrays, samples, marker_ids, states), metadata


def write_genoprobs_h5(probs: GenoProbs, file_path: Union[str, Path],
                       compression: Optional[str] = 'gzip') -> str:
    """Write genotype probabilities in the grouped HDF5 layout"""
    file_path = Path(file_path)
    str_dtype = h5py.string_dtype(encoding='utf-8')

    with h5py.File(file_path, 'w') as f:
        f.create_dataset('samples', data=np.asarray(probs.sample_ids, dtype=object), dtype=str_dtype)
        f.create_dataset('states', data=np.asarray(probs.states, dtype=object), dtype=str_dtype)
        f.create_dataset('chromosomes', data=np.asarray(probs.chromosomes, dtype=object), dtype=str_dtype)
        group = f.create_group('probs')
        marker_group = f.create_group('markers')
        for chrom, arr in probs.items():
            group.create_dataset(chrom, data=arr, compression=compression, chunks=True)
            marker_group.create_dataset(
                chrom, data=np.asarray(probs.markers(chrom), dtype=object), dtype=str_dtype
            )

    return str(file_path)


def write_flat_genoprobs_h5(probs: np.ndarray, sample_ids: List[str], marker_ids: List[str],
                            file_path: Union[str, Path], states: Optional[List[str]] = None,
                            chromosomes: Optional[List[str]] = None) -> str:
    """Write a single (n_samples, n_states, n_markers) array in the flat layout"""
    file_path = Path(file_path)
    str_dtype = h5py.string_dtype(encoding='utf-8')

    with h5py.File(file_path, 'w') as f:
        f.create_dataset('probs', data=probs, compression='gzip', chunks=True)
        f.create_dataset('samples', data=np.asarray(sample_ids, dtype=object), dtype=str_dtype)
        f.create_dataset('markers', data=np.asarray(marker_ids, dtype=object), dtype=str_dtype)
        if states is not None:
            f.create_dataset('states', data=np.asarray(states, dtype=object), dtype=str_dtype)
        if chromosomes is not None:
            f.create_dataset('chr', data=np.asarray(chromosomes, dtype=object), dtype=str_dtype)

    return str(file_path)


def save_scan_results(results: ScanResults, output_file: Union[str, Path],
                      map_data: Optional[MarkerMap] = None) -> str:
    """Save LOD scores to a tab-delimited file"""
    output_file = Path(output_file)
    df = results.to_dataframe(map_data)
    df.to_csv(output_file, sep='\t', index=False)
    return str(output_file)


def load_scan_results(file_path: Union[str, Path]) -> pd.DataFrame:
    """Load LOD scores written by save_scan_results"""
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Results file not found: {file_path}")

    return pd.read_csv(file_path, sep='\t')


def validate_input_files(**paths: Optional[Union[str, Path]]) -> dict:
    """Check that input files exist

    Returns dictionary with validation results
    """
    results = {'valid': True, 'errors': []}

    for label, path in paths.items():
        if path is None:
            continue
        if not Path(path).exists():
            results['valid'] = False
            results['errors'].append(f"{label} file not found: {path}")

    return results
