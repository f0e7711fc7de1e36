"""
Markdown report comparing genome scans across genotype probability sources
"""

from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

from ..utils.data_types import (
    ScanResults, SnpScanResults, MarkerMap, KinshipMatrix, natural_sort_key
)
from ..matrix.kinship import LocoKinship
from ..association.scan import max_scan1, lod_int
from ..association.snpscan import top_snps
from .plots import create_stacked_scan_plot, create_stacked_snpasso_plot

SCAN_FIGURE = 'scan_comparison.png'
SNPASSO_FIGURE = 'snpasso_comparison.png'
REPORT_FILE = 'report.md'


def _full_kinship(kinship: Union[KinshipMatrix, LocoKinship]) -> KinshipMatrix:
    if isinstance(kinship, LocoKinship):
        return kinship.get_full()
    return kinship


def kinship_correlation(kinship_a: Union[KinshipMatrix, LocoKinship],
                        kinship_b: Union[KinshipMatrix, LocoKinship]) -> Dict[str, float]:
    """Correlation between two kinship matrices over their shared samples

    Returns:
        Dict with 'n_samples', 'diagonal' (correlation of self-kinship) and
        'off_diagonal' (correlation of the upper triangles)
    """
    a = _full_kinship(kinship_a)
    b = _full_kinship(kinship_b)
    shared = [s for s in a.sample_ids if s in set(b.sample_ids)]
    if len(shared) < 3:
        raise ValueError("Kinship matrices share fewer than 3 samples")
    ka = a.subset(shared).to_numpy()
    kb = b.subset(shared).to_numpy()
    upper = np.triu_indices(len(shared), k=1)
    return {
        'n_samples': len(shared),
        'diagonal': float(np.corrcoef(np.diag(ka), np.diag(kb))[0, 1]),
        'off_diagonal': float(np.corrcoef(ka[upper], kb[upper])[0, 1]),
    }


def summarize_scans(scans: Dict[str, ScanResults],
                    maps: Dict[str, MarkerMap],
                    column: str,
                    drop: float = 1.5) -> pd.DataFrame:
    """Genome-wide peak per source with its LOD support interval and heritability"""
    rows = []
    for name, results in scans.items():
        peak = max_scan1(results, maps[name], column=column)
        ci_lo, _, ci_hi = lod_int(results, maps[name], peak['chr'], column=column, drop=drop)
        hsq = np.nan
        if results.hsq is not None and column in results.hsq.columns:
            key = peak['chr'] if peak['chr'] in results.hsq.index else results.hsq.index[0]
            hsq = float(results.hsq.loc[key, column])
        rows.append({
            'source': name,
            'marker': peak['marker'],
            'chr': peak['chr'],
            'pos': peak['pos'],
            'ci_lo': ci_lo,
            'ci_hi': ci_hi,
            'lod': peak['lod'],
            'hsq': hsq,
        })
    return pd.DataFrame(rows, columns=['source', 'marker', 'chr', 'pos', 'ci_lo', 'ci_hi', 'lod', 'hsq'])


def compare_chromosome_maxima(scans: Dict[str, ScanResults], column: str) -> pd.DataFrame:
    """Maximum LOD per chromosome (rows) and source (columns)"""
    table = {}
    for name, results in scans.items():
        lod = pd.Series(results.lod[column].to_numpy(), index=results.chromosomes)
        table[name] = lod.groupby(level=0).max()
    df = pd.DataFrame(table)
    df = df.loc[sorted(df.index, key=natural_sort_key)]
    df.index.name = 'chr'
    if len(scans) == 2:
        first, second = list(scans)
        df['difference'] = df[second] - df[first]
    return df


def _markdown_table(df: pd.DataFrame, float_format: str = '{:.2f}', index: bool = False) -> str:
    if index:
        df = df.reset_index()
    header = '| ' + ' | '.join(str(c) for c in df.columns) + ' |'
    rule = '|' + '|'.join(['---'] * len(df.columns)) + '|'
    lines = [header, rule]
    for _, row in df.iterrows():
        cells = []
        for value in row:
            if isinstance(value, (float, np.floating)):
                cells.append('NA' if np.isnan(value) else float_format.format(value))
            else:
                cells.append(str(value))
        lines.append('| ' + ' | '.join(cells) + ' |')
    return '\n'.join(lines)


def _scan_narrative(summary: pd.DataFrame, units: Dict[str, str], drop: float = 1.5) -> List[str]:
    lines = []
    for _, row in summary.iterrows():
        unit = units.get(row['source'], '')
        lines.append(
            f"Using the {row['source']} probabilities, the maximum LOD score is "
            f"{row['lod']:.2f} at marker {row['marker']} on chromosome {row['chr']} "
            f"({row['pos']:.2f} {unit}; {drop:g}-LOD interval {row['ci_lo']:.2f} to {row['ci_hi']:.2f})."
        )
    if len(summary) == 2:
        a, b = summary.iloc[0], summary.iloc[1]
        same = 'the same chromosome' if a['chr'] == b['chr'] else 'different chromosomes'
        lines.append(
            f"The two peaks fall on {same}; the LOD difference "
            f"({b['source']} minus {a['source']}) is {b['lod'] - a['lod']:.2f}."
        )
    return lines


def DOSCAN_Report(scans: Dict[str, ScanResults],
                  maps: Dict[str, MarkerMap],
                  output_dir: Union[str, Path],
                  column: Optional[str] = None,
                  snp_scans: Optional[Dict[str, SnpScanResults]] = None,
                  kinships: Optional[Dict[str, Union[KinshipMatrix, LocoKinship]]] = None,
                  region: Optional[Tuple[str, float, float]] = None,
                  lod_drop: float = 1.5,
                  n_samples: Optional[int] = None,
                  title: str = "Reanalysis of Gatti et al. (2014) DO neutrophil counts",
                  dpi: int = 150,
                  verbose: bool = True) -> Dict:
    """Write stacked comparison figures and a Markdown report

    Args:
        scans: Source name -> genome scan results
        maps: Source name -> map the scan positions are reported on
        output_dir: Directory for report.md and figures
        column: Phenotype column (default: first column of the first scan)
        snp_scans: Source name -> SNP association results for the region
        kinships: Source name -> kinship used for that source
        region: (chr, start, end) of the SNP scan, in Mbp
        lod_drop: LOD drop defining the support interval and the top SNPs
        n_samples: Number of mice in the analysis
        title: Report title
        dpi: Figure resolution
        verbose: Print progress information

    Returns:
        Dictionary with 'summary', 'chromosome_maxima', 'kinship_correlation',
        'top_snps' and 'files_created'
    """
    if not scans:
        raise ValueError("No scan results to report")
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    if column is None:
        column = next(iter(scans.values())).phenotypes[0]

    if verbose:
        print("Generating reanalysis report...")

    report = {'files_created': []}

    fig = create_stacked_scan_plot(scans, maps, column=column)
    scan_path = output_dir / SCAN_FIGURE
    fig.savefig(scan_path, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    report['files_created'].append(str(scan_path))

    summary = summarize_scans(scans, maps, column, drop=lod_drop)
    maxima = compare_chromosome_maxima(scans, column)
    report['summary'] = summary
    report['chromosome_maxima'] = maxima

    lines = [f"# {title}", ""]
    if n_samples is not None:
        lines += [f"Analysis of {column} in {n_samples} Diversity Outbred mice, "
                  f"with sex and log10 WBC as additive covariates.", ""]

    lines += ["## Genome scans", "", f"![Genome scans]({SCAN_FIGURE})", ""]
    lines += _scan_narrative(summary, {name: maps[name].units for name in scans}, drop=lod_drop)
    lines += ["", _markdown_table(summary), ""]
    lines += ["### Maximum LOD by chromosome", "", _markdown_table(maxima, index=True), ""]

    if kinships and len(kinships) >= 2:
        names = list(kinships)
        corr = kinship_correlation(kinships[names[0]], kinships[names[1]])
        report['kinship_correlation'] = corr
        lines += [
            "## Kinship",
            "",
            f"Across {corr['n_samples']} shared mice, the {names[0]} and {names[1]} kinship "
            f"matrices have correlation {corr['off_diagonal']:.4f} between off-diagonal "
            f"elements and {corr['diagonal']:.4f} between diagonal elements.",
            "",
        ]
    else:
        report['kinship_correlation'] = None

    report['top_snps'] = {}
    if snp_scans:
        fig = create_stacked_snpasso_plot(snp_scans, column=column, drop_hilit=lod_drop)
        snp_path = output_dir / SNPASSO_FIGURE
        fig.savefig(snp_path, dpi=dpi, bbox_inches='tight')
        plt.close(fig)
        report['files_created'].append(str(snp_path))

        heading = "## SNP association"
        if region is not None:
            heading += f" (chr {region[0]}, {region[1]:.2f} to {region[2]:.2f} Mbp)"
        lines += [heading, "", f"![SNP association]({SNPASSO_FIGURE})", ""]
        for name, snp_results in snp_scans.items():
            if snp_results.n_snps == 0:
                lines += [f"No SNPs were tested with the {name} probabilities.", ""]
                continue
            top = top_snps(snp_results, column=column, drop=lod_drop)
            report['top_snps'][name] = top
            best = top.iloc[0]
            lines += [
                f"With the {name} probabilities, {snp_results.n_snps} SNPs were tested; "
                f"the top SNP is {best['snp_id']} at {best['pos']:.3f} Mbp "
                f"(LOD {best[column]:.2f}), with {len(top)} SNPs within {lod_drop:g} LOD of it.",
                "",
            ]
            shown = top[['snp_id', 'chr', 'pos', 'sdp', column]].head(10)
            lines += [_markdown_table(shown, float_format='{:.3f}'), ""]

    report_path = output_dir / REPORT_FILE
    report_path.write_text('\n'.join(lines) + '\n')
    report['files_created'].append(str(report_path))

    if verbose:
        print(f"Report written to {report_path}")

    return report
