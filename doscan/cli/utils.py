import argparse
from typing import List, Optional

from ..matrix.kinship import KINSHIP_TYPES

SCAN_KINSHIP_TYPES = tuple(t for t in KINSHIP_TYPES if t != 'chr')


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments for the reanalysis report"""
    parser = argparse.ArgumentParser(
        description="Compare DO genome scans across genotype probability sources",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    # Required arguments
    parser.add_argument("--phenotype", "-p", required=True,
                       help="Phenotype file (CSV/TSV with sample ID, sex, WBC and NEUT columns)")
    parser.add_argument("--doqtl-probs", required=True,
                       help="DOQTL genotype probabilities (HDF5 or NPZ)")
    parser.add_argument("--doqtl-map", required=True,
                       help="Marker map for the DOQTL probabilities (pandas HDF5 store or CSV/TSV)")

    # Alternate probability source
    parser.add_argument("--alt-probs", default=None,
                       help="Alternate genotype probabilities (HDF5, one array per chromosome)")
    parser.add_argument("--alt-gmap", default=None,
                       help="Genetic map (cM) for the alternate probabilities")
    parser.add_argument("--alt-pmap", default=None,
                       help="Physical map (Mbp) for the alternate probabilities")
    parser.add_argument("--alt-label", default="qtl2",
                       help="Name of the alternate source in plots and report")

    # SNP association
    parser.add_argument("--snp-db", default=None,
                       help="SQLite SNP database for SNP association")
    parser.add_argument("--chr", default=None,
                       help="Chromosome for SNP association (default: peak chromosome)")
    parser.add_argument("--start", type=float, default=None,
                       help="Start of SNP region in Mbp (default: LOD interval)")
    parser.add_argument("--end", type=float, default=None,
                       help="End of SNP region in Mbp (default: LOD interval)")
    parser.add_argument("--lod-drop", type=float, default=1.5,
                       help="LOD drop defining the support interval")

    # Output
    parser.add_argument("--outputdir", "-o", default="./doscan_report",
                       help="Output directory")
    parser.add_argument("--save-lod", action='store_true',
                       help="Also write LOD scores per source as TSV")

    # Options
    parser.add_argument("--kinship-type", default="loco", choices=list(SCAN_KINSHIP_TYPES),
                       help="Kinship used in the scans")
    parser.add_argument("--cores", type=int, default=1,
                       help="Worker count for kinship and scans (0 = all cores)")
    parser.add_argument("--id-column", default=None,
                       help="Column name for sample IDs in phenotype file (auto-detected when omitted)")
    parser.add_argument("--sex-column", default="Sex",
                       help="Column holding sex (M/F)")
    parser.add_argument("--wbc-column", default="WBC",
                       help="Column holding white blood cell count")
    parser.add_argument("--neut-column", default="NEUT",
                       help="Column holding neutrophil count")
    parser.add_argument("--quiet", "-q", action='store_true',
                       help="Suppress progress output")

    return parser.parse_args(argv)
