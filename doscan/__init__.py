"""
doscan: genome scans of Diversity Outbred mice from genotype probabilities

Reanalysis of the Gatti et al. (2014) neutrophil data, comparing kinship,
genome scans and SNP association between two genotype probability sources.
"""

__version__ = "0.1.0"

from .matrix.kinship import DOSCAN_Kinship
from .association.scan import DOSCAN_Scan1
from .association.snpscan import DOSCAN_Scan1SNPs
from .visualization.report import DOSCAN_Report
from .pipelines.reanalysis import ReanalysisPipeline, ReportConfig

__all__ = [
    'DOSCAN_Kinship',
    'DOSCAN_Scan1',
    'DOSCAN_Scan1SNPs',
    'DOSCAN_Report',
    'ReanalysisPipeline',
    'ReportConfig',
]
