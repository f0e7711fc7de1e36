"""
Genome scan and SNP association methods
"""

from .scan import DOSCAN_Scan1
from .snpscan import DOSCAN_Scan1SNPs

__all__ = ['DOSCAN_Scan1', 'DOSCAN_Scan1SNPs']
