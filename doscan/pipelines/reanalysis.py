"""
Reanalysis Pipeline Module

Runs the Gatti et al. (2014) neutrophil reanalysis end to end: load the
phenotype table and each genotype probability source, convert them to scan
inputs, check sample order, compute kinship, run genome and SNP association
scans per source, then compare the sources and render the report.
"""

import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import pandas as pd

from ..data.loaders import load_phenotype_file, load_genoprobs, load_marker_map
from ..data.io_utils import save_scan_results, validate_input_files
from ..data.converters import (
    check_sample_order, split_flat_probs, genoprob_to_alleleprob,
    map_to_lists, build_covariates, build_phenotype,
)
from ..utils.data_types import GenoProbs, MarkerMap, ScanResults, SnpScanResults, KinshipMatrix
from ..matrix.kinship import DOSCAN_Kinship, LocoKinship
from ..association.scan import DOSCAN_Scan1, max_scan1, lod_int
from ..association.snpscan import DOSCAN_Scan1SNPs, create_variant_query_func
from ..visualization.report import (
    DOSCAN_Report, summarize_scans, compare_chromosome_maxima, kinship_correlation,
)


@dataclass
class ReportConfig:
    """Inputs and options for one reanalysis run"""
    phenotype_file: str
    doqtl_probs: str
    doqtl_map: str
    output_dir: str = "./doscan_report"
    alt_probs: Optional[str] = None
    alt_gmap: Optional[str] = None
    alt_pmap: Optional[str] = None
    snp_db: Optional[str] = None
    doqtl_label: str = "DOQTL"
    alt_label: str = "qtl2"
    id_column: Optional[str] = None
    sex_column: str = "Sex"
    wbc_column: str = "WBC"
    neut_column: str = "NEUT"
    kinship_type: str = "loco"
    snp_chr: Optional[str] = None
    snp_start: Optional[float] = None
    snp_end: Optional[float] = None
    lod_drop: float = 1.5
    cores: int = 1
    save_lod: bool = False
    verbose: bool = True


class ReanalysisPipeline:
    """
    Pipeline comparing genome scans across genotype probability sources.

    Typical workflow:
        1. Initialize with a ReportConfig
        2. Load phenotypes, probabilities and maps
        3. Convert to allele probabilities, per-chromosome maps, covariates
        4. Check that every source lists samples in phenotype order
        5. Compute kinship and run genome scans per source
        6. Run SNP association in the peak region
        7. Compare sources and write report.md with figures

    Attributes:
        phenotype_df (DataFrame): Phenotype table indexed by sample ID
        covariates (DataFrame): Additive covariates (sex, log10_wbc)
        phenotype (DataFrame): Scanned phenotype (log10_neut)
        probs (dict): Source label -> founder allele probabilities
        gmaps / pmaps (dict): Source label -> genetic / physical MarkerMap
        kinships (dict): Source label -> KinshipMatrix or LocoKinship
        scans (dict): Source label -> ScanResults
        snp_scans (dict): Source label -> SnpScanResults
        region (tuple): (chr, start, end) of the SNP scan in Mbp

    Example:
        >>> config = ReportConfig(phenotype_file='pheno.csv',
        ...                       doqtl_probs='doqtl_probs.h5',
        ...                       doqtl_map='markers.h5')
        >>> ReanalysisPipeline(config).run()
    """

    def __init__(self, config: ReportConfig):
        self.config = config
        self.output_dir = Path(config.output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.verbose = config.verbose

        # Loaded data
        self.phenotype_df: Optional[pd.DataFrame] = None
        self._raw_probs: Dict[str, Any] = {}
        self._raw_maps: Dict[str, Tuple[pd.DataFrame, pd.DataFrame]] = {}

        # Scan inputs
        self.covariates: Optional[pd.DataFrame] = None
        self.phenotype: Optional[pd.DataFrame] = None
        self.probs: Dict[str, GenoProbs] = {}
        self.gmaps: Dict[str, MarkerMap] = {}
        self.pmaps: Dict[str, MarkerMap] = {}

        # Results
        self.kinships: Dict[str, Union[KinshipMatrix, LocoKinship]] = {}
        self.scans: Dict[str, ScanResults] = {}
        self.snp_scans: Dict[str, SnpScanResults] = {}
        self.region: Optional[Tuple[str, float, float]] = None
        self.comparison: Dict[str, Any] = {}
        self.report: Optional[Dict] = None

    def log(self, message: str):
        """Internal logger"""
        if self.verbose:
            print(message)

    def log_step(self, step_name: str, start_time: Optional[float] = None):
        """Log a pipeline step with optional timing"""
        if start_time is not None:
            elapsed = time.time() - start_time
            self.log(f"{step_name} completed in {elapsed:.2f} seconds")
        else:
            self.log(f"{step_name}...")

    @property
    def sources(self):
        return list(self._raw_probs.keys())

    def load_data(self):
        """Load the phenotype table and every probability source with its maps."""
        cfg = self.config
        step_start = time.time()
        self.log_step("Step 1: Loading input data")

        check = validate_input_files(
            phenotype=cfg.phenotype_file, doqtl_probs=cfg.doqtl_probs, doqtl_map=cfg.doqtl_map,
            alt_probs=cfg.alt_probs, alt_gmap=cfg.alt_gmap, alt_pmap=cfg.alt_pmap, snp_db=cfg.snp_db,
        )
        if not check['valid']:
            raise FileNotFoundError("; ".join(check['errors']))
        if cfg.alt_probs is not None and cfg.alt_gmap is None:
            raise ValueError("Alternate probabilities need a genetic map (alt_gmap)")

        self.phenotype_df = load_phenotype_file(cfg.phenotype_file, id_column=cfg.id_column,
                                                verbose=self.verbose)
        self.log(f"   Loaded {len(self.phenotype_df)} mice with {self.phenotype_df.shape[1]} columns")

        self.log(f"   {cfg.doqtl_label} probabilities: {cfg.doqtl_probs}")
        self._raw_probs[cfg.doqtl_label] = load_genoprobs(cfg.doqtl_probs, verbose=self.verbose)
        doqtl_map = load_marker_map(cfg.doqtl_map, verbose=self.verbose)
        self._raw_maps[cfg.doqtl_label] = (doqtl_map, doqtl_map)

        if cfg.alt_probs is not None:
            self.log(f"   {cfg.alt_label} probabilities: {cfg.alt_probs}")
            self._raw_probs[cfg.alt_label] = load_genoprobs(cfg.alt_probs, verbose=self.verbose)
            gmap = load_marker_map(cfg.alt_gmap, pos_units='cM', verbose=self.verbose)
            pmap = (load_marker_map(cfg.alt_pmap, pos_units='Mbp', verbose=self.verbose)
                    if cfg.alt_pmap is not None else gmap)
            self._raw_maps[cfg.alt_label] = (gmap, pmap)

        self.log_step("Data loading", step_start)

    def prepare_inputs(self):
        """Convert loaded objects to allele probabilities, maps, covariates and phenotype."""
        if self.phenotype_df is None:
            raise ValueError("Must call load_data() first")
        cfg = self.config
        step_start = time.time()
        self.log_step("Step 2: Converting inputs")

        self.covariates = build_covariates(self.phenotype_df, sex_column=cfg.sex_column,
                                           wbc_column=cfg.wbc_column)
        self.phenotype = build_phenotype(self.phenotype_df, neut_column=cfg.neut_column)
        n_complete = int(self.phenotype.join(self.covariates).notna().all(axis=1).sum())
        self.log(f"   Covariates: {list(self.covariates.columns)}; "
                 f"{n_complete} mice with complete phenotype and covariates")

        for label, raw in self._raw_probs.items():
            gmap_df, pmap_df = self._raw_maps[label]
            gcol = 'cM' if 'cM' in gmap_df.columns else 'Mbp'

            if isinstance(raw, GenoProbs):
                probs = raw
            else:
                probs = split_flat_probs(raw['probs'], raw['samples'], raw['markers'], gmap_df,
                                         pos_column=gcol, states=raw['states'], verbose=self.verbose)

            if not probs.is_allele_probs:
                self.log(f"   {label}: collapsing {probs.n_states} genotypes to founder alleles")
            probs = genoprob_to_alleleprob(probs)

            if 'Mbp' not in pmap_df.columns:
                raise ValueError(f"{label}: physical map has no Mbp positions")
            self.probs[label] = probs
            self.gmaps[label] = map_to_lists(gmap_df, pos_column=gcol, probs=probs)
            self.pmaps[label] = map_to_lists(pmap_df, pos_column='Mbp', probs=probs)
            self.log(f"   {label}: {probs.n_samples} mice, {probs.n_states} alleles, "
                     f"{sum(probs.n_markers.values())} markers on {len(probs.chromosomes)} chromosomes")

        self.log_step("Input conversion", step_start)

    def check_alignment(self):
        """Require every source to list samples in phenotype table order.

        Raises:
            SampleOrderError: if any source differs; nothing downstream runs
        """
        if not self.probs or self.phenotype is None:
            raise ValueError("Must call prepare_inputs() first")
        self.log_step("Step 3: Checking sample order")
        for label, probs in self.probs.items():
            check_sample_order(probs.sample_ids, self.phenotype.index,
                               label=f"{label} probabilities")
            self.log(f"   {label}: {probs.n_samples} samples in phenotype order")
        if not self.covariates.index.equals(self.phenotype.index):
            raise ValueError("Covariate and phenotype rows are not aligned")

    def compute_kinship(self):
        """Kinship per probability source."""
        if not self.probs:
            raise ValueError("Must call prepare_inputs() first")
        cfg = self.config
        step_start = time.time()
        self.log_step(f"Step 4: Computing {cfg.kinship_type} kinship")
        for label, probs in self.probs.items():
            self.kinships[label] = DOSCAN_Kinship(probs, type=cfg.kinship_type,
                                                  cores=cfg.cores, verbose=self.verbose)
        self.log_step("Kinship", step_start)

    def run_scans(self):
        """Genome scan of log10 neutrophil count per probability source."""
        if not self.kinships:
            raise ValueError("Must call compute_kinship() first")
        cfg = self.config
        step_start = time.time()
        self.log_step("Step 5: Running genome scans")
        for label, probs in self.probs.items():
            self.log(f"   {label}")
            results = DOSCAN_Scan1(probs, self.phenotype, kinship=self.kinships[label],
                                   addcovar=self.covariates, cores=cfg.cores, verbose=self.verbose)
            self.scans[label] = results
            if cfg.save_lod:
                path = self.output_dir / f"lod_{label}.tsv"
                save_scan_results(results, path, map_data=self.gmaps[label])
                self.log(f"   Saved LOD scores to {path}")
        self.log_step("Genome scans", step_start)

    def _snp_region(self) -> Tuple[str, float, float]:
        cfg = self.config
        if cfg.snp_chr is not None and cfg.snp_start is not None and cfg.snp_end is not None:
            return str(cfg.snp_chr), float(cfg.snp_start), float(cfg.snp_end)

        # Default: LOD support interval around the first source's peak
        label = self.sources[0]
        results, pmap = self.scans[label], self.pmaps[label]
        chrom = str(cfg.snp_chr) if cfg.snp_chr is not None else max_scan1(results, pmap)['chr']
        ci_lo, _, ci_hi = lod_int(results, pmap, chrom, drop=cfg.lod_drop)
        start = float(cfg.snp_start) if cfg.snp_start is not None else ci_lo
        end = float(cfg.snp_end) if cfg.snp_end is not None else ci_hi
        return chrom, start, end

    def run_snp_scans(self):
        """SNP association in one region per probability source."""
        cfg = self.config
        if cfg.snp_db is None:
            self.log("Step 6: No SNP database supplied; skipping SNP association")
            return
        if not self.scans:
            raise ValueError("Must call run_scans() first")
        step_start = time.time()
        self.region = self._snp_region()
        chrom, start, end = self.region
        self.log_step(f"Step 6: SNP association on chr {chrom}, {start:.2f} to {end:.2f} Mbp")

        query_variants = create_variant_query_func(cfg.snp_db)
        snpinfo = query_variants(chrom, start, end)
        if snpinfo.empty:
            raise ValueError(f"No SNPs in {cfg.snp_db} for chr {chrom}:{start}-{end}")
        self.log(f"   {len(snpinfo)} SNPs in region")

        for label, probs in self.probs.items():
            if chrom not in probs:
                raise KeyError(f"{label} probabilities have no chromosome {chrom}")
            self.snp_scans[label] = DOSCAN_Scan1SNPs(
                probs.subset_chromosomes([chrom]), self.pmaps[label], self.phenotype,
                kinship=self.kinships[label], addcovar=self.covariates,
                snpinfo=snpinfo, cores=cfg.cores, verbose=self.verbose,
            )
        self.log_step("SNP association", step_start)

    def compare(self):
        """Inline LOD and kinship comparisons between sources."""
        if not self.scans:
            raise ValueError("Must call run_scans() first")
        self.log_step("Step 7: Comparing sources")
        column = self.phenotype.columns[0]
        summary = summarize_scans(self.scans, self.gmaps, column, drop=self.config.lod_drop)
        self.comparison = {
            'summary': summary,
            'chromosome_maxima': compare_chromosome_maxima(self.scans, column),
            'kinship_correlation': None,
        }
        for _, row in summary.iterrows():
            self.log(f"   {row['source']}: max LOD {row['lod']:.2f} at {row['marker']} "
                     f"(chr {row['chr']}, {row['pos']:.2f})")
        if len(self.kinships) >= 2:
            names = list(self.kinships)
            corr = kinship_correlation(self.kinships[names[0]], self.kinships[names[1]])
            self.comparison['kinship_correlation'] = corr
            self.log(f"   Kinship correlation (off-diagonal): {corr['off_diagonal']:.4f}")

    def render(self):
        """Write report.md and the comparison figures."""
        if not self.scans:
            raise ValueError("Must call run_scans() first")
        self.log_step("Step 8: Rendering report")
        self.report = DOSCAN_Report(
            self.scans, self.gmaps, self.output_dir,
            column=self.phenotype.columns[0],
            snp_scans=self.snp_scans or None,
            kinships=self.kinships,
            region=self.region,
            lod_drop=self.config.lod_drop,
            n_samples=len(self.phenotype),
            verbose=self.verbose,
        )
        return self.report

    def run(self) -> Dict:
        """Run every step in order and return the report dictionary."""
        total_start = time.time()
        self.load_data()
        self.prepare_inputs()
        self.check_alignment()
        self.compute_kinship()
        self.run_scans()
        self.run_snp_scans()
        self.compare()
        report = self.render()
        self.log_step("Reanalysis", total_start)
        return report
