#!/usr/bin/env python3
"""
Command line entry point for the reanalysis report
"""
from typing import List, Optional

from .utils import parse_args
from ..pipelines.reanalysis import ReanalysisPipeline, ReportConfig


def config_from_args(args) -> ReportConfig:
    """Map parsed command line options onto a ReportConfig"""
    return ReportConfig(
        phenotype_file=args.phenotype,
        doqtl_probs=args.doqtl_probs,
        doqtl_map=args.doqtl_map,
        output_dir=args.outputdir,
        alt_probs=args.alt_probs,
        alt_gmap=args.alt_gmap,
        alt_pmap=args.alt_pmap,
        alt_label=args.alt_label,
        snp_db=args.snp_db,
        id_column=args.id_column,
        sex_column=args.sex_column,
        wbc_column=args.wbc_column,
        neut_column=args.neut_column,
        kinship_type=args.kinship_type,
        snp_chr=args.chr,
        snp_start=args.start,
        snp_end=args.end,
        lod_drop=args.lod_drop,
        cores=args.cores,
        save_lod=args.save_lod,
        verbose=not args.quiet,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    pipeline = ReanalysisPipeline(config_from_args(args))
    report = pipeline.run()

    if not args.quiet:
        print("\nFiles created:")
        for path in report['files_created']:
            print(f"   {path}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
