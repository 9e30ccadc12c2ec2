"""Command-line interface for FlashLFQ.

Label-free quantification of identified peptides and proteins from MS1 data.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import yaml

from . import __version__
from .data_io import load_experimental_design, load_identifications
from .engine import EngineConfig, FlashLfqEngine
from .results import FlashLfqResults

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
    )


def load_config(config_path: Path | None) -> dict:
    """Load configuration from YAML file or return defaults."""
    defaults = {
        'quantification': {
            'ppm_tolerance': 10.0,
            'num_isotopes_required': 2,
            'missed_scans_allowed': 2,
            'peak_split_discrimination_factor': 0.6,
            'min_envelopes_to_split': 5,
            'peak_merge_rt_window': 0.05,
            'integrate': False,
            'max_threads': -1,
        },
        'match_between_runs': {
            'enabled': False,
            'rt_window': 1.0,
            'ppm_tolerance': 10.0,
            'min_anchor_peptides': 1,
            'local_alignment_window': None,
            'require_msms_id_in_condition': False,
        },
        'normalization': {
            'enabled': False,
        },
        'protein_quant': {
            'method': 'top_n',  # 'top_n' or 'weighted'
            'top_n': 3,
            'aggregation': 'sum',
            'use_shared_peptides': False,
        },
        'output': {
            'format': 'tsv',
            'prefix': None,
        },
    }

    if config_path and config_path.exists():
        with open(config_path) as f:
            user_config = yaml.safe_load(f) or {}
        # Deep merge user config over defaults
        defaults = _deep_merge(defaults, user_config)

    return defaults


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge override dict into base dict."""
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def engine_config_from_dict(config: dict, silent: bool = False) -> EngineConfig:
    """Map the sectioned YAML configuration onto EngineConfig."""
    quant = config['quantification']
    mbr = config['match_between_runs']
    protein = config['protein_quant']

    method = protein.get('method', 'top_n')
    if method not in ('top_n', 'weighted'):
        raise ValueError(f"Unknown protein_quant method: {method}. Use 'top_n' or 'weighted'")

    return EngineConfig(
        ppm_tolerance=quant['ppm_tolerance'],
        num_isotopes_required=quant['num_isotopes_required'],
        missed_scans_allowed=quant['missed_scans_allowed'],
        peak_split_discrimination_factor=quant['peak_split_discrimination_factor'],
        min_envelopes_to_split=quant['min_envelopes_to_split'],
        peak_merge_rt_window=quant['peak_merge_rt_window'],
        integrate=quant['integrate'],
        max_threads=quant['max_threads'],
        match_between_runs=mbr['enabled'],
        mbr_rt_window=mbr['rt_window'],
        mbr_ppm_tolerance=mbr['ppm_tolerance'],
        mbr_min_anchor_peptides=mbr['min_anchor_peptides'],
        mbr_local_alignment_window=mbr['local_alignment_window'],
        require_msms_id_in_condition=mbr['require_msms_id_in_condition'],
        normalize=config['normalization']['enabled'],
        advanced_protein_quant=method == 'weighted',
        top_n=protein['top_n'],
        top_n_aggregation=protein['aggregation'],
        use_shared_peptides=protein['use_shared_peptides'],
        silent=silent,
    )


def generate_run_metadata(
    config: EngineConfig,
    results: FlashLfqResults,
    input_files: list[str],
) -> dict:
    """Provenance record written next to the result tables."""
    ambiguous = results.ambiguous_peak_counts()
    return {
        'version': __version__,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'spectra_files': [
            {
                'path': f.full_path,
                'condition': f.condition,
                'biorep': f.biological_replicate,
                'fraction': f.fraction,
                'techrep': f.technical_replicate,
                'n_peaks': len(results.peaks.get(f, [])),
                'n_ambiguous_peaks': ambiguous[f],
            }
            for f in results.spectra_files
        ],
        'n_peptides': len(results.peptide_modified_sequences),
        'n_protein_groups': len(results.protein_groups),
        'parameters': config.to_dict(),
    }


def cmd_run(args: argparse.Namespace) -> int:
    """Quantify identifications against their spectra files."""
    config = load_config(Path(args.config) if args.config else None)

    # Command-line switches override the configuration file
    if args.mbr:
        config['match_between_runs']['enabled'] = True
    if args.normalize:
        config['normalization']['enabled'] = True
    if args.threads is not None:
        config['quantification']['max_threads'] = args.threads

    engine_config = engine_config_from_dict(config, silent=args.silent)

    design_path = Path(args.design)
    spectra_dir = Path(args.spectra_dir) if args.spectra_dir else design_path.parent
    spectra_files = load_experimental_design(design_path, spectra_dir)
    identifications = load_identifications(Path(args.identifications), spectra_files)

    engine = FlashLfqEngine(identifications, config=engine_config)
    results = engine.run()

    output_dir = Path(args.output_dir)
    written = results.write_results(
        output_dir,
        output_format=config['output']['format'],
        prefix=config['output']['prefix'],
    )

    metadata = generate_run_metadata(
        engine_config, results, [str(args.identifications), str(design_path)]
    )
    metadata_path = output_dir / 'run_metadata.json'
    with open(metadata_path, 'w') as f:
        json.dump(metadata, f, indent=2)

    logger.info(f"Results written to {output_dir}")
    for name, path in written.items():
        logger.info(f"  {name}: {path.name}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog='flash-lfq',
        description='FlashLFQ: label-free quantification of identified peptides\n\n'
                    'Primary usage:\n'
                    '  flash-lfq run -i ids.tsv -d ExperimentalDesign.tsv -o output_dir/ -c config.yaml',
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    run_parser = subparsers.add_parser(
        'run',
        help='Quantify peptides and proteins',
        description='Find chromatographic peaks for every identification, optionally recover '
                    'peaks between runs and normalize, then write peak, peptide and protein tables.'
    )
    run_parser.add_argument('-i', '--identifications', required=True,
                            help='Tab-separated identification table')
    run_parser.add_argument('-d', '--design', required=True,
                            help='Experimental design TSV (FileName, Condition, Biorep, Fraction, Techrep)')
    run_parser.add_argument('-s', '--spectra-dir',
                            help='Directory with mzML files (defaults to the design file directory)')
    run_parser.add_argument('-o', '--output-dir', required=True,
                            help='Output directory for results')
    run_parser.add_argument('-c', '--config', help='Configuration YAML file')
    run_parser.add_argument('--mbr', action='store_true', help='Enable match-between-runs')
    run_parser.add_argument('--normalize', action='store_true', help='Enable normalization')
    run_parser.add_argument('--threads', type=int, help='Maximum worker threads (-1 = all cores)')
    run_parser.add_argument('--silent', action='store_true', help='Only log warnings and errors from the engine')

    args = parser.parse_args(argv)

    setup_logging(args.verbose)

    if args.command == 'run':
        return cmd_run(args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
