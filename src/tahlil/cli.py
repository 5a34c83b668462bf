#!/usr/bin/env python3
"""
Command line interface for the expression-analysis workflow.
"""

import argparse
import logging
import sys
from pathlib import Path

import tomli
from tomli_w import dump

from tahlil.pipeline import ExpressionWorkflow
from tahlil.utils import setup_logging


def parse_args(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Run the expression-analysis workflow"
    )

    parser.add_argument(
        "config_file",
        type=str,
        help="Path to TOML configuration file"
    )

    input_group = parser.add_argument_group("Input file overrides")
    input_group.add_argument(
        "--expression",
        type=str,
        help="Override expression matrix file path"
    )
    input_group.add_argument(
        "--samples",
        type=str,
        help="Override sample annotation file path"
    )
    input_group.add_argument(
        "--features",
        type=str,
        help="Override feature annotation file path"
    )
    input_group.add_argument(
        "--gene-sets",
        type=str,
        help="Override GMT gene set file path"
    )

    output_group = parser.add_argument_group("Output configuration overrides")
    output_group.add_argument(
        "--output-dir",
        type=str,
        help="Override output directory"
    )

    analysis_group = parser.add_argument_group("Analysis parameter overrides")
    analysis_group.add_argument(
        "--method",
        choices=["ttest", "lm"],
        help="Override differential expression method"
    )
    analysis_group.add_argument(
        "--phenotype",
        type=str,
        help="Override sample annotation column defining the groups"
    )
    analysis_group.add_argument(
        "--case",
        type=str,
        help="Override case label"
    )
    analysis_group.add_argument(
        "--control",
        type=str,
        help="Override control label"
    )
    analysis_group.add_argument(
        "--n-features",
        type=int,
        help="Override number of most variable features to keep"
    )
    analysis_group.add_argument(
        "--fdr",
        type=float,
        help="Override FDR threshold"
    )
    analysis_group.add_argument(
        "--log-transform",
        action="store_true",
        help="Log2-transform the expression values first"
    )

    other_group = parser.add_argument_group("Other overrides")
    other_group.add_argument(
        "--n-clusters",
        type=int,
        help="Override number of sample clusters to cut"
    )
    other_group.add_argument(
        "--reduction",
        action="append",
        choices=["pca", "tsne", "umap"],
        help="Dimensionality reduction method (repeatable)"
    )
    other_group.add_argument(
        "--classify",
        action="store_true",
        help="Train a random forest on the phenotype"
    )
    other_group.add_argument(
        "--seed",
        type=int,
        help="Override random seed"
    )
    other_group.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging"
    )

    return parser.parse_args(argv)


def update_config(config: dict, args: argparse.Namespace) -> dict:
    """Update configuration with command line overrides."""
    for section in ('input', 'output', 'analysis', 'clustering', 'dimred', 'classification'):
        config.setdefault(section, {})

    if args.expression:
        config['input']['expression_file'] = args.expression
    if args.samples:
        config['input']['sample_file'] = args.samples
    if args.features:
        config['input']['feature_file'] = args.features
    if args.gene_sets:
        config['input']['gene_sets_file'] = args.gene_sets

    if args.output_dir:
        config['output']['directory'] = args.output_dir

    if args.method:
        config['analysis']['method'] = args.method
    if args.phenotype:
        config['analysis']['phenotype'] = args.phenotype
    if args.case:
        config['analysis']['case'] = args.case
    if args.control:
        config['analysis']['control'] = args.control
    if args.n_features:
        config['analysis']['n_features'] = args.n_features
    if args.fdr is not None:
        config['analysis']['fdr'] = args.fdr
    if args.log_transform:
        config['analysis']['log_transform'] = True

    if args.n_clusters:
        config['clustering']['n_clusters'] = args.n_clusters
    if args.reduction:
        config['dimred']['methods'] = args.reduction
    if args.classify:
        config['classification']['run'] = True
    if args.seed is not None:
        config['random_seed'] = args.seed

    return config


def main(argv=None):
    """Main entry point for the CLI."""
    args = parse_args(argv)

    try:
        with open(args.config_file, 'rb') as f:
            config = tomli.load(f)
    except (OSError, tomli.TOMLDecodeError) as e:
        print(f"Error loading configuration file: {str(e)}")
        sys.exit(1)

    config = update_config(config, args)

    output_dir = Path(config['output'].get('directory', 'results'))
    setup_logging(output_dir / 'logs', level=logging.DEBUG if args.verbose else logging.INFO)

    logging.info("Starting expression-analysis workflow")
    logging.info(f"Using configuration file: {args.config_file}")

    # The workflow reads its settings from a file, so write the overridden config next to the original
    temp_config_path = Path(args.config_file).parent / "temp_config.toml"
    with open(temp_config_path, 'wb') as f:
        dump(config, f)

    try:
        workflow = ExpressionWorkflow(str(temp_config_path))
        workflow.run()
        logging.info("Workflow execution completed successfully")
    except Exception as e:
        logging.error(f"Workflow execution failed: {str(e)}")
        sys.exit(1)
    finally:
        temp_config_path.unlink()


if __name__ == "__main__":
    main()
