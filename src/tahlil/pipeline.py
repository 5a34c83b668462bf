"""Workflow runner chaining the standard expression-analysis steps."""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional

import polars as pl

from tahlil.classify import train_random_forest
from tahlil.clustering import cluster_expression, compare_clusterings, cut_clusters
from tahlil.config import WorkflowConfig
from tahlil.data import (
    load_expression_set,
    load_gene_sets,
    log2_transform,
    variation_filter,
)
from tahlil.diffanalysis import fit_gene_lm, resolve_contrast, split_signature, ttest_genes
from tahlil.dimred import reduce_dimensions
from tahlil.stats import hyper_enrichment, ks_enrichment
from tahlil.utils import clean_for_json, ensure_dir

_EFFECT_COLUMNS = {
    'ttest': 'log_fc',
    'lm': 'coef',
}


class ExpressionWorkflow:
    """Main class for running the expression-analysis workflow."""

    def __init__(self, config_path: str):
        """Initialise the workflow with a configuration file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config = WorkflowConfig(config_path)
        self.logger = logging.getLogger(__name__)
        self.results: Dict[str, Any] = {}
        self._load_input_data()

    def _load_input_data(self):
        """Load and validate input data files."""
        self.logger.debug("Starting to load input data files")

        for file_key, file_path in self.config.input_files.items():
            if isinstance(file_path, (str, bytes, os.PathLike)) and not Path(file_path).is_file():
                error_msg = f"Input file not found: {file_path} (specified as {file_key})"
                self.logger.error(error_msg)
                raise FileNotFoundError(error_msg)

        self.eset = load_expression_set(
            self.config.input_files['expression_file'],
            self.config.input_files['sample_file'],
            self.config.input_files.get('feature_file')
        )

        if self.config.gene_sets_file:
            self.gene_sets = load_gene_sets(self.config.gene_sets_file)
        else:
            self.gene_sets = None

        self.logger.info(f"Loaded {self.eset}")
        if self.gene_sets is not None:
            self.logger.info(f"Loaded {len(self.gene_sets)} gene sets")

        self.logger.debug("Finished loading input data files")

    def run(self):
        """Run every configured workflow step and save the results."""
        self.logger.info("Starting expression-analysis workflow")
        start_time = time.time()

        analysis = self.config.analysis_params
        enrichment = self.config.enrichment_params
        seed = self.config.random_seed

        # Step 1: Preprocessing
        self.logger.info("Step 1: Preprocessing")
        eset = self.eset
        if analysis['log_transform']:
            eset = log2_transform(eset, pseudocount=analysis['pseudocount'])
        if analysis['n_features'] is not None or analysis['min_expression'] is not None:
            eset = variation_filter(
                eset,
                score=analysis['filter_score'],
                n_features=analysis['n_features'],
                min_expression=analysis['min_expression']
            )
        self.processed = eset

        # Step 2: Differential expression
        method = analysis['method']
        if method not in _EFFECT_COLUMNS:
            raise ValueError(f"Unknown differential expression method: {method}")
        phenotype = analysis['phenotype']
        case, control = resolve_contrast(
            eset.phenotype(phenotype), analysis.get('case'), analysis.get('control')
        )
        self.logger.info(f"Step 2: Differential expression ({method}) of {case} vs {control}")

        if method == 'ttest':
            de_results = ttest_genes(eset, phenotype, case, control, equal_var=analysis['equal_var'])
        else:
            de_results = fit_gene_lm(eset, phenotype, case, control, covariates=analysis['covariates'])
        effect_col = _EFFECT_COLUMNS[method]

        self.results['contrast'] = {'phenotype': phenotype, 'case': case, 'control': control}
        self.results['differential_expression'] = de_results
        signature = split_signature(
            de_results,
            fdr=analysis['fdr'],
            effect_col=effect_col,
            min_abs_effect=analysis['min_abs_effect']
        )
        self.results['signature'] = signature
        self.logger.info(
            f"Found {len(signature['up'])} up- and {len(signature['down'])} down-regulated features "
            f"at FDR {analysis['fdr']}"
        )

        # Step 3: Enrichment
        if self.gene_sets:
            self.logger.info("Step 3: Gene set enrichment")
            drawn = {name: genes for name, genes in signature.items() if genes}
            if drawn:
                self.results['hyper_enrichment'] = hyper_enrichment(
                    drawn,
                    self.gene_sets,
                    ntotal=enrichment['ntotal'],
                    min_drawn=enrichment['min_drawn']
                )
            else:
                self.logger.warning("No significant features; skipping hypergeometric enrichment")

            # Rank by the signed statistic, most up-regulated first
            ranked = de_results.sort('t', descending=True, maintain_order=True)
            self.results['ks_enrichment'] = ks_enrichment(
                ranked['feature_id'].to_list(),
                self.gene_sets,
                weights=ranked['t'].to_numpy() if enrichment['weighted'] else None,
                min_size=enrichment['min_size'],
                max_size=enrichment['max_size'],
                alternative=enrichment['alternative'],
                n_permutations=enrichment['n_permutations'],
                seed=seed
            )
        else:
            self.logger.info("Step 3: No gene sets configured, skipping enrichment")

        # Step 4: Clustering
        clustering = self.config.clustering_params
        self.logger.info("Step 4: Hierarchical clustering of samples")
        clusters = cluster_expression(
            eset,
            axis='samples',
            method=clustering['method'],
            metric=clustering['metric']
        )
        self.results['sample_order'] = clusters['col_order']
        if clustering['n_clusters']:
            labels = cut_clusters(clusters['col_linkage'], n_clusters=clustering['n_clusters'])
            self.results['sample_clusters'] = pl.DataFrame({
                'sample_id': eset.sample_ids,
                'cluster': labels.tolist(),
            })
            comparison = compare_clusterings(labels, eset.phenotype(phenotype))
            self.results['cluster_agreement'] = comparison
            self.logger.info(
                f"Cut into {clustering['n_clusters']} clusters; adjusted Rand index vs "
                f"{phenotype}: {comparison['adjusted_rand']:.3f}"
            )

        # Step 5: Dimensionality reduction
        dimred = self.config.dimred_params
        self.results['embeddings'] = {}
        for reduction in self.config.get_reduction_methods():
            self.logger.info(f"Step 5: Dimensionality reduction ({reduction})")
            if reduction == 'pca':
                kwargs = {'n_components': dimred['n_components'], 'scale': dimred['scale']}
            elif reduction == 'tsne':
                kwargs = {'n_components': dimred['n_components'], 'perplexity': dimred['perplexity'], 'seed': seed}
            else:
                kwargs = {
                    'n_components': dimred['n_components'],
                    'n_neighbors': dimred['n_neighbors'],
                    'min_dist': dimred['min_dist'],
                    'seed': seed,
                }
            self.results['embeddings'][reduction] = reduce_dimensions(eset, reduction, **kwargs)

        # Step 6: Classification
        classification = self.config.classification_params
        if classification['run']:
            self.logger.info("Step 6: Random forest classification")
            self.results['classification'] = train_random_forest(
                eset,
                phenotype,
                n_estimators=classification['n_estimators'],
                cv_folds=classification['cv_folds'],
                seed=seed,
                max_features=classification['max_features']
            )

        self.logger.info(f"Workflow completed in {time.time() - start_time:.2f} seconds")
        self.save_results()

    def summary(self) -> Dict[str, Any]:
        """Compact, JSON friendly overview of the results."""
        summary = {
            'n_features': self.processed.n_features,
            'n_samples': self.processed.n_samples,
            'contrast': self.results['contrast'],
            'n_up': len(self.results['signature']['up']),
            'n_down': len(self.results['signature']['down']),
            'sample_order': self.results['sample_order'],
        }
        if 'hyper_enrichment' in self.results:
            summary['n_enriched_categories'] = self.results['hyper_enrichment'].filter(
                pl.col('fdr') <= self.config.analysis_params['fdr']
            ).height
        if 'ks_enrichment' in self.results:
            summary['n_enriched_gene_sets'] = self.results['ks_enrichment'].filter(
                pl.col('fdr') <= self.config.analysis_params['fdr']
            ).height
        if 'cluster_agreement' in self.results:
            agreement = self.results['cluster_agreement']
            summary['adjusted_rand'] = agreement['adjusted_rand']
            summary['normalized_mutual_info'] = agreement['normalized_mutual_info']
        if 'pca' in self.results.get('embeddings', {}):
            summary['pca_explained_variance_ratio'] = self.results['embeddings']['pca']['explained_variance_ratio']
        if 'classification' in self.results:
            summary['classification'] = self.results['classification'].summary()
        return clean_for_json(summary)

    def save_results(self, output_dir: Optional[str] = None):
        """Save workflow results.

        Args:
            output_dir: Optional output directory path. If not provided,
                        uses the directory from the configuration.
        """
        if 'differential_expression' not in self.results:
            self.logger.warning("No results to save. Run the workflow first.")
            return

        output_path = Path(output_dir) if output_dir is not None else self.config.get_output_path()
        data_path = ensure_dir(output_path / 'data')
        written = []

        def write_table(df: pl.DataFrame, name: str, description: str):
            df.write_csv(data_path / name, separator='\t')
            written.append((name, description))

        write_table(self.results['differential_expression'], 'differential_expression.tsv',
                    'Per-feature differential expression statistics')

        signature = self.results['signature']
        write_table(
            pl.DataFrame({
                'feature_id': signature['up'] + signature['down'],
                'direction': ['up'] * len(signature['up']) + ['down'] * len(signature['down']),
            }),
            'signature.tsv',
            'Significant features and their direction'
        )

        if 'hyper_enrichment' in self.results:
            write_table(self.results['hyper_enrichment'], 'hyper_enrichment.tsv',
                        'Hypergeometric enrichment of the up/down signatures')
        if 'ks_enrichment' in self.results:
            write_table(self.results['ks_enrichment'], 'ks_enrichment.tsv',
                        'KS enrichment of gene sets along the ranked feature list')
        if 'sample_clusters' in self.results:
            write_table(self.results['sample_clusters'], 'sample_clusters.tsv',
                        'Flat sample clusters cut from the optimally ordered tree')
        if 'cluster_agreement' in self.results:
            write_table(self.results['cluster_agreement']['contingency'], 'cluster_contingency.tsv',
                        'Sample clusters against the phenotype')
        for reduction, embedding in self.results.get('embeddings', {}).items():
            write_table(embedding['embedding'], f'{reduction}_embedding.tsv',
                        f'{reduction.upper()} sample coordinates')
            if 'loadings' in embedding:
                write_table(embedding['loadings'], f'{reduction}_loadings.tsv',
                            f'{reduction.upper()} feature loadings')
        if 'classification' in self.results:
            classification = self.results['classification']
            write_table(classification.predictions, 'classification_predictions.tsv',
                        'Cross-validated random forest predictions')
            write_table(classification.confusion, 'confusion_matrix.tsv',
                        'Cross-validated confusion table, true classes in rows')
            write_table(classification.importance, 'feature_importance.tsv',
                        'Random forest feature importance')

        summary_file = data_path / 'summary.json'
        with open(summary_file, 'w') as f:
            json.dump(self.summary(), f, indent=2)
        written.append(('summary.json', 'Overview of the results'))

        config_file = data_path / 'workflow_config.json'
        with open(config_file, 'w') as f:
            config_dict = {
                'input_files': {k: str(v) for k, v in self.config.input_files.items()
                                if isinstance(v, (str, bytes, os.PathLike))},
                'output': self.config.output_config,
                'analysis': self.config.analysis_params,
                'enrichment': self.config.enrichment_params,
                'clustering': self.config.clustering_params,
                'dimred': self.config.dimred_params,
                'classification': self.config.classification_params,
                'random_seed': self.config.random_seed,
            }
            json.dump(clean_for_json(config_dict), f, indent=2)
        written.append(('workflow_config.json', 'Configuration used for this analysis'))

        readme_file = output_path / 'README.md'
        with open(readme_file, 'w') as f:
            f.write("# Expression Analysis Results\n\n")
            f.write(f"Analysis completed on {time.strftime('%Y-%m-%d %H:%M:%S')}\n\n")
            contrast = self.results['contrast']
            f.write(f"Comparison: `{contrast['case']}` vs `{contrast['control']}` "
                    f"(phenotype `{contrast['phenotype']}`)\n\n")
            f.write("## Files\n\n")
            for name, description in written:
                f.write(f"- `data/{name}`: {description}\n")

        self.logger.info(f"Saved {len(written)} result files to {data_path}")
