"""
Tahlil
======

Standard expression-analysis workflows: differential expression,
enrichment testing, clustering, dimensionality reduction and
classification, each delegating the statistics to established libraries.
"""

from .pipeline import ExpressionWorkflow
from .config import WorkflowConfig
from .data import (
    ExpressionSet as ExpressionSet,
    load_expression_set as load_expression_set,
    load_gene_sets as load_gene_sets,
    write_gene_sets as write_gene_sets,
    log2_transform as log2_transform,
    variation_filter as variation_filter,
)
from .stats import (
    hyper_enrichment as hyper_enrichment,
    ks_genescore as ks_genescore,
    ks_enrichment as ks_enrichment,
    perform_fdr_analysis as perform_fdr_analysis,
    calculate_significance as calculate_significance,
)
from .diffanalysis import (
    ttest_genes as ttest_genes,
    fit_gene_lm as fit_gene_lm,
    top_table as top_table,
    split_signature as split_signature,
)
from .clustering import (
    hcopt as hcopt,
    cluster_expression as cluster_expression,
    cut_clusters as cut_clusters,
    compare_clusterings as compare_clusterings,
)
from .dimred import (
    run_pca as run_pca,
    run_tsne as run_tsne,
    run_umap as run_umap,
)
from .classify import train_random_forest as train_random_forest
from .utils import setup_logging as setup_logging, ensure_dir as ensure_dir

__version__ = "0.1.0"

__all__ = [
    "ExpressionWorkflow",
    "WorkflowConfig",
    "ExpressionSet",
    "load_expression_set",
    "load_gene_sets",
    "write_gene_sets",
    "log2_transform",
    "variation_filter",
    "hyper_enrichment",
    "ks_genescore",
    "ks_enrichment",
    "perform_fdr_analysis",
    "calculate_significance",
    "ttest_genes",
    "fit_gene_lm",
    "top_table",
    "split_signature",
    "hcopt",
    "cluster_expression",
    "cut_clusters",
    "compare_clusterings",
    "run_pca",
    "run_tsne",
    "run_umap",
    "train_random_forest",
    "setup_logging",
    "ensure_dir",
]
