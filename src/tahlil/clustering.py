"""
Hierarchical clustering with optimal leaf ordering, k-means and cluster comparison.
"""

from typing import Dict, Optional, Sequence
import logging

import numpy as np
import polars as pl
from scipy import stats
from scipy.cluster import hierarchy
from scipy.spatial.distance import pdist, squareform
from sklearn.cluster import KMeans
from sklearn.metrics import adjusted_rand_score, normalized_mutual_info_score

from tahlil.data import ExpressionSet

logger = logging.getLogger(__name__)

_AXES = ('samples', 'features', 'both')


def distance_matrix(matrix, metric: str = 'euclidean') -> np.ndarray:
    """
    Condensed pairwise distances between the rows of ``matrix``.

    Args:
        matrix: 2-D array, one observation per row
        metric: 'pearson' or 'spearman' (one minus the correlation), or any
            metric accepted by scipy's pdist

    Returns:
        Condensed distance vector
    """
    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim != 2 or matrix.shape[0] < 2:
        raise ValueError("Need a 2-D matrix with at least two rows")

    if metric in ('pearson', 'spearman'):
        if np.any(np.std(matrix, axis=1) < 1e-12):
            raise ValueError("Correlation distance is undefined for constant rows")
        if metric == 'spearman':
            matrix = stats.rankdata(matrix, axis=1)
        return pdist(matrix, metric='correlation')

    return pdist(matrix, metric=metric)


def hcopt(d, method: str = 'average', linkage_matrix: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Hierarchical clustering followed by optimal leaf ordering.

    Args:
        d: Condensed distance vector, or a square symmetric distance matrix
        method: Linkage method passed to scipy's linkage
        linkage_matrix: Existing linkage to reorder instead of clustering anew

    Returns:
        Linkage matrix whose leaf order minimises the summed distance
        between adjacent leaves
    """
    d = np.asarray(d, dtype=np.float64)
    if d.ndim == 2:
        if d.shape[0] != d.shape[1] or not np.allclose(d, d.T):
            raise ValueError("A 2-D distance matrix must be square and symmetric")
        d = squareform(d, checks=False)
    elif d.ndim != 1:
        raise ValueError("Distances must be a condensed vector or a square matrix")

    if len(d) < 1:
        raise ValueError("Need at least two observations to cluster")

    if linkage_matrix is None:
        linkage_matrix = hierarchy.linkage(d, method=method)

    return hierarchy.optimal_leaf_ordering(linkage_matrix, d)


def leaf_order(linkage_matrix: np.ndarray) -> np.ndarray:
    """Indices of the observations in dendrogram leaf order."""
    return hierarchy.leaves_list(linkage_matrix)


def cluster_expression(
    eset: ExpressionSet,
    axis: str = 'samples',
    method: str = 'average',
    metric: str = 'pearson'
) -> Dict[str, object]:
    """
    Optimally ordered hierarchical clustering of samples and/or features.

    Returns:
        Dictionary with row_order / col_order (ids, None when not clustered)
        and row_linkage / col_linkage
    """
    if axis not in _AXES:
        raise ValueError(f"Unknown axis: {axis}")

    result = {
        'row_order': None,
        'col_order': None,
        'row_linkage': None,
        'col_linkage': None,
    }

    if axis in ('features', 'both'):
        linkage = hcopt(distance_matrix(eset.exprs, metric), method=method)
        result['row_linkage'] = linkage
        result['row_order'] = [eset.feature_ids[i] for i in leaf_order(linkage)]
        logger.info(f"Clustered {eset.n_features} features ({method} linkage, {metric} distance)")

    if axis in ('samples', 'both'):
        linkage = hcopt(distance_matrix(eset.exprs.T, metric), method=method)
        result['col_linkage'] = linkage
        result['col_order'] = [eset.sample_ids[i] for i in leaf_order(linkage)]
        logger.info(f"Clustered {eset.n_samples} samples ({method} linkage, {metric} distance)")

    return result


def cut_clusters(
    linkage_matrix: np.ndarray,
    n_clusters: Optional[int] = None,
    height: Optional[float] = None
) -> np.ndarray:
    """Flat cluster labels from a linkage, cut by cluster count or tree height."""
    if (n_clusters is None) == (height is None):
        raise ValueError("Specify exactly one of n_clusters and height")
    if n_clusters is not None:
        if n_clusters < 1:
            raise ValueError("n_clusters must be at least 1")
        return hierarchy.fcluster(linkage_matrix, t=n_clusters, criterion='maxclust')
    return hierarchy.fcluster(linkage_matrix, t=height, criterion='distance')


def kmeans_clusters(matrix, n_clusters: int, seed: Optional[int] = None, n_init: int = 10) -> np.ndarray:
    """K-means labels of the rows of ``matrix``."""
    matrix = np.asarray(matrix, dtype=np.float64)
    if n_clusters < 1 or n_clusters > matrix.shape[0]:
        raise ValueError(f"n_clusters must be between 1 and {matrix.shape[0]}")
    model = KMeans(n_clusters=n_clusters, n_init=n_init, random_state=seed)
    return model.fit_predict(matrix)


def compare_clusterings(labels_a: Sequence, labels_b: Sequence) -> Dict[str, object]:
    """
    Agreement between two labelings of the same observations.

    Returns:
        Dictionary with adjusted_rand, normalized_mutual_info and a long
        format contingency table
    """
    labels_a = [str(x) for x in labels_a]
    labels_b = [str(x) for x in labels_b]
    if len(labels_a) != len(labels_b):
        raise ValueError(f"Label vectors differ in length: {len(labels_a)} vs {len(labels_b)}")

    contingency = (
        pl.DataFrame({'labels_a': labels_a, 'labels_b': labels_b})
        .group_by(['labels_a', 'labels_b'])
        .agg(pl.len().alias('count'))
        .sort(['labels_a', 'labels_b'])
    )

    return {
        'adjusted_rand': float(adjusted_rand_score(labels_a, labels_b)),
        'normalized_mutual_info': float(normalized_mutual_info_score(labels_a, labels_b)),
        'contingency': contingency,
    }
