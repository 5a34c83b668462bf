"""
Dimensionality reduction of samples: PCA, t-SNE and UMAP.
"""

from typing import Any, Dict, List, Optional, Tuple, Union
import logging

import numpy as np
import polars as pl
from sklearn.decomposition import PCA
from sklearn.manifold import TSNE
from sklearn.preprocessing import StandardScaler

from tahlil.data import ExpressionSet

logger = logging.getLogger(__name__)

Data = Union[ExpressionSet, np.ndarray]


def _samples_matrix(data: Data) -> Tuple[List[str], List[str], np.ndarray]:
    """Samples x features matrix plus sample and feature ids."""
    if isinstance(data, ExpressionSet):
        return data.sample_ids, data.feature_ids, data.exprs.T

    matrix = np.asarray(data, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError("Expected a features x samples matrix")
    sample_ids = [f"sample_{j + 1}" for j in range(matrix.shape[1])]
    feature_ids = [f"feature_{i + 1}" for i in range(matrix.shape[0])]
    return sample_ids, feature_ids, matrix.T


def _embedding_frame(sample_ids: List[str], coords: np.ndarray, prefix: str) -> pl.DataFrame:
    data = {'sample_id': sample_ids}
    for k in range(coords.shape[1]):
        data[f"{prefix}{k + 1}"] = coords[:, k]
    return pl.DataFrame(data)


def run_pca(data: Data, n_components: int = 2, scale: bool = False) -> Dict[str, Any]:
    """
    Principal component analysis of samples.

    Args:
        data: ExpressionSet or features x samples matrix
        n_components: Number of components
        scale: Standardise every feature before the decomposition

    Returns:
        Dictionary with embedding, explained_variance_ratio and loadings
    """
    sample_ids, feature_ids, X = _samples_matrix(data)
    max_components = min(X.shape)
    if not 1 <= n_components <= max_components:
        raise ValueError(f"n_components must be between 1 and {max_components}")

    if scale:
        X = StandardScaler().fit_transform(X)

    pca = PCA(n_components=n_components)
    coords = pca.fit_transform(X)

    loadings = {'feature_id': feature_ids}
    for k in range(n_components):
        loadings[f"PC{k + 1}"] = pca.components_[k]

    logger.info(
        f"PCA: first {n_components} components explain "
        f"{100 * pca.explained_variance_ratio_.sum():.1f}% of the variance"
    )
    return {
        'embedding': _embedding_frame(sample_ids, coords, 'PC'),
        'explained_variance_ratio': pca.explained_variance_ratio_.tolist(),
        'loadings': pl.DataFrame(loadings),
    }


def run_tsne(
    data: Data,
    n_components: int = 2,
    perplexity: float = 30.0,
    seed: Optional[int] = None,
    n_pcs: Optional[int] = None
) -> Dict[str, Any]:
    """
    t-SNE embedding of samples.

    Args:
        data: ExpressionSet or features x samples matrix
        n_components: Embedding dimension
        perplexity: Must be smaller than the number of samples
        seed: Random state
        n_pcs: Optionally reduce to this many principal components first

    Returns:
        Dictionary with the embedding
    """
    sample_ids, _, X = _samples_matrix(data)
    if perplexity >= X.shape[0]:
        raise ValueError(f"Perplexity ({perplexity}) must be smaller than the number of samples ({X.shape[0]})")

    if n_pcs is not None:
        X = PCA(n_components=min(n_pcs, *X.shape)).fit_transform(X)

    tsne = TSNE(n_components=n_components, perplexity=perplexity, random_state=seed, init='pca')
    coords = tsne.fit_transform(X)

    logger.info(f"t-SNE of {len(sample_ids)} samples (perplexity {perplexity})")
    return {
        'embedding': _embedding_frame(sample_ids, coords, 'tSNE'),
        'kl_divergence': float(tsne.kl_divergence_),
    }


def run_umap(
    data: Data,
    n_components: int = 2,
    n_neighbors: int = 15,
    min_dist: float = 0.1,
    seed: Optional[int] = None
) -> Dict[str, Any]:
    """
    UMAP embedding of samples.

    Args:
        data: ExpressionSet or features x samples matrix
        n_components: Embedding dimension
        n_neighbors: Neighbourhood size, capped at the number of samples minus one
        min_dist: Minimum distance between embedded points
        seed: Random state

    Returns:
        Dictionary with the embedding
    """
    import umap

    sample_ids, _, X = _samples_matrix(data)
    if X.shape[0] < 3:
        raise ValueError("UMAP needs at least 3 samples")

    n_neighbors = min(n_neighbors, X.shape[0] - 1)
    reducer = umap.UMAP(
        n_components=n_components,
        n_neighbors=n_neighbors,
        min_dist=min_dist,
        random_state=seed
    )
    coords = reducer.fit_transform(X)

    logger.info(f"UMAP of {len(sample_ids)} samples ({n_neighbors} neighbours)")
    return {
        'embedding': _embedding_frame(sample_ids, np.asarray(coords), 'UMAP'),
    }


def reduce_dimensions(data: Data, method: str, **kwargs) -> Dict[str, Any]:
    """Dispatch to run_pca, run_tsne or run_umap by name."""
    methods = {
        'pca': run_pca,
        'tsne': run_tsne,
        'umap': run_umap,
    }
    key = method.lower().replace('-', '')
    if key not in methods:
        raise ValueError(f"Unknown reduction method: {method}")
    return methods[key](data, **kwargs)
