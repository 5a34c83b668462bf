"""Tests for clustering functions."""

import pytest
import numpy as np
import polars as pl
from scipy.cluster import hierarchy
from scipy.spatial.distance import pdist, squareform

from tahlil.data import ExpressionSet
from tahlil.clustering import (
    distance_matrix,
    hcopt,
    leaf_order,
    cluster_expression,
    cut_clusters,
    kmeans_clusters,
    compare_clusterings,
)


@pytest.fixture
def points():
    """Two well separated groups on a line, interleaved."""
    return np.array([[0.0], [10.0], [1.0], [11.0], [2.0]])


@pytest.fixture
def eset():
    """Eight samples from two profiles, twenty features."""
    rng = np.random.default_rng(42)
    profile_a = np.sin(np.linspace(0, 3, 20))
    profile_b = np.cos(np.linspace(0, 3, 20))
    columns = [profile_a + rng.normal(0, 0.05, 20) for _ in range(4)]
    columns += [profile_b + rng.normal(0, 0.05, 20) for _ in range(4)]
    exprs = np.column_stack(columns)
    sample_ids = [f"S{i}" for i in range(1, 9)]
    pdata = pl.DataFrame({'sample_id': sample_ids, 'profile': ['a'] * 4 + ['b'] * 4})
    return ExpressionSet(exprs, [f"f{i}" for i in range(20)], sample_ids, pdata=pdata)


def test_distance_matrix():
    """Correlation distances are one minus the correlation."""
    matrix = np.array([
        [1.0, 2.0, 3.0],
        [2.0, 4.0, 6.0],
        [3.0, 2.0, 1.0],
    ])
    d = distance_matrix(matrix, metric='pearson')
    assert d.tolist() == pytest.approx([0.0, 2.0, 2.0])

    d = distance_matrix(matrix, metric='spearman')
    assert d[0] == pytest.approx(0.0)

    assert distance_matrix(matrix, metric='euclidean').tolist() == pytest.approx(pdist(matrix).tolist())


def test_distance_matrix_errors():
    """Constant rows and single rows are rejected."""
    with pytest.raises(ValueError, match="constant rows"):
        distance_matrix(np.array([[1.0, 1.0], [1.0, 2.0]]), metric='pearson')
    with pytest.raises(ValueError, match="at least two rows"):
        distance_matrix(np.array([[1.0, 2.0]]))


def test_hcopt(points):
    """Optimal leaf ordering keeps each group contiguous and ordered."""
    d = pdist(points)
    linkage = hcopt(d, method='average')

    assert linkage.shape == (4, 4)
    order = leaf_order(linkage).tolist()
    assert set(order[:3]) == {0, 2, 4} or set(order[2:]) == {0, 2, 4}
    # Adjacent leaves are as close as possible along the line
    values = points[order, 0]
    assert np.sum(np.abs(np.diff(values))) == pytest.approx(11.0)


def test_hcopt_square_matrix(points):
    """Square and condensed inputs give the same tree."""
    d = pdist(points)
    assert np.allclose(hcopt(squareform(d)), hcopt(d))


def test_hcopt_reorders_existing_linkage(points):
    """A supplied linkage is only reordered."""
    d = pdist(points)
    linkage = hierarchy.linkage(d, method='complete')
    reordered = hcopt(d, linkage_matrix=linkage)

    assert np.allclose(np.sort(reordered[:, 2]), np.sort(linkage[:, 2]))
    assert np.allclose(reordered, hierarchy.optimal_leaf_ordering(linkage, d))


def test_hcopt_errors():
    """Invalid distances are rejected."""
    with pytest.raises(ValueError, match="square and symmetric"):
        hcopt(np.array([[0.0, 1.0], [2.0, 0.0]]))
    with pytest.raises(ValueError, match="at least two observations"):
        hcopt(np.array([]))


def test_cluster_expression(eset):
    """Samples and features are both ordered."""
    result = cluster_expression(eset, axis='both')

    assert sorted(result['col_order']) == sorted(eset.sample_ids)
    assert sorted(result['row_order']) == sorted(eset.feature_ids)
    assert result['col_linkage'].shape == (7, 4)

    samples_only = cluster_expression(eset, axis='samples')
    assert samples_only['row_order'] is None
    assert samples_only['row_linkage'] is None

    with pytest.raises(ValueError, match="Unknown axis"):
        cluster_expression(eset, axis='genes')


def test_cut_clusters_recovers_groups(eset):
    """Cutting the sample tree in two recovers the profiles."""
    result = cluster_expression(eset, axis='samples')
    labels = cut_clusters(result['col_linkage'], n_clusters=2)

    assert len(set(labels[:4])) == 1
    assert len(set(labels[4:])) == 1
    assert labels[0] != labels[4]

    comparison = compare_clusterings(labels, eset.phenotype('profile'))
    assert comparison['adjusted_rand'] == pytest.approx(1.0)


def test_cut_clusters_by_height(points):
    """Cutting by height."""
    linkage = hcopt(pdist(points))
    labels = cut_clusters(linkage, height=5.0)
    assert len(set(labels)) == 2

    with pytest.raises(ValueError, match="exactly one"):
        cut_clusters(linkage)
    with pytest.raises(ValueError, match="exactly one"):
        cut_clusters(linkage, n_clusters=2, height=1.0)


def test_kmeans_clusters(points):
    """K-means separates the two groups."""
    labels = kmeans_clusters(points, 2, seed=0)

    assert labels[0] == labels[2] == labels[4]
    assert labels[1] == labels[3]
    assert labels[0] != labels[1]

    with pytest.raises(ValueError, match="n_clusters must be between"):
        kmeans_clusters(points, 6)


def test_compare_clusterings():
    """Identical partitions with different names agree perfectly."""
    result = compare_clusterings([1, 1, 2, 2, 3], ['x', 'x', 'y', 'y', 'z'])

    assert result['adjusted_rand'] == pytest.approx(1.0)
    assert result['normalized_mutual_info'] == pytest.approx(1.0)
    contingency = result['contingency']
    assert contingency.columns == ['labels_a', 'labels_b', 'count']
    assert contingency['count'].sum() == 5
    assert contingency.height == 3

    with pytest.raises(ValueError, match="differ in length"):
        compare_clusterings([1, 2], [1])
