"""
Enrichment statistics: hypergeometric over-representation and KS gene scores.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Union
import logging

import numba as nb
import numpy as np
import polars as pl
from scipy import stats
from statsmodels.stats.multitest import multipletests
from tqdm.auto import tqdm

logger = logging.getLogger(__name__)

_ALTERNATIVES = ('two-sided', 'greater', 'less')

HYPER_SCHEMA = {
    'category': pl.Utf8,
    'pval': pl.Float64,
    'fdr': pl.Float64,
    'set_annotated': pl.Int64,
    'set_size': pl.Int64,
    'category_annotated': pl.Int64,
    'total_annotated': pl.Int64,
    'hits': pl.Utf8,
}

KS_SCHEMA = {
    'gene_set': pl.Utf8,
    'size': pl.Int64,
    'score': pl.Float64,
    'pval': pl.Float64,
    'fdr': pl.Float64,
    'leading_edge': pl.Utf8,
}


#  Numba-compiled inner loops

@nb.njit
def _running_sum(n_x, positions, hit_steps):
    """
    Walk down a ranked list of n_x genes, stepping up at every hit and down
    at every miss.

    Args:
        n_x: Length of the ranked list
        positions: Sorted 0-based positions of the hits
        hit_steps: Increment applied at each hit (sums to 1)

    Returns:
        Tuple of (max deviation, its position, min deviation, its position)
    """
    n_y = positions.shape[0]
    miss_step = 1.0 / (n_x - n_y)
    running = 0.0
    max_dev = 0.0
    max_pos = 0
    min_dev = 0.0
    min_pos = 0
    j = 0
    for i in range(n_x):
        if j < n_y and positions[j] == i:
            running += hit_steps[j]
            j += 1
        else:
            running -= miss_step
        if running > max_dev:
            max_dev = running
            max_pos = i
        if running < min_dev:
            min_dev = running
            min_pos = i
    return max_dev, max_pos, min_dev, min_pos


@nb.njit
def _alternative_statistic(max_dev, min_dev, alt_code):
    """Statistic compared against the null: 0 two-sided, 1 greater, 2 less."""
    if alt_code == 1:
        return max_dev
    if alt_code == 2:
        return -min_dev
    return max(max_dev, -min_dev)


@nb.njit
def _permutation_null(n_x, n_y, abs_weights, n_permutations, alt_code, seed):
    """
    Null distribution of the running-sum statistic for random gene sets.

    Args:
        n_x: Length of the ranked list
        n_y: Gene set size
        abs_weights: Per-rank hit weights, already raised to the weight power
        n_permutations: Number of random gene sets
        alt_code: Alternative (see _alternative_statistic)
        seed: Seed for numba's generator, negative to leave it unseeded

    Returns:
        Array of null statistics
    """
    if seed >= 0:
        np.random.seed(seed)
    null = np.zeros(n_permutations)
    for k in range(n_permutations):
        positions = np.sort(np.random.permutation(n_x)[:n_y])
        steps = np.empty(n_y)
        total = 0.0
        for j in range(n_y):
            steps[j] = abs_weights[positions[j]]
            total += steps[j]
        if total > 0:
            for j in range(n_y):
                steps[j] = steps[j] / total
        else:
            for j in range(n_y):
                steps[j] = 1.0 / n_y
        max_dev, _, min_dev, _ = _running_sum(n_x, positions, steps)
        null[k] = _alternative_statistic(max_dev, min_dev, alt_code)
    return null


@nb.njit
def _calculate_significance_counts(observed_score, null_scores):
    """Count how many null scores are greater than or equal to the observed score."""
    count = 0
    for i in range(len(null_scores)):
        if null_scores[i] >= observed_score:
            count += 1
    return count


def perform_fdr_analysis(p_values, alpha: float = 0.05) -> Dict[str, list]:
    """
    Perform FDR analysis on p-values.

    Args:
        p_values: Array of p-values
        alpha: Significance level

    Returns:
        Dictionary with FDR results
    """
    if len(p_values) == 0:
        raise ValueError("Input p-values array cannot be empty")

    reject, pvals_corrected, _, _ = multipletests(
        np.asarray(p_values, dtype=np.float64),
        alpha=alpha,
        method='fdr_bh'
    )

    return {
        'reject': reject.astype(bool).tolist(),
        'pvals_corrected': pvals_corrected.tolist()
    }


def calculate_significance(
    observed_score: float,
    null_scores: Sequence[float],
    alpha: float = 0.05
) -> tuple:
    """
    Calculate significance of observed score against null distribution.

    Args:
        observed_score: Observed score
        null_scores: Scores from the null model
        alpha: Significance level

    Returns:
        Tuple of (p-value, is_significant)
    """
    if len(null_scores) == 0:
        raise ValueError("Null scores array cannot be empty")

    null_scores_array = np.asarray(null_scores, dtype=np.float64)

    count_greater_equal = _calculate_significance_counts(float(observed_score), null_scores_array)
    p_value = count_greater_equal / len(null_scores_array)

    return float(p_value), bool(p_value <= alpha)


def _bh(p_values: List[float]) -> List[float]:
    if not p_values:
        return []
    return perform_fdr_analysis(p_values)['pvals_corrected']


def _hyper_single(
    drawn: Sequence[str],
    categories: Mapping[str, Sequence[str]],
    ntotal: int,
    universe: Optional[set],
    min_drawn: int,
    mht: bool,
    order: bool
) -> pl.DataFrame:
    drawn_set = set(drawn)
    if not drawn_set:
        raise ValueError("Drawn gene set cannot be empty")

    # With the default background only annotated genes can be drawn
    if universe is not None:
        drawn_set &= universe
    set_annotated = len(drawn_set)
    set_size = len(set(drawn))

    if set_annotated > ntotal:
        raise ValueError(f"ntotal ({ntotal}) is smaller than the drawn set ({set_annotated})")

    rows = []
    for name, members in categories.items():
        members = set(members)
        m = len(members)
        if m > ntotal:
            raise ValueError(f"ntotal ({ntotal}) is smaller than category {name} ({m} genes)")
        hits = sorted(drawn_set & members)
        x = len(hits)
        if x < min_drawn:
            continue
        pval = float(stats.hypergeom.sf(x - 1, ntotal, m, set_annotated))
        rows.append({
            'category': name,
            'pval': min(max(pval, 0.0), 1.0),
            'fdr': 1.0,
            'set_annotated': set_annotated,
            'set_size': set_size,
            'category_annotated': m,
            'total_annotated': ntotal,
            'hits': ','.join(hits),
        })

    if not rows:
        return pl.DataFrame(schema=HYPER_SCHEMA)

    if mht:
        for row, fdr in zip(rows, _bh([r['pval'] for r in rows])):
            row['fdr'] = float(fdr)
    else:
        for row in rows:
            row['fdr'] = row['pval']

    result = pl.DataFrame(rows, schema=HYPER_SCHEMA)
    if order:
        result = result.sort('pval', maintain_order=True)
    return result


def hyper_enrichment(
    drawn: Union[Sequence[str], Mapping[str, Sequence[str]]],
    categories: Mapping[str, Sequence[str]],
    ntotal: Optional[int] = None,
    min_drawn: int = 2,
    mht: bool = True,
    order: bool = True
) -> pl.DataFrame:
    """
    Hypergeometric over-representation test of gene categories.

    For a drawn set of k genes and a category of m genes out of ntotal,
    the p-value is P[X >= hits] with X ~ Hypergeom(ntotal, m, k).

    Args:
        drawn: Gene ids (e.g. a signature), or a mapping of signature name
            to gene ids to test several signatures at once
        categories: Mapping of category name to member gene ids
        ntotal: Background size; defaults to the number of distinct genes
            across all categories, in which case only annotated drawn genes
            are counted
        min_drawn: Categories with fewer hits are not reported
        mht: Apply Benjamini-Hochberg correction
        order: Sort the output by p-value

    Returns:
        DataFrame with one row per tested category (and signature)
    """
    if not categories:
        raise ValueError("Categories cannot be empty")

    universe = None
    if ntotal is None:
        universe = set()
        for members in categories.values():
            universe.update(members)
        ntotal = len(universe)
    if ntotal <= 0:
        raise ValueError("ntotal must be positive")

    if isinstance(drawn, Mapping):
        if not drawn:
            raise ValueError("Drawn gene set cannot be empty")
        frames = []
        for signature, genes in drawn.items():
            frame = _hyper_single(genes, categories, ntotal, universe, min_drawn, mht, order)
            frames.append(
                frame.with_columns(pl.lit(signature, dtype=pl.Utf8).alias('signature'))
                .select(['signature'] + list(HYPER_SCHEMA))
            )
            logger.debug(f"Signature {signature}: {frame.height} categories with at least {min_drawn} hits")
        return pl.concat(frames)

    if isinstance(drawn, str):
        drawn = [drawn]
    return _hyper_single(drawn, categories, ntotal, universe, min_drawn, mht, order)


def ks_genescore(
    n_x: int,
    y: Sequence[int],
    weights: Optional[Sequence[float]] = None,
    weight_power: float = 1.0,
    alternative: str = 'two-sided',
    n_permutations: int = 0,
    seed: Optional[int] = None
) -> Dict[str, object]:
    """
    Kolmogorov-Smirnov running-sum score of a gene set in a ranked list.

    Args:
        n_x: Number of genes in the ranked list
        y: 1-based positions of the gene set members in the list
        weights: Optional per-rank weights (length n_x), e.g. the ranking
            statistic; hits then step up in proportion to |w|^weight_power
        weight_power: Exponent applied to the weights
        alternative: 'two-sided', 'greater' (set at the top of the list)
            or 'less' (set at the bottom)
        n_permutations: Number of random sets for an empirical p-value;
            required when weights are given
        seed: Random seed for the permutations

    Returns:
        Dictionary with score, pval, position and leading_edge
    """
    if alternative not in _ALTERNATIVES:
        raise ValueError(f"Unknown alternative: {alternative}")

    y = np.asarray(y, dtype=np.int64)
    n_y = len(y)
    if n_y == 0:
        raise ValueError("Gene set positions cannot be empty")
    if n_y >= n_x:
        raise ValueError(f"Gene set size ({n_y}) must be smaller than the list size ({n_x})")
    if y.min() < 1 or y.max() > n_x:
        raise ValueError(f"Positions must lie between 1 and {n_x}")
    if len(np.unique(y)) != n_y:
        raise ValueError("Positions must be unique")

    positions = np.sort(y) - 1

    if weights is not None:
        weights = np.asarray(weights, dtype=np.float64)
        if len(weights) != n_x:
            raise ValueError(f"Weights have length {len(weights)}, expected {n_x}")
        abs_weights = np.abs(weights) ** weight_power
        if n_permutations <= 0:
            raise ValueError("Weighted scores need n_permutations > 0 for a p-value")
    else:
        abs_weights = np.ones(n_x)

    hit_steps = abs_weights[positions]
    total = hit_steps.sum()
    hit_steps = hit_steps / total if total > 0 else np.full(n_y, 1.0 / n_y)

    max_dev, max_pos, min_dev, min_pos = _running_sum(n_x, positions, hit_steps)

    if alternative == 'greater':
        positive = True
    elif alternative == 'less':
        positive = False
    else:
        positive = max_dev >= -min_dev

    if positive:
        score, position = max_dev, max_pos
        leading_edge = positions[positions <= max_pos]
    else:
        score, position = min_dev, min_pos
        leading_edge = positions[positions >= min_pos]

    if n_permutations > 0:
        alt_code = _ALTERNATIVES.index(alternative)
        null = _permutation_null(
            n_x, n_y, abs_weights, n_permutations, alt_code, -1 if seed is None else seed
        )
        observed = _alternative_statistic(max_dev, min_dev, alt_code)
        pval, _ = calculate_significance(observed, null)
    else:
        # The running sum is the difference between the empirical CDFs of hits and misses
        misses = np.setdiff1d(np.arange(n_x), positions)
        pval = stats.ks_2samp(positions, misses, alternative=alternative).pvalue

    return {
        'score': float(score),
        'pval': float(pval),
        'position': int(position) + 1,
        'leading_edge': (leading_edge + 1).tolist(),
    }


def ks_enrichment(
    ranked_genes: Sequence[str],
    gene_sets: Mapping[str, Sequence[str]],
    weights: Optional[Sequence[float]] = None,
    min_size: int = 5,
    max_size: int = 500,
    alternative: str = 'two-sided',
    n_permutations: int = 0,
    seed: Optional[int] = None
) -> pl.DataFrame:
    """
    Apply ks_genescore to every gene set against a ranked gene list.

    Args:
        ranked_genes: Gene ids ordered from the top of the ranking
        gene_sets: Mapping of set name to member gene ids
        weights: Optional ranking statistic aligned with ranked_genes
        min_size: Smallest set size (after intersecting with the list)
        max_size: Largest set size
        alternative: Passed to ks_genescore
        n_permutations: Passed to ks_genescore
        seed: Seeds one generator that draws a separate permutation seed
            for every tested gene set

    Returns:
        DataFrame with one row per tested gene set, ordered by p-value
    """
    ranked_genes = list(ranked_genes)
    if len(set(ranked_genes)) != len(ranked_genes):
        raise ValueError("Ranked gene list contains duplicates")
    rank_index = {gene: i + 1 for i, gene in enumerate(ranked_genes)}
    n_x = len(ranked_genes)
    rng = np.random.default_rng(seed)

    rows = []
    skipped = 0
    for name, members in tqdm(gene_sets.items(), desc="KS enrichment", unit="set", leave=False):
        positions = sorted({rank_index[g] for g in members if g in rank_index})
        if not (min_size <= len(positions) <= max_size) or len(positions) >= n_x:
            skipped += 1
            continue
        set_seed = int(rng.integers(0, 2**31 - 1)) if seed is not None else None
        result = ks_genescore(
            n_x,
            positions,
            weights=weights,
            alternative=alternative,
            n_permutations=n_permutations,
            seed=set_seed
        )
        rows.append({
            'gene_set': name,
            'size': len(positions),
            'score': result['score'],
            'pval': result['pval'],
            'fdr': 1.0,
            'leading_edge': ','.join(ranked_genes[p - 1] for p in result['leading_edge']),
        })

    if skipped:
        logger.info(f"Skipped {skipped} gene sets outside the size range {min_size}-{max_size}")

    if not rows:
        return pl.DataFrame(schema=KS_SCHEMA)

    for row, fdr in zip(rows, _bh([r['pval'] for r in rows])):
        row['fdr'] = float(fdr)

    return pl.DataFrame(rows, schema=KS_SCHEMA).sort('pval', maintain_order=True)
