"""Tests for differential expression."""

import pytest
import numpy as np
import polars as pl
from scipy import stats

from tahlil.data import ExpressionSet
from tahlil.diffanalysis import (
    resolve_contrast,
    ttest_genes,
    design_matrix,
    fit_gene_lm,
    top_table,
    split_signature,
)


@pytest.fixture
def eset():
    """Six samples in two groups: one up-regulated, one down-regulated and one flat gene."""
    exprs = np.array([
        [1.0, 1.2, 0.9, 3.1, 2.9, 3.3],   # up in case
        [5.0, 5.2, 4.9, 5.1, 4.8, 5.0],   # no change
        [8.0, 8.3, 7.9, 6.0, 6.2, 5.9],   # down in case
        [2.0, 2.0, 2.0, 2.0, 2.0, 2.0],   # constant
    ])
    pdata = pl.DataFrame({
        'sample_id': [f"S{i}" for i in range(1, 7)],
        'group': ['normal', 'normal', 'normal', 'tumor', 'tumor', 'tumor'],
        'batch': ['b1', 'b2', 'b1', 'b2', 'b1', 'b2'],
        'age': [50.0, 61.0, 45.0, 70.0, 52.0, 66.0],
    })
    return ExpressionSet(exprs, ['UP', 'FLAT', 'DOWN', 'CONST'], pdata['sample_id'].to_list(), pdata=pdata)


def test_resolve_contrast():
    """Case and control are inferred from two-level phenotypes."""
    labels = ['normal', 'tumor', 'normal', 'tumor']
    assert resolve_contrast(labels) == ('tumor', 'normal')
    assert resolve_contrast(labels, case='normal') == ('normal', 'tumor')
    assert resolve_contrast(labels, control='tumor') == ('normal', 'tumor')
    assert resolve_contrast(labels + ['other'], case='tumor', control='normal') == ('tumor', 'normal')

    with pytest.raises(ValueError, match="specify case and control"):
        resolve_contrast(labels + ['other'])
    with pytest.raises(ValueError, match="not found"):
        resolve_contrast(labels, case='tumor', control='healthy')
    with pytest.raises(ValueError, match="must differ"):
        resolve_contrast(labels, case='tumor', control='tumor')


def test_ttest_genes(eset):
    """Per-gene Welch t-tests with log fold changes and FDR."""
    result = ttest_genes(eset, 'group', case='tumor', control='normal')

    assert result.columns == ['feature_id', 'mean_case', 'mean_control', 'log_fc', 't', 'pval', 'fdr']
    assert result['pval'].is_sorted()

    up = result.filter(pl.col('feature_id') == 'UP').row(0, named=True)
    expected = stats.ttest_ind([3.1, 2.9, 3.3], [1.0, 1.2, 0.9], equal_var=False)
    assert up['t'] == pytest.approx(expected.statistic)
    assert up['pval'] == pytest.approx(expected.pvalue)
    assert up['log_fc'] == pytest.approx(np.mean([3.1, 2.9, 3.3]) - np.mean([1.0, 1.2, 0.9]))

    down = result.filter(pl.col('feature_id') == 'DOWN').row(0, named=True)
    assert down['log_fc'] < 0
    assert down['t'] < 0

    constant = result.filter(pl.col('feature_id') == 'CONST').row(0, named=True)
    assert constant['pval'] == 1.0
    assert constant['t'] == 0.0

    assert (result['fdr'] >= result['pval']).all()


def test_ttest_genes_infers_groups(eset):
    """Without labels the sorted levels give control and case."""
    inferred = ttest_genes(eset, 'group')
    explicit = ttest_genes(eset, 'group', case='tumor', control='normal')
    assert inferred.equals(explicit)


def test_ttest_genes_small_groups(eset):
    """Groups need at least two samples."""
    small = eset.subset(samples=['S1', 'S2', 'S4'])
    with pytest.raises(ValueError, match="at least 2 samples per group"):
        ttest_genes(small, 'group', case='tumor', control='normal')


def test_design_matrix(eset):
    """Group indicator plus numeric and one-hot covariates."""
    X, names, mask = design_matrix(eset.pdata, 'group', 'tumor', 'normal', covariates=['age', 'batch'])

    assert X.shape == (6, 4)
    assert names[:3] == ['intercept', 'group[tumor]', 'age']
    assert X[:, 0].tolist() == [1.0] * 6
    assert X[:, 1].tolist() == [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]
    assert X[:, 2].tolist() == [50.0, 61.0, 45.0, 70.0, 52.0, 66.0]
    assert mask.all()


def test_design_matrix_errors(eset):
    """Unknown columns and confounded designs are rejected."""
    with pytest.raises(ValueError, match="not found"):
        design_matrix(eset.pdata, 'group', 'tumor', 'normal', covariates=['sex'])

    confounded = eset.pdata.with_columns(pl.col('group').alias('copy'))
    with pytest.raises(ValueError, match="rank deficient"):
        design_matrix(confounded, 'group', 'tumor', 'normal', covariates=['copy'])


def test_fit_gene_lm_matches_ttest(eset):
    """Without covariates the group coefficient is the mean difference
    and its p-value that of Student's t-test."""
    varying = eset.subset(features=['UP', 'FLAT', 'DOWN'])

    lm = fit_gene_lm(varying, 'group', case='tumor', control='normal')
    tt = ttest_genes(varying, 'group', case='tumor', control='normal', equal_var=True)

    assert lm.columns == ['feature_id', 'coef', 'se', 't', 'pval', 'fdr']
    joined = lm.join(tt, on='feature_id')
    assert joined['coef'].to_list() == pytest.approx(joined['log_fc'].to_list())
    assert joined['pval'].to_list() == pytest.approx(joined['pval_right'].to_list())


def test_fit_gene_lm_with_covariates(eset):
    """Covariates enter the model."""
    varying = eset.subset(features=['UP', 'FLAT', 'DOWN'])
    result = fit_gene_lm(varying, 'group', covariates=['batch'])

    assert result.height == 3
    up = result.filter(pl.col('feature_id') == 'UP').row(0, named=True)
    assert up['coef'] > 1.5
    assert up['se'] > 0


def test_top_table_and_signature():
    """Filtering and splitting a result table."""
    results = pl.DataFrame({
        'feature_id': ['a', 'b', 'c', 'd'],
        'log_fc': [2.0, -1.5, 0.1, 3.0],
        'pval': [0.001, 0.002, 0.003, 0.2],
        'fdr': [0.004, 0.004, 0.004, 0.2],
    })

    table = top_table(results, fdr=0.05)
    assert table['feature_id'].to_list() == ['a', 'b', 'c']

    table = top_table(results, fdr=0.05, min_abs_effect=1.0, n=1)
    assert table['feature_id'].to_list() == ['a']

    signature = split_signature(results, fdr=0.05, min_abs_effect=0.5)
    assert signature == {'up': ['a'], 'down': ['b']}
