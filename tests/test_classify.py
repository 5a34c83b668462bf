"""Tests for random forest classification."""

import pytest
import numpy as np
import polars as pl

from tahlil.data import ExpressionSet
from tahlil.classify import ClassificationResult, train_random_forest, predict_samples


@pytest.fixture
def eset():
    """Twelve samples whose class is carried by the first two features."""
    rng = np.random.default_rng(3)
    exprs = rng.normal(0, 1, size=(20, 12))
    exprs[:2, 6:] += 6.0
    sample_ids = [f"S{i}" for i in range(1, 13)]
    pdata = pl.DataFrame({
        'sample_id': sample_ids,
        'status': ['healthy'] * 6 + ['disease'] * 6,
        'single': ['x'] * 12,
    })
    return ExpressionSet(exprs, [f"g{i}" for i in range(1, 21)], sample_ids, pdata=pdata)


def test_train_random_forest(eset):
    """Cross-validated predictions on separable classes."""
    result = train_random_forest(eset, 'status', n_estimators=50, cv_folds=3, seed=0)

    assert isinstance(result, ClassificationResult)
    assert result.classes == ['disease', 'healthy']
    assert result.accuracy == pytest.approx(1.0)
    assert result.balanced_accuracy == pytest.approx(1.0)
    assert 0.0 <= result.oob_score <= 1.0

    assert result.confusion.columns == ['true', 'disease', 'healthy']
    assert result.confusion['disease'].to_list() == [6, 0]
    assert result.confusion['healthy'].to_list() == [0, 6]

    assert result.predictions.columns == ['sample_id', 'true', 'predicted']
    assert result.predictions['predicted'].to_list() == result.predictions['true'].to_list()

    top = result.importance['feature_id'][:2].to_list()
    assert set(top) == {'g1', 'g2'}
    assert result.importance['importance'].sum() == pytest.approx(1.0)

    summary = result.summary()
    assert summary['n_features'] == 20
    assert summary['accuracy'] == pytest.approx(1.0)


def test_train_random_forest_is_reproducible(eset):
    """A fixed seed gives identical results."""
    first = train_random_forest(eset, 'status', n_estimators=20, cv_folds=3, seed=5)
    second = train_random_forest(eset, 'status', n_estimators=20, cv_folds=3, seed=5)
    assert first.importance.equals(second.importance)


def test_train_random_forest_errors(eset):
    """Single classes and too many folds are rejected."""
    with pytest.raises(ValueError, match="at least two classes"):
        train_random_forest(eset, 'single', n_estimators=10)
    with pytest.raises(ValueError, match="fewer than the 7 cross-validation folds"):
        train_random_forest(eset, 'status', n_estimators=10, cv_folds=7)


def test_predict_samples(eset):
    """New samples are predicted on the training features."""
    result = train_random_forest(eset, 'status', n_estimators=50, cv_folds=3, seed=0)

    shuffled = eset.subset(features=list(reversed(eset.feature_ids)), samples=['S12', 'S1'])
    predicted = predict_samples(result, shuffled)
    assert predicted['sample_id'].to_list() == ['S12', 'S1']
    assert predicted['predicted'].to_list() == ['disease', 'healthy']

    with pytest.raises(ValueError, match="model features are missing"):
        predict_samples(result, eset.subset(features=['g1', 'g2']))
