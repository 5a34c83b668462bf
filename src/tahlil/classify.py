"""
Sample classification with random forests.
"""

from dataclasses import dataclass
from typing import List, Optional
import logging

import numpy as np
import polars as pl
from sklearn.ensemble import RandomForestClassifier
from sklearn.metrics import accuracy_score, balanced_accuracy_score, confusion_matrix
from sklearn.model_selection import StratifiedKFold, cross_val_predict

from tahlil.data import ExpressionSet

logger = logging.getLogger(__name__)


@dataclass
class ClassificationResult:
    """Cross-validated performance and the refitted model."""

    model: RandomForestClassifier
    feature_ids: List[str]
    classes: List[str]
    accuracy: float
    balanced_accuracy: float
    oob_score: float
    confusion: pl.DataFrame
    predictions: pl.DataFrame
    importance: pl.DataFrame

    def summary(self) -> dict:
        return {
            'accuracy': self.accuracy,
            'balanced_accuracy': self.balanced_accuracy,
            'oob_score': self.oob_score,
            'classes': self.classes,
            'n_features': len(self.feature_ids),
        }


def train_random_forest(
    eset: ExpressionSet,
    phenotype: str,
    n_estimators: int = 500,
    cv_folds: int = 5,
    seed: Optional[int] = None,
    max_features: str = 'sqrt'
) -> ClassificationResult:
    """
    Cross-validate and fit a random forest predicting a sample phenotype.

    Args:
        eset: Expression set; features are the predictors
        phenotype: Sample annotation column with the class labels
        n_estimators: Number of trees
        cv_folds: Number of stratified cross-validation folds
        seed: Random state for folds and forests
        max_features: Features considered at each split

    Returns:
        ClassificationResult
    """
    raw_labels = eset.phenotype(phenotype)
    labelled = [label is not None for label in raw_labels]
    if not all(labelled):
        logger.warning(f"Excluding {labelled.count(False)} samples without a '{phenotype}' label")
        eset = eset.subset(samples=labelled)
        raw_labels = eset.phenotype(phenotype)

    y = np.array([str(label) for label in raw_labels])
    classes, counts = np.unique(y, return_counts=True)
    if len(classes) < 2:
        raise ValueError(f"Phenotype '{phenotype}' needs at least two classes")
    if counts.min() < cv_folds:
        raise ValueError(
            f"Smallest class has {counts.min()} samples, fewer than the {cv_folds} cross-validation folds"
        )

    X = eset.exprs.T

    def make_forest(oob: bool = False) -> RandomForestClassifier:
        return RandomForestClassifier(
            n_estimators=n_estimators,
            max_features=max_features,
            oob_score=oob,
            random_state=seed
        )

    folds = StratifiedKFold(n_splits=cv_folds, shuffle=True, random_state=seed)
    predicted = cross_val_predict(make_forest(), X, y, cv=folds)

    model = make_forest(oob=True)
    model.fit(X, y)

    cm = confusion_matrix(y, predicted, labels=classes)
    confusion = {'true': classes.tolist()}
    for j, label in enumerate(classes):
        confusion[label] = cm[:, j]

    importance = pl.DataFrame({
        'feature_id': eset.feature_ids,
        'importance': model.feature_importances_,
    }).sort('importance', descending=True, maintain_order=True)

    result = ClassificationResult(
        model=model,
        feature_ids=list(eset.feature_ids),
        classes=classes.tolist(),
        accuracy=float(accuracy_score(y, predicted)),
        balanced_accuracy=float(balanced_accuracy_score(y, predicted)),
        oob_score=float(model.oob_score_),
        confusion=pl.DataFrame(confusion),
        predictions=pl.DataFrame({
            'sample_id': eset.sample_ids,
            'true': y.tolist(),
            'predicted': [str(p) for p in predicted],
        }),
        importance=importance,
    )

    logger.info(
        f"Random forest on '{phenotype}': {cv_folds}-fold CV accuracy {result.accuracy:.3f}, "
        f"balanced accuracy {result.balanced_accuracy:.3f}"
    )
    return result


def predict_samples(result: ClassificationResult, eset: ExpressionSet) -> pl.DataFrame:
    """Predict labels of new samples using the features the model was trained on."""
    available = set(eset.feature_ids)
    missing = [f for f in result.feature_ids if f not in available]
    if missing:
        raise ValueError(f"{len(missing)} model features are missing from the data: {', '.join(missing[:10])}")

    aligned = eset.subset(features=result.feature_ids)
    predicted = result.model.predict(aligned.exprs.T)
    return pl.DataFrame({
        'sample_id': aligned.sample_ids,
        'predicted': [str(p) for p in predicted],
    })
