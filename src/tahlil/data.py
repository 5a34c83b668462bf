"""
Expression data handling: loading, alignment and feature filtering.
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union
import logging
from pathlib import Path

import numba as nb
import numpy as np
import polars as pl
from scipy import stats

logger = logging.getLogger(__name__)

Selector = Union[Sequence[str], Sequence[bool], np.ndarray, None]


@nb.njit
def _row_max(matrix):
    """Maximum value of every row."""
    n_rows = matrix.shape[0]
    out = np.empty(n_rows, dtype=np.float64)
    for i in range(n_rows):
        out[i] = np.max(matrix[i])
    return out


def _check_unique(ids: List[str], label: str) -> None:
    seen = set()
    duplicates = []
    for item in ids:
        if item in seen:
            duplicates.append(item)
        seen.add(item)
    if duplicates:
        raise ValueError(f"Duplicate {label} ids: {', '.join(sorted(set(duplicates))[:10])}")


class ExpressionSet:
    """Features x samples expression matrix with sample and feature annotation."""

    def __init__(
        self,
        exprs,
        feature_ids: Sequence[str],
        sample_ids: Sequence[str],
        pdata: Optional[pl.DataFrame] = None,
        fdata: Optional[pl.DataFrame] = None
    ):
        self.exprs = np.asarray(exprs, dtype=np.float64)
        self.feature_ids = [str(f) for f in feature_ids]
        self.sample_ids = [str(s) for s in sample_ids]

        if self.exprs.ndim != 2:
            raise ValueError(f"Expression matrix must be 2-dimensional, got {self.exprs.ndim} dimensions")
        if self.exprs.shape != (len(self.feature_ids), len(self.sample_ids)):
            raise ValueError(
                f"Expression matrix shape {self.exprs.shape} does not match "
                f"{len(self.feature_ids)} features x {len(self.sample_ids)} samples"
            )
        _check_unique(self.feature_ids, "feature")
        _check_unique(self.sample_ids, "sample")

        if pdata is None:
            pdata = pl.DataFrame({'sample_id': self.sample_ids})
        if fdata is None:
            fdata = pl.DataFrame({'feature_id': self.feature_ids})

        if pdata.height != len(self.sample_ids):
            raise ValueError(
                f"Sample annotation has {pdata.height} rows but the matrix has {len(self.sample_ids)} samples"
            )
        if fdata.height != len(self.feature_ids):
            raise ValueError(
                f"Feature annotation has {fdata.height} rows but the matrix has {len(self.feature_ids)} features"
            )
        if pdata.columns[0] != 'sample_id' or pdata['sample_id'].cast(pl.Utf8).to_list() != self.sample_ids:
            raise ValueError("Sample annotation is not aligned with the expression matrix columns")
        if fdata.columns[0] != 'feature_id' or fdata['feature_id'].cast(pl.Utf8).to_list() != self.feature_ids:
            raise ValueError("Feature annotation is not aligned with the expression matrix rows")

        self.pdata = pdata
        self.fdata = fdata

    def __repr__(self) -> str:
        return f"ExpressionSet({self.n_features} features x {self.n_samples} samples)"

    @property
    def shape(self) -> Tuple[int, int]:
        return self.exprs.shape

    @property
    def n_features(self) -> int:
        return self.exprs.shape[0]

    @property
    def n_samples(self) -> int:
        return self.exprs.shape[1]

    def phenotype(self, column: str) -> List:
        """Return a sample annotation column as a list in sample order."""
        if column not in self.pdata.columns:
            raise ValueError(
                f"Phenotype '{column}' not found in sample annotation. "
                f"Available columns: {', '.join(self.pdata.columns)}"
            )
        return self.pdata[column].to_list()

    def subset(self, features: Selector = None, samples: Selector = None) -> "ExpressionSet":
        """Select features and/or samples by id list or boolean mask.

        Annotation rows follow the selection, so the result stays aligned.
        """
        row_idx = self._resolve(features, self.feature_ids, "feature")
        col_idx = self._resolve(samples, self.sample_ids, "sample")

        return ExpressionSet(
            self.exprs[np.ix_(row_idx, col_idx)],
            [self.feature_ids[i] for i in row_idx],
            [self.sample_ids[i] for i in col_idx],
            pdata=self.pdata.select(pl.all().gather(col_idx.tolist())),
            fdata=self.fdata.select(pl.all().gather(row_idx.tolist()))
        )

    @staticmethod
    def _resolve(selector: Selector, ids: List[str], label: str) -> np.ndarray:
        if selector is None:
            return np.arange(len(ids))
        selector = list(selector)
        if selector and all(isinstance(s, (bool, np.bool_)) for s in selector):
            if len(selector) != len(ids):
                raise ValueError(f"Boolean {label} mask has length {len(selector)}, expected {len(ids)}")
            return np.flatnonzero(np.asarray(selector, dtype=bool))
        positions = {item: i for i, item in enumerate(ids)}
        missing = [s for s in selector if str(s) not in positions]
        if missing:
            raise ValueError(f"Unknown {label} ids: {', '.join(map(str, missing[:10]))}")
        return np.array([positions[str(s)] for s in selector], dtype=np.int64)

    def to_frame(self) -> pl.DataFrame:
        """Expression values as a polars frame, one column per sample."""
        data = {'feature_id': self.feature_ids}
        for j, sample in enumerate(self.sample_ids):
            data[sample] = self.exprs[:, j]
        return pl.DataFrame(data)


def _read_tsv(file_path: Path) -> pl.DataFrame:
    """Read a tab-delimited table keeping the first (id) column as text."""
    with open(file_path) as f:
        id_col = f.readline().rstrip('\r\n').split('\t')[0]
    return pl.read_csv(
        file_path,
        separator='\t',
        has_header=True,
        schema_overrides={id_col: pl.Utf8}
    )


def load_expression_matrix(file_path: Path) -> Tuple[List[str], List[str], np.ndarray]:
    """
    Load a tab-delimited expression matrix.

    Args:
        file_path: Path to the matrix; first column holds feature ids, the
            remaining columns hold one sample each

    Returns:
        Tuple of (feature ids, sample ids, features x samples array)
    """
    df = _read_tsv(file_path)
    if df.width < 2:
        raise ValueError(f"Expression matrix {file_path} needs a feature id column and at least one sample")

    id_col = df.columns[0]
    feature_ids = df[id_col].cast(pl.Utf8).to_list()
    sample_ids = df.columns[1:]

    try:
        matrix = df.select(sample_ids).cast(pl.Float64).to_numpy()
    except pl.exceptions.PolarsError as e:
        raise ValueError(f"Expression matrix {file_path} contains non-numeric values: {e}")

    logger.info(f"Loaded expression matrix with {len(feature_ids)} features and {len(sample_ids)} samples")
    return feature_ids, list(sample_ids), matrix


def load_sample_annotation(file_path: Path) -> pl.DataFrame:
    """
    Load sample annotation; the first column is taken as the sample id.
    """
    df = _read_tsv(file_path)
    df = df.rename({df.columns[0]: 'sample_id'})
    return df.with_columns(pl.col('sample_id').cast(pl.Utf8))


def load_feature_annotation(file_path: Path) -> pl.DataFrame:
    """
    Load feature annotation; the first column is taken as the feature id.
    """
    df = _read_tsv(file_path)
    df = df.rename({df.columns[0]: 'feature_id'})
    return df.with_columns(pl.col('feature_id').cast(pl.Utf8))


def _align(annotation: pl.DataFrame, id_col: str, ids: List[str], label: str) -> pl.DataFrame:
    """Reorder annotation rows to follow ``ids``."""
    annotated = set(annotation[id_col].to_list())
    missing = [i for i in ids if i not in annotated]
    if missing:
        raise ValueError(
            f"{len(missing)} {label}s in the expression matrix have no annotation: "
            f"{', '.join(missing[:10])}"
        )

    extra = annotated - set(ids)
    if extra:
        logger.warning(f"Dropping {len(extra)} annotated {label}s that are not in the expression matrix")

    order = pl.DataFrame({id_col: ids, '_order': np.arange(len(ids))})
    aligned = order.join(annotation.unique(subset=[id_col], keep='first'), on=id_col, how='left')
    return aligned.sort('_order').drop('_order')


def load_expression_set(
    expression_file: Path,
    sample_file: Path,
    feature_file: Optional[Path] = None
) -> ExpressionSet:
    """
    Load an expression matrix together with its annotation.

    Args:
        expression_file: Tab-delimited features x samples matrix
        sample_file: Tab-delimited sample annotation
        feature_file: Optional tab-delimited feature annotation

    Returns:
        ExpressionSet with annotation aligned to the matrix
    """
    feature_ids, sample_ids, matrix = load_expression_matrix(expression_file)

    pdata = _align(load_sample_annotation(sample_file), 'sample_id', sample_ids, 'sample')

    if feature_file is not None:
        fdata = _align(load_feature_annotation(feature_file), 'feature_id', feature_ids, 'feature')
    else:
        fdata = None

    return ExpressionSet(matrix, feature_ids, sample_ids, pdata=pdata, fdata=fdata)


def load_gene_sets(file_path: Path) -> Dict[str, List[str]]:
    """
    Load a gene set collection in GMT format.

    Each line holds the set name, a description and the member genes,
    separated by tabs.

    Args:
        file_path: Path to the GMT file

    Returns:
        Dictionary mapping set name to its genes, in file order
    """
    gene_sets = {}
    with open(file_path) as f:
        for line_no, line in enumerate(f, start=1):
            line = line.rstrip('\n\r')
            if not line.strip():
                continue
            fields = line.split('\t')
            if len(fields) < 2:
                raise ValueError(f"Malformed GMT line {line_no} in {file_path}: expected name and description")
            name = fields[0]
            genes = list(dict.fromkeys(g for g in fields[2:] if g))
            if name in gene_sets:
                logger.warning(f"Gene set {name} appears more than once in {file_path}; keeping the last one")
            gene_sets[name] = genes

    logger.info(f"Loaded {len(gene_sets)} gene sets from {file_path}")
    return gene_sets


def write_gene_sets(
    gene_sets: Dict[str, Sequence[str]],
    file_path: Path,
    descriptions: Optional[Dict[str, str]] = None
) -> None:
    """Write a gene set collection in GMT format."""
    descriptions = descriptions or {}
    with open(file_path, 'w') as f:
        for name, genes in gene_sets.items():
            fields = [name, descriptions.get(name, 'NA')] + list(genes)
            f.write('\t'.join(fields) + '\n')


def log2_transform(eset: ExpressionSet, pseudocount: float = 1.0) -> ExpressionSet:
    """Return a copy of ``eset`` with values replaced by log2(x + pseudocount)."""
    shifted = eset.exprs + pseudocount
    if np.any(shifted <= 0):
        raise ValueError("Cannot log-transform: values plus pseudocount must be positive")
    return ExpressionSet(
        np.log2(shifted),
        eset.feature_ids,
        eset.sample_ids,
        pdata=eset.pdata,
        fdata=eset.fdata
    )


def variation_scores(matrix: np.ndarray, score: str = 'mad') -> np.ndarray:
    """Per-row spread score of a features x samples matrix."""
    if score == 'mad':
        return stats.median_abs_deviation(matrix, axis=1, scale='normal')
    elif score == 'sd':
        return np.std(matrix, axis=1, ddof=1)
    elif score == 'iqr':
        return stats.iqr(matrix, axis=1)
    elif score == 'cv':
        means = np.mean(matrix, axis=1)
        sds = np.std(matrix, axis=1, ddof=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            return np.where(np.abs(means) > 1e-10, sds / np.abs(means), 0.0)
    else:
        raise ValueError(f"Unknown variation score: {score}")


def variation_filter(
    eset: ExpressionSet,
    score: str = 'mad',
    n_features: Optional[int] = None,
    min_score: Optional[float] = None,
    min_expression: Optional[float] = None
) -> ExpressionSet:
    """
    Keep the most variable features.

    Args:
        eset: Input expression set
        score: Spread score ('mad', 'sd', 'iqr' or 'cv')
        n_features: Number of top-scoring features to keep
        min_score: Minimum score for a feature to be kept
        min_expression: Drop features whose maximum value is below this

    Returns:
        Filtered ExpressionSet; features keep their original order
    """
    scores = variation_scores(eset.exprs, score)
    keep = np.ones(eset.n_features, dtype=bool)

    if min_expression is not None:
        keep &= _row_max(np.ascontiguousarray(eset.exprs)) >= min_expression
    if min_score is not None:
        keep &= scores >= min_score

    if n_features is not None:
        if n_features <= 0:
            raise ValueError("n_features must be positive")
        candidates = np.flatnonzero(keep)
        if len(candidates) > n_features:
            # Stable sort so ties keep the original order
            ranked = candidates[np.argsort(-scores[candidates], kind='stable')]
            keep = np.zeros(eset.n_features, dtype=bool)
            keep[ranked[:n_features]] = True

    logger.info(f"Variation filter ({score}) kept {int(keep.sum())} of {eset.n_features} features")
    return eset.subset(features=keep.tolist())
