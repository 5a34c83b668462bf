"""
Differential expression between two sample groups.
"""

from typing import Dict, List, Optional, Sequence, Tuple
import logging

import numpy as np
import polars as pl
import statsmodels.api as sm
from scipy import stats
from tqdm.auto import tqdm

from tahlil.data import ExpressionSet
from tahlil.stats import perform_fdr_analysis

logger = logging.getLogger(__name__)


def resolve_contrast(
    labels: Sequence,
    case: Optional[str] = None,
    control: Optional[str] = None
) -> Tuple[str, str]:
    """
    Work out the case and control labels of a two-group comparison.

    When neither is given the phenotype must have exactly two levels; the
    first in sorted order is the control. When only one is given the other
    is the remaining level.
    """
    levels = sorted({str(label) for label in labels if label is not None})

    if case is None and control is None:
        if len(levels) != 2:
            raise ValueError(
                f"Phenotype has {len(levels)} levels ({', '.join(levels)}); "
                f"specify case and control explicitly"
            )
        return levels[1], levels[0]

    if case is None or control is None:
        given = str(case if case is not None else control)
        others = [level for level in levels if level != given]
        if len(others) != 1:
            raise ValueError(f"Cannot infer the other group for '{given}' among levels {', '.join(levels)}")
        return (given, others[0]) if case is not None else (others[0], given)

    case, control = str(case), str(control)
    for label in (case, control):
        if label not in levels:
            raise ValueError(f"Label '{label}' not found in phenotype levels: {', '.join(levels)}")
    if case == control:
        raise ValueError("Case and control labels must differ")
    return case, control


def _group_masks(eset: ExpressionSet, phenotype: str, case: str, control: str):
    labels = np.array([str(v) for v in eset.phenotype(phenotype)])
    case_mask = labels == case
    control_mask = labels == control
    if case_mask.sum() < 2 or control_mask.sum() < 2:
        raise ValueError(
            f"Need at least 2 samples per group, got {int(case_mask.sum())} '{case}' "
            f"and {int(control_mask.sum())} '{control}'"
        )
    return case_mask, control_mask


def _with_fdr(df: pl.DataFrame) -> pl.DataFrame:
    if df.height == 0:
        return df.with_columns(pl.lit(None, dtype=pl.Float64).alias('fdr'))
    fdr = perform_fdr_analysis(df['pval'].to_numpy())['pvals_corrected']
    return df.with_columns(pl.Series('fdr', fdr, dtype=pl.Float64))


def ttest_genes(
    eset: ExpressionSet,
    phenotype: str,
    case: Optional[str] = None,
    control: Optional[str] = None,
    equal_var: bool = False
) -> pl.DataFrame:
    """
    Per-gene two-sample t-test.

    Expression is assumed to be on a log scale, so the difference of group
    means is reported as the log fold change.

    Args:
        eset: Expression set
        phenotype: Sample annotation column holding the group labels
        case: Case label
        control: Control label
        equal_var: Student's t-test if True, Welch's otherwise

    Returns:
        DataFrame with feature_id, mean_case, mean_control, log_fc, t, pval
        and fdr, ordered by p-value
    """
    case, control = resolve_contrast(eset.phenotype(phenotype), case, control)
    case_mask, control_mask = _group_masks(eset, phenotype, case, control)

    case_values = eset.exprs[:, case_mask]
    control_values = eset.exprs[:, control_mask]

    with np.errstate(divide='ignore', invalid='ignore'):
        t_stat, p_values = stats.ttest_ind(case_values, control_values, axis=1, equal_var=equal_var)

    # Constant genes give nan; treat them as showing no difference
    t_stat = np.nan_to_num(t_stat, nan=0.0)
    p_values = np.where(np.isnan(p_values), 1.0, p_values)

    mean_case = case_values.mean(axis=1)
    mean_control = control_values.mean(axis=1)

    result = pl.DataFrame({
        'feature_id': eset.feature_ids,
        'mean_case': mean_case,
        'mean_control': mean_control,
        'log_fc': mean_case - mean_control,
        't': t_stat,
        'pval': p_values,
    })

    logger.info(
        f"t-test of {case} ({int(case_mask.sum())}) vs {control} ({int(control_mask.sum())}) "
        f"over {eset.n_features} features"
    )
    return _with_fdr(result).sort('pval', maintain_order=True)


def design_matrix(
    pdata: pl.DataFrame,
    phenotype: str,
    case: str,
    control: str,
    covariates: Sequence[str] = ()
) -> Tuple[np.ndarray, List[str], np.ndarray]:
    """
    Build the design matrix of a two-group linear model.

    Args:
        pdata: Sample annotation
        phenotype: Column with the group labels
        case: Case label (coded 1)
        control: Control label (coded 0)
        covariates: Additional columns; numeric ones enter as is,
            others are one-hot encoded dropping the first level

    Returns:
        Tuple of (design matrix, column names, mask of samples used)
    """
    for column in [phenotype, *covariates]:
        if column not in pdata.columns:
            raise ValueError(f"Column '{column}' not found in sample annotation")

    labels = pdata[phenotype].cast(pl.Utf8)
    sample_mask = labels.is_in([case, control]).fill_null(False).to_numpy()
    used = pdata.filter(pl.Series(sample_mask))

    columns = [np.ones(used.height), (used[phenotype].cast(pl.Utf8) == case).cast(pl.Float64).to_numpy()]
    names = ['intercept', f"{phenotype}[{case}]"]

    for covariate in covariates:
        if used[covariate].null_count() > 0:
            raise ValueError(f"Covariate '{covariate}' has missing values")
        if used.schema[covariate].is_numeric():
            columns.append(used[covariate].cast(pl.Float64).to_numpy())
            names.append(covariate)
        else:
            dummies = used.select(pl.col(covariate).cast(pl.Utf8)).to_dummies(drop_first=True)
            for name in dummies.columns:
                columns.append(dummies[name].cast(pl.Float64).to_numpy())
                names.append(name)

    X = np.column_stack(columns)
    if np.linalg.matrix_rank(X) < X.shape[1]:
        raise ValueError(f"Design matrix is rank deficient: columns {', '.join(names)}")
    return X, names, sample_mask


def fit_gene_lm(
    eset: ExpressionSet,
    phenotype: str,
    case: Optional[str] = None,
    control: Optional[str] = None,
    covariates: Sequence[str] = ()
) -> pl.DataFrame:
    """
    Per-gene ordinary least squares fit of expression on the group indicator
    and covariates, reporting the group coefficient.

    Returns:
        DataFrame with feature_id, coef, se, t, pval and fdr, ordered by p-value
    """
    case, control = resolve_contrast(eset.phenotype(phenotype), case, control)
    _group_masks(eset, phenotype, case, control)

    X, names, sample_mask = design_matrix(eset.pdata, phenotype, case, control, covariates)
    if X.shape[0] <= X.shape[1]:
        raise ValueError(f"Not enough samples ({X.shape[0]}) for {X.shape[1]} model terms")

    values = eset.exprs[:, sample_mask]
    coefs = np.empty(eset.n_features)
    ses = np.empty(eset.n_features)
    tvals = np.empty(eset.n_features)
    pvals = np.empty(eset.n_features)

    for i in tqdm(range(eset.n_features), desc="Fitting gene models", unit="gene", leave=False):
        fit = sm.OLS(values[i], X).fit()
        coefs[i] = fit.params[1]
        ses[i] = fit.bse[1]
        tvals[i] = fit.tvalues[1]
        pvals[i] = fit.pvalues[1]

    pvals = np.where(np.isnan(pvals), 1.0, pvals)
    tvals = np.nan_to_num(tvals, nan=0.0)

    logger.info(f"Fitted {eset.n_features} linear models with terms: {', '.join(names)}")
    result = pl.DataFrame({
        'feature_id': eset.feature_ids,
        'coef': coefs,
        'se': ses,
        't': tvals,
        'pval': pvals,
    })
    return _with_fdr(result).sort('pval', maintain_order=True)


def top_table(
    results: pl.DataFrame,
    fdr: float = 0.05,
    min_abs_effect: float = 0.0,
    n: Optional[int] = None,
    effect_col: str = 'log_fc'
) -> pl.DataFrame:
    """Significant rows of a result table, ordered by p-value."""
    table = results.filter(
        (pl.col('fdr') <= fdr) & (pl.col(effect_col).abs() >= min_abs_effect)
    ).sort('pval', maintain_order=True)
    if n is not None:
        table = table.head(n)
    return table


def split_signature(
    results: pl.DataFrame,
    fdr: float = 0.05,
    effect_col: str = 'log_fc',
    min_abs_effect: float = 0.0
) -> Dict[str, List[str]]:
    """Split significant features into up- and down-regulated gene lists."""
    significant = top_table(results, fdr=fdr, min_abs_effect=min_abs_effect, effect_col=effect_col)
    return {
        'up': significant.filter(pl.col(effect_col) > 0)['feature_id'].to_list(),
        'down': significant.filter(pl.col(effect_col) < 0)['feature_id'].to_list(),
    }
