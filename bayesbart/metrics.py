"""Evaluation metrics for presence/absence predictions.

Discrimination (AUC, AUC-PR, threshold-based scores at the TSS-optimal
threshold) and calibration (Miller regression, Hosmer-Lemeshow test) of
predicted probabilities against observed 0/1 outcomes.
"""

import numpy as np
import numpy.typing as npt
from scipy.optimize import minimize
from scipy.special import expit, logit
from scipy.stats import chi2
from sklearn.metrics import roc_auc_score, precision_recall_curve, cohen_kappa_score
from sklearn.metrics import auc as area_under_curve
from .exceptions import DegenerateFold


def check_classes(y_true: npt.ArrayLike) -> np.ndarray:
    """
    Convert observations to 0/1 integers and check that both classes are present.

    Raises
    ------
    DegenerateFold
        If the observations contain a single class.
    ValueError
        If they are not binary.
    """
    y = np.asarray(y_true)
    if y.dtype == bool:
        y = y.astype(int)
    if not np.isin(y, [0, 1]).all():
        raise ValueError('Observations must be 0/1')
    y = y.astype(int)
    if y.size == 0 or y.min() == y.max():
        raise DegenerateFold('Observations contain a single class')
    return y

def auc(y_true: npt.ArrayLike, y_prob: npt.ArrayLike) -> float:
    y = check_classes(y_true)
    return float(roc_auc_score(y, np.asarray(y_prob, dtype=float)))

def auc_pr(y_true: npt.ArrayLike, y_prob: npt.ArrayLike) -> float:
    """
    Area under the precision-recall curve.
    """
    y = check_classes(y_true)
    precision, recall, _ = precision_recall_curve(y, np.asarray(y_prob, dtype=float))
    return float(area_under_curve(recall, precision))

def threshold_metrics(y_true: npt.ArrayLike, y_prob: npt.ArrayLike, threshold: float) -> dict[str, float]:
    """
    Confusion-matrix scores when predicting presence for y_prob >= threshold.

    Returns
    -------
    dict
        'sensitivity', 'specificity', 'precision', 'ccr' (correct
        classification rate), 'tss' (true skill statistic) and 'kappa'.
    """
    y = check_classes(y_true)
    pred = (np.asarray(y_prob, dtype=float) >= threshold).astype(int)
    tp = int(((pred == 1) & (y == 1)).sum())
    fp = int(((pred == 1) & (y == 0)).sum())
    tn = int(((pred == 0) & (y == 0)).sum())
    fn = int(((pred == 0) & (y == 1)).sum())
    tpr = tp/(tp + fn)
    tnr = tn/(tn + fp)
    return {'sensitivity': tpr,
            'specificity': tnr,
            'precision': tp/(tp + fp) if tp + fp > 0 else np.nan,
            'ccr': (tp + tn)/y.size,
            'tss': tpr + tnr - 1,
            'kappa': float(cohen_kappa_score(y, pred))}

def optimal_threshold(y_true: npt.ArrayLike, y_prob: npt.ArrayLike, resolution: float = 1e-4) -> tuple[float, float]:
    """
    Threshold maximizing the true skill statistic over a regular grid on [0, 1].

    Parameters
    ----------
    y_true, y_prob
        Observations and predicted probabilities.
    resolution : float, optional
        Grid step (default 1e-4).

    Returns
    -------
    tuple
        (threshold, tss). Ties are resolved in favor of the smallest threshold.
    """
    y = check_classes(y_true)
    p = np.asarray(y_prob, dtype=float)
    thresholds = np.linspace(0, 1, int(round(1/resolution)) + 1)
    pos = np.sort(p[y == 1])
    neg = np.sort(p[y == 0])
    # presence is predicted for p >= t
    tpr = 1 - np.searchsorted(pos, thresholds, side='left')/pos.size
    tnr = np.searchsorted(neg, thresholds, side='left')/neg.size
    tss = tpr + tnr - 1
    best = int(np.argmax(tss))
    return float(thresholds[best]), float(tss[best])

def miller_calibration(y_true: npt.ArrayLike, y_prob: npt.ArrayLike, eps: float = 1e-6) -> tuple[float, float]:
    """
    Miller calibration: logistic regression of the observations on the logit of the predictions.

    Perfectly calibrated predictions have intercept 0 and slope 1.

    Parameters
    ----------
    y_true, y_prob
        Observations and predicted probabilities.
    eps : float, optional
        Probabilities are clipped to [eps, 1 - eps] (default 1e-6).

    Returns
    -------
    tuple
        (intercept, slope)
    """
    y = check_classes(y_true)
    x = logit(np.clip(np.asarray(y_prob, dtype=float), eps, 1 - eps))
    A = np.column_stack([np.ones_like(x), x])

    def nll(beta):
        eta = A @ beta
        return np.sum(np.logaddexp(0, eta) - y*eta)

    def grad(beta):
        return A.T @ (expit(A @ beta) - y)

    res = minimize(nll, x0=np.array([0.0, 1.0]), jac=grad, method='BFGS')
    intercept, slope = res.x
    return float(intercept), float(slope)

def hosmer_lemeshow(y_true: npt.ArrayLike, y_prob: npt.ArrayLike, groups: int = 10) -> tuple[float, float]:
    """
    Hosmer-Lemeshow goodness-of-fit test over groups of sorted predictions.

    Returns
    -------
    tuple
        (statistic, p-value) with groups - 2 degrees of freedom.
    """
    y = check_classes(y_true)
    p = np.asarray(y_prob, dtype=float)
    stat = 0.0
    for idx in np.array_split(np.argsort(p, kind='stable'), groups):
        if idx.size == 0:
            continue
        observed = y[idx].sum()
        expected = p[idx].sum()
        denom = expected*(1 - expected/idx.size)
        if denom > 0:
            stat += (observed - expected)**2/denom
    return float(stat), float(chi2.sf(stat, max(groups - 2, 1)))

def evaluate(y_true: npt.ArrayLike, y_prob: npt.ArrayLike, threshold_resolution: float = 1e-4) -> dict[str, float]:
    """
    All discrimination and calibration metrics of a set of predictions.

    Returns
    -------
    dict
        'n', 'n_presence', 'auc', 'auc_pr', 'threshold', 'tss', 'kappa',
        'ccr', 'sensitivity', 'specificity', 'precision', 'miller_intercept',
        'miller_slope', 'hl_stat' and 'hl_pvalue'.

    Raises
    ------
    DegenerateFold
        If the observations contain a single class.
    """
    y = check_classes(y_true)
    p = np.asarray(y_prob, dtype=float)
    threshold, _ = optimal_threshold(y, p, resolution=threshold_resolution)
    intercept, slope = miller_calibration(y, p)
    hl_stat, hl_pvalue = hosmer_lemeshow(y, p)
    out = {'n': int(y.size), 'n_presence': int(y.sum()),
           'auc': auc(y, p), 'auc_pr': auc_pr(y, p), 'threshold': threshold}
    tm = threshold_metrics(y, p, threshold)
    out.update({k: tm[k] for k in ('tss', 'kappa', 'ccr', 'sensitivity', 'specificity', 'precision')})
    out.update({'miller_intercept': intercept, 'miller_slope': slope, 'hl_stat': hl_stat, 'hl_pvalue': hl_pvalue})
    return out
