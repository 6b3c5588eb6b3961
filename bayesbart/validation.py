"""Spatial block cross-validation.

Observations close in space are correlated, so random folds overstate the
predictive performance of a distribution model. Here observations are
grouped into square blocks whose side matches the spatial autocorrelation
range of the covariates, and whole blocks are assigned to folds.
"""

import logging
from dataclasses import dataclass
import numpy as np
import numpy.typing as npt
import pandas as pd
from scipy.spatial.distance import pdist
from sklearn.model_selection import GroupKFold, PredefinedSplit
from skgstat import Variogram
from joblib import Parallel, delayed
from .bart import BART
from .predict import predict
from .metrics import evaluate, check_classes
from .exceptions import DegenerateFold
from .mytyping import NDArrayInt

logger = logging.getLogger(__name__)

METRICS = ['auc', 'auc_pr', 'threshold', 'tss', 'kappa', 'ccr', 'sensitivity', 'specificity',
           'precision', 'miller_intercept', 'miller_slope', 'hl_stat', 'hl_pvalue']


def _coords_array(coords: pd.DataFrame | npt.ArrayLike) -> np.ndarray:
    arr = coords.to_numpy(dtype=float) if isinstance(coords, pd.DataFrame) else np.asarray(coords, dtype=float)
    if arr.ndim != 2 or arr.shape[1] != 2:
        raise ValueError('coords must have two columns')
    return arr

def autocorrelation_range(coords: pd.DataFrame | npt.ArrayLike, X: pd.DataFrame, n_lags: int = 20,
                          max_points: int = 1000, seed: int = 45) -> float:
    """
    Median spatial autocorrelation range of the covariates.

    For each covariate an exponential model is fitted to the empirical
    semivariogram (lags up to half the largest distance). Its effective
    range is the distance where the semivariance reaches 95% of the sill.

    Parameters
    ----------
    coords : pd.DataFrame or array-like
        Coordinates (x, y) of the observations.
    X : pd.DataFrame
        Covariates aligned with coords.
    n_lags : int, optional
        Number of lag classes of the semivariogram (default 20).
    max_points : int, optional
        Observations are subsampled to this size to bound the number of pairs (default 1000).
    seed : int, optional
        Seed of the subsampling (default 45).

    Returns
    -------
    float
    """
    xy = _coords_array(coords)
    values = X.to_numpy(dtype=float)
    if xy.shape[0] != values.shape[0]:
        raise ValueError('coords and X have different lengths')
    if xy.shape[0] > max_points:
        keep = np.random.default_rng(seed).choice(xy.shape[0], size=max_points, replace=False)
        xy, values = xy[keep], values[keep]

    max_lag = pdist(xy).max()/2
    if max_lag == 0:
        raise ValueError('All observations share the same location')

    ranges = []
    for j in range(values.shape[1]):
        ok = np.isfinite(values[:, j])
        v = values[ok, j]
        if v.size < 3 or np.ptp(v) == 0:
            continue
        # maxlag below 1 is a fraction of the largest distance
        V = Variogram(xy[ok], v, model='exponential', n_lags=n_lags, maxlag=0.5, normalize=False)
        # a pure nugget variogram fits to a zero range
        eff_range = V.parameters[0]
        if np.isfinite(eff_range):
            ranges.append(float(np.clip(eff_range, 0, max_lag)))
    if len(ranges) == 0:
        raise ValueError('All covariates are constant')
    return float(np.median(ranges))

def spatial_folds(coords: pd.DataFrame | npt.ArrayLike, k: int = 5, block_size: float | None = None,
                  X: pd.DataFrame | None = None, seed: int = 45) -> NDArrayInt:
    """
    Assign observations to k folds made of square spatial blocks.

    Blocks are shuffled and split into k groups of (nearly) equal block
    count with GroupKFold, so a block never straddles two folds.

    Parameters
    ----------
    coords : pd.DataFrame or array-like
        Coordinates (x, y) of the observations.
    k : int, optional
        Number of folds (default 5).
    block_size : float or None, optional
        Side of the blocks. Defaults to the autocorrelation range of X.
    X : pd.DataFrame or None, optional
        Covariates, needed when block_size is None.
    seed : int, optional
        Seed of the random assignment of blocks to folds (default 45).

    Returns
    -------
    NDArrayInt
        Fold id in 0..k-1 of each observation.
    """
    xy = _coords_array(coords)
    if block_size is None:
        if X is None:
            raise ValueError('Either block_size or X must be given')
        block_size = autocorrelation_range(xy, X, seed=seed)
        logger.info(f'Block size set to the autocorrelation range {block_size:.4g}')
    if block_size <= 0:
        raise ValueError('block_size must be positive')

    cells = np.floor((xy - xy.min(axis=0))/block_size).astype(int)
    _, block = np.unique(cells, axis=0, return_inverse=True)
    block = block.ravel()
    n_blocks = block.max() + 1
    if n_blocks < k:
        raise ValueError(f'Only {n_blocks} blocks for {k} folds, use a smaller block_size')

    folds = np.empty(xy.shape[0], dtype=int)
    gkf = GroupKFold(n_splits=k, shuffle=True, random_state=seed)
    for fold, (_, test_idx) in enumerate(gkf.split(xy, groups=block)):
        folds[test_idx] = fold
    return folds


@dataclass
class CrossValidationResult():
    """
    Per-fold results of a cross-validation.

    Attributes
    ----------
    table : pd.DataFrame
        One row per fold with columns 'fold', 'n_train', 'n_test',
        'skipped', 'reason' and the metrics (NaN for skipped folds).
    """
    table: pd.DataFrame

    @property
    def skipped(self) -> list[int]:
        return self.table.loc[self.table['skipped'], 'fold'].tolist()

    @property
    def summary(self) -> pd.DataFrame:
        '''Mean and std of every metric over the folds that were not skipped.'''
        ok = self.table.loc[~self.table['skipped'], METRICS]
        return pd.DataFrame({'mean': ok.mean(axis=0), 'std': ok.std(axis=0)})


def _run_fold(X, y, fold, train_idx, test_idx, seed, threshold_resolution, kwargs) -> dict:
    row = {'fold': fold, 'n_train': len(train_idx), 'n_test': len(test_idx), 'skipped': False, 'reason': None}
    try:
        check_classes(y[test_idx])
        check_classes(y[train_idx])
        post = BART(X.iloc[train_idx], y[train_idx], seed=np.random.default_rng(seed), **kwargs).run()
        prob = predict(post, X.iloc[test_idx], quantiles=())['mean'].to_numpy()
        row.update(evaluate(y[test_idx], prob, threshold_resolution=threshold_resolution))
    except DegenerateFold as e:
        row.update({'skipped': True, 'reason': str(e)})
        row.update({name: np.nan for name in METRICS})
    return row

def cross_validate(X: pd.DataFrame, y: pd.Series | npt.ArrayLike, folds: npt.ArrayLike,
                   n_jobs: int | None = None, threshold_resolution: float = 1e-4,
                   seed: int = 45, **kwargs) -> CrossValidationResult:
    """
    Fit a binary model on all folds but one and evaluate it on the held-out fold, for every fold.

    Folds whose held-out or training observations contain a single class
    are skipped and reported with NaN metrics.

    Parameters
    ----------
    X : pd.DataFrame
        Covariates.
    y : pd.Series or array-like
        0/1 observations.
    folds : array-like
        Fold id of each observation, as returned by spatial_folds. Rows with
        fold -1 are only used for training.
    n_jobs : int or None, optional
        Size of the joblib worker pool (default None, sequential).
    threshold_resolution : float, optional
        Resolution of the TSS-optimal threshold search (default 1e-4).
    seed : int, optional
        Root seed; every fold gets an independent child stream (default 45).
    **kwargs
        Passed to BART.

    Returns
    -------
    CrossValidationResult
    """
    X = X.reset_index(drop=True).rename(columns=str)
    y = np.asarray(y)
    folds = np.asarray(folds)
    if not (X.shape[0] == y.shape[0] == folds.shape[0]):
        raise ValueError('X, y and folds must have the same length')
    splitter = PredefinedSplit(folds)
    fold_ids = splitter.unique_folds.tolist()
    seeds = np.random.SeedSequence(seed).spawn(len(fold_ids))
    rows = Parallel(n_jobs=n_jobs)(delayed(_run_fold)(X, y, f, train_idx, test_idx, s, threshold_resolution, kwargs)
                                   for f, (train_idx, test_idx), s in zip(fold_ids, splitter.split(), seeds))
    table = pd.DataFrame(rows)
    for _, row in table.loc[table['skipped']].iterrows():
        logger.warning(f'Fold {row["fold"]} skipped: {row["reason"]}')
    return CrossValidationResult(table=table)
