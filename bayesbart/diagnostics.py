"""Diagnostics for fitted ensembles.

Variable importance from split counts, backward variable selection by
repeated small-ensemble fits and convergence checks on the chain traces.
"""

import logging
from dataclasses import dataclass
import numpy as np
import pandas as pd
import numpy.typing as npt
from joblib import Parallel, delayed
from .bart import BART
from .ensemble import Posterior
from .predict import predict

logger = logging.getLogger(__name__)


def variable_counts(posterior: Posterior) -> pd.DataFrame:
    """
    Number of splits on each covariate, summed over the trees of every draw.

    Returns
    -------
    pd.DataFrame
        One row per draw, one column per covariate.
    """
    p = len(posterior.feature_names)
    counts = np.zeros((posterior.n_draws, p), dtype=int)
    for d, draw in enumerate(posterior.draws):
        for tree in draw.trees:
            counts[d] += tree.count_splits(p)
    return pd.DataFrame(counts, columns=list(posterior.feature_names))

def variable_importance(posterior: Posterior) -> pd.Series:
    """
    Share of the splits using each covariate, averaged over draws.

    Draws without any split are ignored.

    Returns
    -------
    pd.Series
        Indexed by covariate, sums to 1 unless no draw has a split.
    """
    counts = variable_counts(posterior)
    tot = counts.sum(axis=1)
    shares = counts.loc[tot > 0].div(tot[tot > 0], axis=0)
    if len(shares) == 0:
        return pd.Series(0.0, index=counts.columns)
    return shares.mean(axis=0)

def _fit_importance(X, y, m, seed, kwargs) -> pd.Series:
    post = BART(X, y, m=m, seed=np.random.default_rng(seed), **kwargs).run()
    return variable_importance(post)

def importance_fit(X: pd.DataFrame, y: pd.Series | npt.ArrayLike, m: int = 10, n_repeats: int = 10,
                   n_jobs: int | None = None, seed: int = 45, **kwargs) -> pd.DataFrame:
    """
    Average variable importance over repeated fits of small ensembles.

    Small ensembles make the trees compete for splits, which makes the
    importance of uninformative covariates drop.

    Parameters
    ----------
    X, y
        Training data.
    m : int, optional
        Number of trees of each fit (default 10).
    n_repeats : int, optional
        Number of independent fits (default 10).
    n_jobs : int or None, optional
        Size of the joblib worker pool (default None, sequential).
    seed : int, optional
        Root seed (default 45).
    **kwargs
        Passed to BART.

    Returns
    -------
    pd.DataFrame
        Indexed by covariate with columns 'mean' and 'std', sorted by
        decreasing mean.
    """
    seeds = np.random.SeedSequence(seed).spawn(n_repeats)
    res = Parallel(n_jobs=n_jobs)(delayed(_fit_importance)(X, y, m, s, kwargs) for s in seeds)
    table = pd.concat(res, axis=1)
    out = pd.DataFrame({'mean': table.mean(axis=1), 'std': table.std(axis=1, ddof=1) if n_repeats > 1 else 0.0})
    return out.sort_values('mean', ascending=False)


@dataclass
class VariableSelection():
    """
    Result of the backward variable selection.

    Attributes
    ----------
    selected : list of str
        Covariates of the step with the smallest RMSE.
    trace : pd.DataFrame
        One row per step with the covariates used, the covariate dropped
        after the step and the mean and std of the RMSE over repeats.
    """
    selected: list[str]
    trace: pd.DataFrame


def _fit_rmse(X, y, m, seed, kwargs) -> tuple[float, pd.Series]:
    post = BART(X, y, m=m, seed=np.random.default_rng(seed), **kwargs).run()
    pred = predict(post, X, quantiles=())['mean'].to_numpy()
    rmse = np.sqrt(np.mean((pred - np.asarray(y, dtype=float))**2))
    return rmse, variable_importance(post)

def variable_selection(X: pd.DataFrame, y: pd.Series | npt.ArrayLike, n_repeats: int = 10, m: int = 10,
                       min_vars: int = 3, n_jobs: int | None = None, seed: int = 45, **kwargs) -> VariableSelection:
    """
    Backward elimination of covariates by in-sample RMSE.

    At each step n_repeats small ensembles are fit on the current covariates;
    the covariate with the lowest average importance is dropped, until
    min_vars covariates are left. The selected set is the one with the
    smallest average RMSE (of probabilities, for a binary response).

    Parameters
    ----------
    X, y
        Training data.
    n_repeats : int, optional
        Fits per step (default 10).
    m : int, optional
        Trees per fit (default 10).
    min_vars : int, optional
        Covariates left at the last step (default 3).
    n_jobs : int or None, optional
        Size of the joblib worker pool (default None, sequential).
    seed : int, optional
        Root seed (default 45).
    **kwargs
        Passed to BART.

    Returns
    -------
    VariableSelection
    """
    if min_vars < 1:
        raise ValueError('min_vars must be at least 1')
    X = X.rename(columns=str)
    current: list[str] = list(X.columns)
    ss = np.random.SeedSequence(seed)
    rows = []
    while True:
        seeds = ss.spawn(n_repeats)
        res = Parallel(n_jobs=n_jobs)(delayed(_fit_rmse)(X.loc[:, current], y, m, s, kwargs) for s in seeds)
        rmses = np.array([r[0] for r in res])
        importance = pd.concat([r[1] for r in res], axis=1).mean(axis=1)
        row = {'n_vars': len(current), 'variables': list(current),
               'rmse_mean': rmses.mean(), 'rmse_std': rmses.std(ddof=1) if n_repeats > 1 else 0.0,
               'dropped': None}
        rows.append(row)
        if len(current) <= min_vars:
            break
        dropped = str(importance.idxmin())
        row['dropped'] = dropped
        logger.info(f'Variable selection: {len(current)} covariates, RMSE {row["rmse_mean"]:.4f}, dropping {dropped}')
        current = [c for c in current if c != dropped]

    trace = pd.DataFrame(rows)
    best = int(trace['rmse_mean'].idxmin())
    return VariableSelection(selected=list(trace.loc[best, 'variables']), trace=trace)


def _trace_column(posterior: Posterior, column: str | None) -> str:
    if column is not None:
        return column
    return 'mean_fit' if posterior.is_binary else 'sigma'

def gelman_rubin(posterior: Posterior, column: str | None = None) -> float:
    """
    Split R-hat of a retained trace.

    Every chain is split in two halves, so a single chain can also be
    checked. Values close to 1 indicate convergence.

    Parameters
    ----------
    posterior : Posterior
    column : str or None, optional
        Trace column. Defaults to 'sigma' for a continuous response and
        'mean_fit' for a binary one.

    Returns
    -------
    float

    Raises
    ------
    ValueError
        If a chain has less than 4 retained iterations.
    """
    column = _trace_column(posterior, column)
    trace = posterior.trace.loc[posterior.trace['retained']]
    chains = [g[column].to_numpy() for _, g in trace.groupby('chain')]
    if len(chains) == 0:
        raise ValueError('No retained iterations')
    n = min(len(c) for c in chains)//2
    if n < 2:
        raise ValueError('At least 4 retained iterations per chain are needed')
    halves = np.array([h for c in chains for h in (c[:n], c[n:2*n])])

    W = halves.var(axis=1, ddof=1).mean()
    B = n*halves.mean(axis=1).var(ddof=1)
    if W == 0:
        return 1.0 if B == 0 else np.inf
    var_hat = (n - 1)/n*W + B/n
    return float(np.sqrt(var_hat/W))

def check_convergence(posterior: Posterior, threshold: float) -> bool:
    """
    Emit a NonConvergenceWarning if the variance of the retained trace exceeds threshold.

    Returns
    -------
    bool
        True if the chain is deemed converged.
    """
    return posterior.check_convergence(threshold)

def summarize_draws(posterior: Posterior) -> pd.DataFrame:
    """
    Per-draw summary of the ensemble.

    Returns
    -------
    pd.DataFrame
        Columns 'chain', 'iteration', 'sigma', 'n_leaves', 'mean_depth',
        'max_depth' and 'n_splits'.
    """
    rows = []
    for draw in posterior.draws:
        depths = [t.depth for t in draw.trees]
        n_leaves = sum(t.n_leaves for t in draw.trees)
        rows.append({'chain': draw.chain, 'iteration': draw.iteration,
                     'sigma': np.sqrt(draw.sigma2), 'n_leaves': n_leaves,
                     'mean_depth': np.mean(depths), 'max_depth': max(depths),
                     'n_splits': n_leaves - len(draw.trees)})
    return pd.DataFrame(rows, columns=['chain', 'iteration', 'sigma', 'n_leaves', 'mean_depth', 'max_depth', 'n_splits'])
