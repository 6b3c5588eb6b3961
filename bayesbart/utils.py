"""Utility functions for bayesbart.

This module provides helper functions for sampling from distributions,
binning covariates into candidate cutpoints, cleaning input tables and
simulating datasets used in the examples and tests.
"""

from typing import Sequence
import numpy as np
import pandas as pd
from scipy.special import gammainccinv, expit
from .mytyping import NDArrayFloat, NDArrayBool


def my_choice[elem](rng: np.random.Generator, a: Sequence[elem], replace: bool = False, p: Sequence[float]|None = None) -> elem:
    """
    Sample a random element from a generic sequence using the provided random generator.

    Parameters
    ----------
    rng : np.random.Generator
        The random number generator.
    a : Sequence[elem]
        The sequence to sample from.
    replace : bool, optional
        Whether the sampling is done with replacement (default is False).
    p : Sequence[float] or None, optional
        The probability weights associated with each element (default is None).

    Returns
    -------
    elem
        A randomly selected element from the sequence.
    """
    sampled_idx = rng.choice(len(a), replace=replace, p=p)
    return a[sampled_idx]

def invgamma_rvs(a, scale, rng):
    """
    Sample a random variate from an inverse gamma distribution.

    Parameters
    ----------
    a : float
        The shape parameter.
    scale : float
        The scale parameter.
    rng : np.random.Generator
        The random number generator.

    Returns
    -------
    float
        A random variate from the inverse gamma distribution.
    """
    U = rng.uniform()
    Y = 1.0 / gammainccinv(a, U)
    return Y * scale

def polya_gamma_rvs(c: NDArrayFloat, rng: np.random.Generator, n_terms: int = 200) -> NDArrayFloat:
    """
    Sample PG(1, c) variates with the truncated sum-of-gammas representation.

    The omitted tail of the series is replaced by its expectation, which keeps
    the first moment exact up to the integral approximation of the tail.

    Parameters
    ----------
    c : NDArrayFloat
        Tilting parameters, one per variate.
    rng : np.random.Generator
        The random number generator.
    n_terms : int, optional
        Number of terms kept in the series (default 200).

    Returns
    -------
    NDArrayFloat
        The sampled variates, same shape as c.
    """
    c = np.abs(np.asarray(c, dtype=float))
    k = np.arange(1, n_terms + 1) - 0.5
    c_scaled = c / (2 * np.pi)
    denom = k[np.newaxis, :]**2 + c_scaled[:, np.newaxis]**2
    g = rng.standard_exponential(size=denom.shape)
    head = (g / denom).sum(axis=1)

    # E[sum_{k > K} g_k / ((k-1/2)^2 + c'^2)] ~ int_K^inf dk / (k^2 + c'^2)
    safe_c = np.where(c_scaled > 1e-8, c_scaled, 1.0)
    tail = np.where(c_scaled > 1e-8, (np.pi/2 - np.arctan(n_terms / safe_c)) / safe_c, 1.0 / n_terms)
    return (head + tail) / (2 * np.pi**2)

def quantile_cutpoints(x: NDArrayFloat, numcut: int) -> NDArrayFloat:
    """
    Compute the candidate split values of a covariate.

    The cutpoints are the midpoints between consecutive unique values. If
    there are more than numcut of them, numcut are picked at evenly spaced
    quantiles of the unique values, so that each bin holds a similar share
    of the distinct values.

    Parameters
    ----------
    x : NDArrayFloat
        The covariate values observed in the training data.
    numcut : int
        Maximum number of cutpoints.

    Returns
    -------
    NDArrayFloat
        Sorted array of cutpoints (possibly empty).
    """
    u = np.unique(x)
    if u.size < 2:
        return np.empty(0)
    midpoints = (u[:-1] + u[1:]) / 2
    if midpoints.size <= numcut:
        return midpoints
    pos = np.linspace(0, midpoints.size - 1, numcut)
    return np.unique(midpoints[np.round(pos).astype(int)])

def drop_incomplete(X: pd.DataFrame, y: pd.Series|None = None, columns: Sequence[str]|None = None) -> tuple[pd.DataFrame, pd.Series|None]:
    """
    Exclude rows with missing values in any used column (and in the response).

    Parameters
    ----------
    X : pd.DataFrame
        Covariate table.
    y : pd.Series or None, optional
        Response aligned with X.
    columns : Sequence[str] or None, optional
        Columns to check; all columns if None.

    Returns
    -------
    tuple
        (X, y) restricted to complete rows.
    """
    if columns is not None:
        X = X.loc[:, list(columns)]
    keep: NDArrayBool = X.notna().all(axis=1).to_numpy()
    if y is not None:
        y = pd.Series(y, index=X.index) if not isinstance(y, pd.Series) else y
        keep &= y.notna().to_numpy()
        return X.loc[keep], y.loc[keep]
    return X.loc[keep], None


##### Simulators #####


def sim_linear(n, rng, p=1):
    """
    Simulate a noise-free response that is a linear function of the first covariate.

    Parameters
    ----------
    n : int
        Number of observations.
    rng : np.random.Generator
        Random generator.
    p : int, optional
        Number of covariates, only 'x0' drives the response (default 1).

    Returns
    -------
    tuple
        (X, y) with X a DataFrame of uniform covariates on [0, 1] and y = x0.
    """
    X = pd.DataFrame({f'x{j}': rng.uniform(size=n) for j in range(p)})
    y = pd.Series(X['x0'].to_numpy().copy(), name='y')
    return X, y

def sim_presence(n, rng, p=10, informative=2, strength=4.0):
    """
    Simulate presence/absence data where only the first covariates matter.

    Parameters
    ----------
    n : int
        Number of observations.
    rng : np.random.Generator
        Random generator.
    p : int, optional
        Total number of covariates 'v1', ..., 'vp' (default 10).
    informative : int, optional
        Number of leading covariates correlated with the response (default 2).
    strength : float, optional
        Slope of each informative covariate on the logit scale (default 4).

    Returns
    -------
    tuple
        (X, y, prob) where y is an integer 0/1 Series and prob the true
        presence probability.
    """
    X = pd.DataFrame({f'v{j+1}': rng.uniform(size=n) for j in range(p)})
    eta = strength * (X.iloc[:, :informative].to_numpy() - 0.5).sum(axis=1) * 2
    prob = expit(eta)
    y = pd.Series((rng.uniform(size=n) < prob).astype(int), name='presence')
    return X, y, prob

def sim_checkerboard(n_side, rng, cell=4, empty_cols=0, noise=0.3):
    """
    Simulate a presence field laid out as a checkerboard on a regular grid.

    Presence is driven by an environmental covariate 'env' which is positive
    on the 'black' squares and negative on the 'white' ones. The rightmost
    empty_cols columns of squares are forced to absence.

    Parameters
    ----------
    n_side : int
        Number of grid points per side.
    rng : np.random.Generator
        Random generator.
    cell : int, optional
        Side of a checkerboard square, in grid points (default 4).
    empty_cols : int, optional
        Number of rightmost square columns without presences (default 0).
    noise : float, optional
        Standard deviation of the noise added to 'env' (default 0.3).

    Returns
    -------
    tuple
        (coords, X, y): DataFrame of 'x', 'y' coordinates, DataFrame of
        covariates ('env', 'noise') and the 0/1 presence Series.
    """
    gx, gy = np.meshgrid(np.arange(n_side), np.arange(n_side), indexing='ij')
    gx, gy = gx.ravel().astype(float), gy.ravel().astype(float)
    cx, cy = (gx // cell).astype(int), (gy // cell).astype(int)
    sign = np.where((cx + cy) % 2 == 0, 1.0, -1.0)
    n_cols = int(np.ceil(n_side / cell))
    if empty_cols > 0:
        sign[cx >= n_cols - empty_cols] = -1.0
    env = sign + noise * rng.standard_normal(gx.size)
    coords = pd.DataFrame({'x': gx, 'y': gy})
    X = pd.DataFrame({'env': env, 'noise': rng.standard_normal(gx.size)})
    y = pd.Series((sign > 0).astype(int), name='presence')
    return coords, X, y
