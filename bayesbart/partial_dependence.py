"""Partial dependence of the posterior predictions.

The partial dependence on a covariate at value v is the prediction averaged
over the rows of a reference table in which the covariate is set to v. It is
computed per draw, so every point comes with a credible band.
"""

from dataclasses import dataclass
from typing import Sequence
import numpy as np
import pandas as pd
from .ensemble import Posterior
from .predict import predict_draws, stack_layers, _quantile_name
from .exceptions import MissingCovariate
from .mytyping import NDArrayFloat, RasterLayers


def _default_grid(x: NDArrayFloat, n_grid: int) -> NDArrayFloat:
    x = x[np.isfinite(x)]
    if x.size == 0:
        raise ValueError('Cannot build a grid from a covariate without values')
    return np.linspace(x.min(), x.max(), n_grid)

def _dependence_draws(posterior: Posterior, X: pd.DataFrame, assign: dict[str, float], scale: str) -> NDArrayFloat:
    Xg = X.copy()
    for name, val in assign.items():
        Xg[name] = val
    return predict_draws(posterior, Xg, scale=scale).mean(axis=1)

def _summarize(draws: NDArrayFloat, quantiles: Sequence[float]) -> dict[str, float]:
    out = {'mean': draws.mean()}
    if len(quantiles) > 0:
        for q, v in zip(quantiles, np.quantile(draws, quantiles)):
            out[_quantile_name(q)] = v
    return out

def partial_dependence(posterior: Posterior, X: pd.DataFrame, var: str, n_grid: int = 20,
                       grid: Sequence[float] | None = None, quantiles: Sequence[float] = (0.025, 0.975),
                       scale: str = 'response') -> pd.DataFrame:
    """
    Partial dependence on a single covariate.

    Parameters
    ----------
    posterior : Posterior
        The fitted model.
    X : pd.DataFrame
        Reference rows, usually the training covariates.
    var : str
        Covariate to vary.
    n_grid : int, optional
        Number of evenly spaced grid points over the range of var in X (default 20).
    grid : Sequence[float] or None, optional
        Explicit grid, overrides n_grid.
    quantiles : Sequence[float], optional
        Credible band (default (0.025, 0.975)).
    scale : str, optional
        'response' or 'raw' (default 'response').

    Returns
    -------
    pd.DataFrame
        Columns var, 'mean' and one column per quantile.
    """
    X = X.rename(columns=str)
    var = str(var)
    if var not in X.columns:
        raise MissingCovariate([var])
    grid = np.asarray(grid, dtype=float) if grid is not None else _default_grid(X[var].to_numpy(dtype=float), n_grid)
    rows = []
    for v in grid:
        row = {var: v}
        row.update(_summarize(_dependence_draws(posterior, X, {var: v}, scale), quantiles))
        rows.append(row)
    return pd.DataFrame(rows)

def partial_dependence_2d(posterior: Posterior, X: pd.DataFrame, vars: tuple[str, str], n_grid: int = 10,
                          grids: tuple[Sequence[float], Sequence[float]] | None = None,
                          quantiles: Sequence[float] = (0.025, 0.975), scale: str = 'response') -> pd.DataFrame:
    """
    Joint partial dependence on two covariates, in long format.

    Returns
    -------
    pd.DataFrame
        One row per pair of grid values with columns for both covariates,
        'mean' and one column per quantile.
    """
    X = X.rename(columns=str)
    vars = (str(vars[0]), str(vars[1]))
    var1, var2 = vars
    missing = [v for v in vars if v not in X.columns]
    if len(missing) > 0:
        raise MissingCovariate(missing)
    if grids is None:
        grids = (_default_grid(X[var1].to_numpy(dtype=float), n_grid),
                 _default_grid(X[var2].to_numpy(dtype=float), n_grid))
    rows = []
    for v1 in np.asarray(grids[0], dtype=float):
        for v2 in np.asarray(grids[1], dtype=float):
            row = {var1: v1, var2: v2}
            row.update(_summarize(_dependence_draws(posterior, X, {var1: v1, var2: v2}, scale), quantiles))
            rows.append(row)
    return pd.DataFrame(rows)


@dataclass
class SpatialDependence():
    """
    Spatial partial dependence.

    Attributes
    ----------
    grid : NDArrayFloat
        Grid values of the covariate.
    curve : pd.DataFrame
        The partial dependence curve over the grid, averaged over the cells.
    maps : NDArrayFloat
        Array (n_grid, rows, cols) of posterior mean maps, one per grid value,
        or a single (rows, cols) map when aggregated.
    """
    grid: NDArrayFloat
    curve: pd.DataFrame
    maps: NDArrayFloat


def spatial_partial_dependence(posterior: Posterior, layers: RasterLayers, var: str, n_grid: int = 20,
                               grid: Sequence[float] | None = None, aggregate: bool = False,
                               quantiles: Sequence[float] = (0.025, 0.975),
                               scale: str = 'response') -> SpatialDependence:
    """
    Partial dependence mapped over a stack of covariate grids.

    With aggregate=False the prediction is mapped with var set to each grid
    value in turn. With aggregate=True a single map is returned, holding at
    each cell the partial dependence at the cell's own value of var.

    Parameters
    ----------
    posterior : Posterior
        The fitted model.
    layers : Mapping
        Name to 2-D covariate grid.
    var : str
        Covariate to vary.
    n_grid : int, optional
        Number of grid points (default 20).
    grid : Sequence[float] or None, optional
        Explicit grid, overrides n_grid.
    aggregate : bool, optional
        Return a single summary map (default False).
    quantiles : Sequence[float], optional
        Credible band of the curve (default (0.025, 0.975)).
    scale : str, optional
        'response' or 'raw' (default 'response').

    Returns
    -------
    SpatialDependence
    """
    names = list(dict.fromkeys(posterior.referenced_variables() + [var]))
    table, shape, valid = stack_layers(layers, names)
    grid = np.asarray(grid, dtype=float) if grid is not None else _default_grid(table[var].to_numpy(), n_grid)

    rows = []
    cell_means = []
    for v in grid:
        Xg = table.copy()
        Xg[var] = v
        draws = predict_draws(posterior, Xg, scale=scale)
        cell_means.append(draws.mean(axis=0))
        row = {var: v}
        row.update(_summarize(draws.mean(axis=1), quantiles))
        rows.append(row)
    curve = pd.DataFrame(rows)

    if aggregate:
        maps = np.full(shape, np.nan)
        order = np.argsort(grid)
        maps[valid] = np.interp(table[var].to_numpy(), grid[order], curve['mean'].to_numpy()[order])
    else:
        maps = np.full((len(grid),) + tuple(shape), np.nan)
        for g, means in enumerate(cell_means):
            maps[g][valid] = means
    return SpatialDependence(grid=grid, curve=curve, maps=maps)
