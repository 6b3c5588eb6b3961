"""Posterior predictions for bayesbart.

Predictions are computed from the frozen draws of a Posterior only, so the
functions here have no state and can be called concurrently on the same
posterior.
"""

from typing import Sequence
import numpy as np
import pandas as pd
from .ensemble import Posterior, inverse_link
from .exceptions import MissingCovariate
from .mytyping import NDArrayFloat, NDArrayBool, RasterLayers


def _design_matrix(posterior: Posterior, X: pd.DataFrame | np.ndarray) -> NDArrayFloat:
    """
    Arrange the covariates in the column order used by the trees.

    Columns never used by a split may be absent; they are filled with NaN
    since no tree reads them.

    Raises
    ------
    MissingCovariate
        If a covariate used by a split is not in X.
    ValueError
        If a used covariate has missing values.
    """
    names = posterior.feature_names
    used = posterior.referenced_variables()
    if not isinstance(X, pd.DataFrame):
        X = np.asarray(X, dtype=float)
        if X.ndim != 2 or X.shape[1] != len(names):
            raise ValueError(f'X must have {len(names)} columns')
        X = pd.DataFrame(X, columns=list(names))
    else:
        X = X.rename(columns=str)

    missing = [name for name in used if name not in X.columns]
    if len(missing) > 0:
        raise MissingCovariate(missing)
    if X.loc[:, used].isna().to_numpy().any():
        raise ValueError('Missing values in the covariates used by the model. Use drop_incomplete() first.')

    out = np.full((X.shape[0], len(names)), np.nan)
    for j, name in enumerate(names):
        if name in X.columns:
            out[:, j] = X[name].to_numpy(dtype=float)
    return out

def _check_scale(scale: str):
    if scale not in ('response', 'raw'):
        raise ValueError(f"scale must be 'response' or 'raw', got {scale}")

def _quantile_name(q: float) -> str:
    return f'q{q:g}'

def predict_draws(posterior: Posterior, X: pd.DataFrame | np.ndarray, scale: str = 'response') -> NDArrayFloat:
    """
    Predictions of every posterior draw.

    Parameters
    ----------
    posterior : Posterior
        The fitted model.
    X : pd.DataFrame or np.ndarray
        Covariates. An array must have the columns in the training order.
    scale : str, optional
        'response' (probabilities for a binary response) or 'raw' (tree sum
        plus offset) (default 'response').

    Returns
    -------
    NDArrayFloat
        Array (n_draws, n_rows).
    """
    _check_scale(scale)
    raw = posterior.raw_draws(_design_matrix(posterior, X))
    if scale == 'raw':
        return raw
    return inverse_link(raw, posterior.link)

def predict(posterior: Posterior, X: pd.DataFrame | np.ndarray,
            quantiles: Sequence[float] = (0.025, 0.975), scale: str = 'response') -> pd.DataFrame:
    """
    Posterior mean and credible quantiles of the prediction of each row.

    Returns
    -------
    pd.DataFrame
        Columns 'mean' and one 'q<level>' column per quantile, indexed as X.
    """
    draws = predict_draws(posterior, X, scale=scale)
    out = {'mean': draws.mean(axis=0)}
    if len(quantiles) > 0:
        qs = np.quantile(draws, quantiles, axis=0)
        for q, vals in zip(quantiles, qs):
            out[_quantile_name(q)] = vals
    index = X.index if isinstance(X, pd.DataFrame) else None
    return pd.DataFrame(out, index=index)

def stack_layers(layers: RasterLayers, names: Sequence[str]) -> tuple[pd.DataFrame, tuple[int, ...], NDArrayBool]:
    """
    Flatten co-registered 2-D covariate grids into a table of complete cells.

    Parameters
    ----------
    layers : Mapping
        Name to 2-D array (an xarray.Dataset works as well).
    names : Sequence[str]
        Layers to stack.

    Returns
    -------
    tuple
        (table of the complete cells, grid shape, mask of the complete cells)

    Raises
    ------
    MissingCovariate
        If a layer is missing.
    """
    missing = [name for name in names if name not in layers]
    if len(missing) > 0:
        raise MissingCovariate(missing)
    if len(names) == 0:
        # a model without splits, every cell gets the same prediction
        any_layer = next(iter(layers.values()))
        shape = np.asarray(any_layer).shape
        return pd.DataFrame(index=range(int(np.prod(shape)))), shape, np.ones(shape, dtype=bool)

    arrays = {name: np.asarray(layers[name], dtype=float) for name in names}
    shape = arrays[names[0]].shape
    if len(shape) != 2:
        raise ValueError('Layers must be 2-D grids')
    for name, arr in arrays.items():
        if arr.shape != shape:
            raise ValueError(f'Layer {name} has shape {arr.shape}, expected {shape}')
    valid = np.all([np.isfinite(arr) for arr in arrays.values()], axis=0)
    table = pd.DataFrame({name: arr[valid] for name, arr in arrays.items()})
    return table, shape, valid

def predict_raster(posterior: Posterior, layers: RasterLayers,
                   quantiles: Sequence[float] = (0.025, 0.975), scale: str = 'response') -> dict[str, NDArrayFloat]:
    """
    Predict on a stack of co-registered covariate grids.

    Cells with a missing value in any used layer are NaN in the output.

    Returns
    -------
    dict
        'mean' and one 'q<level>' entry per quantile, each a 2-D map.
    """
    table, shape, valid = stack_layers(layers, posterior.referenced_variables())
    preds = predict(posterior, table, quantiles=quantiles, scale=scale)
    maps = {}
    for col in preds.columns:
        out = np.full(shape, np.nan)
        out[valid] = preds[col].to_numpy()
        maps[col] = out
    return maps
