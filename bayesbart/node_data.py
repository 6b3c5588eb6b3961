"""Node data class for bayesbart.

This module defines NodeData, which encapsulates what a tree node knows
about the training data: the indices of the rows routed to it, its split
rule when it is a decision node and its value when it is a leaf.
The training design matrix and the cutpoints are shared by all nodes and
never copied.
"""

import numpy as np
from typing import Sequence, Self
from .mytyping import NDArrayInt, NDArrayFloat
from .exceptions import InvalidTreeError


class NodeData():
    """
    Data associated with a node in a regression tree of the ensemble.

    Attributes
    ----------
    X : NDArrayFloat
        The training design matrix (shared, read-only).
    idx : NDArrayInt
        Indices of the training rows routed to this node.
    cutpoints : Sequence[NDArrayFloat]
        For each variable, the sorted candidate split values.
    rng : np.random.Generator
        Random number generator for sampling.
    debug : bool
        If True, enables additional debugging checks.
    node_min_size : int
        Minimum number of observations required in the node.
    split_var : int
        The variable index used for splitting, -1 for leaves.
    split_val : float
        The threshold; rows with x[split_var] <= split_val go left.
    mu : float
        The leaf value.
    avail_splits : dict or None
        Cached achievable cutpoints per variable (initially None).
    """
    def __init__(self, X: NDArrayFloat, idx: NDArrayInt,
                 cutpoints: Sequence[NDArrayFloat],
                 rng: np.random.Generator,
                 debug: bool,
                 node_min_size: int,
                 split_var: int | None = None,
                 split_val: float | None = None,
                 mu: float = 0.0):
        self.node_min_size = node_min_size
        self.X = X
        self.cutpoints = cutpoints
        self.idx = idx
        self.rng = rng
        if (split_var is None) != (split_val is None):
            raise ValueError('Either both or none of the split parameters must be None')
        self.split_var = int(split_var) if split_var is not None else -1
        self.split_val = float(split_val) if split_val is not None else np.nan
        self.mu = float(mu)
        self.debug = debug
        self.avail_splits = None

    @property
    def idx(self) -> NDArrayInt:
        return self._idx

    @idx.setter
    def idx(self, val: NDArrayInt):
        if val.shape[0] < self.node_min_size:
            raise InvalidTreeError('Node has less than min node size observations')
        self._idx = val

    def __deepcopy__(self, memo):
        return self.copy()

    def copy(self) -> 'NodeData':
        '''Copy the node. The index array is shared since it is replaced, never modified in place.'''
        cls = self.__class__
        result = cls.__new__(cls)
        result.node_min_size = self.node_min_size
        result.X = self.X
        result.cutpoints = self.cutpoints
        result.rng = self.rng
        result.debug = self.debug
        result.split_var = self.split_var
        result.split_val = self.split_val
        result.mu = self.mu
        result._idx = self._idx
        result.avail_splits = self.avail_splits
        return result

    def get_nobs(self) -> int:
        return self.idx.shape[0]

    @staticmethod
    def _print(x) -> float:
        return np.round(x, 3)

    def get_split_var(self) -> int:
        return self.split_var

    def get_split_val(self) -> float:
        return self.split_val

    def describe_split(self, names: Sequence[str] | None = None) -> str:
        name = names[self.split_var] if names is not None else f'x{self.split_var}'
        return f'{name} <= {self._print(self.split_val)}'

    def get_available_splits(self, force_eval=False) -> dict[int, NDArrayFloat]:
        """
        For each variable, return the cutpoints that leave both children non-empty.

        A cutpoint c is achievable when min(x) <= c < max(x) over the rows
        of the node. Variables without achievable cutpoints are omitted.

        Parameters
        ----------
        force_eval : bool, optional
            If True, force re-evaluation of available splits (default is False).

        Returns
        -------
        dict
            Mapping from variable index to the sorted achievable cutpoints.
        """
        if self.avail_splits is not None and not force_eval:
            return self.avail_splits
        Xn = self.X[self.idx]
        lo = Xn.min(axis=0)
        hi = Xn.max(axis=0)
        avail = {}
        for j, cps in enumerate(self.cutpoints):
            start = np.searchsorted(cps, lo[j], side='left')
            end = np.searchsorted(cps, hi[j], side='left')
            if end > start:
                avail[j] = cps[start:end]
        self.avail_splits = avail
        return avail

    def reset_avail_splits(self):
        """
        Reset the cached available splits. Necessary whenever the routed rows change.
        """
        self.avail_splits = None

    def sample_split(self, avail_vars: NDArrayInt, var_probs: NDArrayFloat) -> tuple[int, float]:
        """
        Sample a split rule: a variable with the given probabilities, then a cutpoint uniformly.

        Parameters
        ----------
        avail_vars : NDArrayInt
            Variables that can be split at this node.
        var_probs : NDArrayFloat
            Probabilities aligned with avail_vars.

        Returns
        -------
        tuple
            (split_var, split_val)
        """
        split_var = int(avail_vars[self.rng.choice(len(avail_vars), p=var_probs)])
        split_val = float(self.rng.choice(self.get_available_splits()[split_var]))
        return split_var, split_val

    def calc_avail_split_and_vars(self) -> tuple[int, int]:
        """
        Compute the number of available variables and the number of achievable cutpoints for the current split variable.

        Returns
        -------
        tuple
            A tuple (n_avail_vars, n_splits).

        Raises
        ------
        InvalidTreeError
            If the current rule cannot be drawn at this node, i.e. it has
            prior probability zero.
        """
        avail_vars = self.get_available_splits()
        split_var = self.get_split_var()
        if split_var not in avail_vars:
            raise InvalidTreeError('Split variable is not available')
        split_vals = avail_vars[split_var]
        if not np.any(split_vals == self.split_val):
            raise InvalidTreeError('Split value is not achievable')
        return len(avail_vars), len(split_vals)

    def get_data_split(self, split_var: int, split_val: float) -> tuple[NDArrayInt, NDArrayInt]:
        """
        Split the routed rows into left and right subsets based on the split rule.

        Parameters
        ----------
        split_var : int
            The variable on which to split.
        split_val : float
            The threshold.

        Returns
        -------
        tuple
            A tuple (left_idx, right_idx).
        """
        idx = self.idx
        mask = self.X[idx, split_var] <= split_val
        return idx[mask], idx[~mask]

    def get_split_data(self, split_var: int, split_val: float, left_mu: float, right_mu: float) -> tuple[Self, Self]:
        """
        Split the node rows and generate new NodeData objects for the children.

        Parameters
        ----------
        split_var : int
            The variable to split on.
        split_val : float
            The threshold.
        left_mu : float
            Leaf value of the left child.
        right_mu : float
            Leaf value of the right child.

        Returns
        -------
        tuple
            (l_node_data, r_node_data)

        Raises
        ------
        InvalidTreeError
            If one of the children has less than node_min_size observations.
        """
        left_idx, right_idx = self.get_data_split(split_var, split_val)
        l_node_data = self.__class__(X=self.X, idx=left_idx, cutpoints=self.cutpoints, mu=left_mu, rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)
        r_node_data = self.__class__(X=self.X, idx=right_idx, cutpoints=self.cutpoints, mu=right_mu, rng=self.rng, debug=self.debug, node_min_size=self.node_min_size)
        return l_node_data, r_node_data

    def update_split_info(self, split_var: int, split_val: float):
        self.split_var = int(split_var)
        self.split_val = float(split_val)

    def reset_split_info(self):
        self.split_var = -1
        self.split_val = np.nan

    def update_split_data(self, idx: NDArrayInt):
        self.idx = idx
        self.reset_avail_splits()

    def is_split_rule_empty(self) -> bool:
        return self.split_var == -1 and np.isnan(self.split_val)

    def get_params(self, print: bool = False) -> float|str:
        return self.mu if not print else str(self._print(self.mu))

    def update_node_params(self, mu: float):
        self.mu = float(mu)

    def get_data_averages(self, resid: NDArrayFloat, weights: NDArrayFloat) -> tuple[float, float]:
        """
        Compute the sufficient statistics of the residuals routed to the node.

        Parameters
        ----------
        resid : NDArrayFloat
            Partial residuals of all the training rows.
        weights : NDArrayFloat
            Precisions of all the training rows.

        Returns
        -------
        tuple
            (sum of precisions, precision-weighted sum of residuals)
        """
        w = weights[self.idx]
        return w.sum(), (w * resid[self.idx]).sum()

    def get_preds(self) -> tuple[NDArrayInt, float]:
        """
        Get the contribution of the node to the training fit.

        Returns
        -------
        tuple
            (row indices, leaf value)
        """
        return self.idx, self.mu
