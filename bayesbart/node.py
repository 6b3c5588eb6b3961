"""Node class for bayesbart.

Tree nodes of the ensemble, built on treelib nodes. A node without children
is a leaf carrying a value; a node with children is a decision node
carrying a split rule.
"""

import numpy as np
from treelib import Node as TreelibNode
from typing import Sequence
from copy import deepcopy
from .mytyping import NDArrayInt, NDArrayFloat
from .exceptions import InvalidTreeError
from .node_data import NodeData
from .priors import BARTPrior


class Node(TreelibNode):
    """
    Extended node class for the trees of the ensemble.

    The node itself only knows its position (side, depth); rows, rule and value are delegated to NodeData.

    Attributes
    ----------
    is_l : bool
        True for the child receiving x <= threshold.
    _data : NodeData
        The node data (routed rows, split rule, leaf value).
    _rng : np.random.Generator
        The random number generator.
    debug : bool
        If True, enable debug checks.
    _depth : int
        The depth of the node.
    """
    def __init__(self, id: int, is_l: bool, data: NodeData, rng: np.random.Generator, debug: bool):
        super().__init__(identifier=id)
        self.is_l: bool = is_l
        self._data: NodeData = data
        self._rng = rng
        self.debug = debug
        self._depth = -1

    @property
    def id(self):
        return self.identifier

    @property
    def depth(self):
        return self._depth

    @depth.setter
    def depth(self, val: int):
        if val < 0:
            raise ValueError('Node depth must be non-negative')
        self._depth = val

    def __deepcopy__(self, memo):
        return self.copy(memo=memo)

    def copy(self, memo: dict|None = None) -> 'Node':
        if memo is None:
            memo = {}
        cls = self.__class__
        result = cls.__new__(cls)
        for k, v in self.__dict__.items():
            if k == '_data':
                setattr(result, k, v.copy())
            elif k == '_rng':
                setattr(result, k, v)
            else:
                setattr(result, k, deepcopy(v, memo))
        return result

    def _gen_tags(self, names: Sequence[str] | None = None):
        """
        Generate a string tag for the node for printing purposes.
        """
        left_or_right = 'L' if self.is_l else 'R'
        nobs = self._data.get_nobs()
        if self.is_leaf():
            self.tag = f"{left_or_right}_{self.identifier}_{nobs}_{self._data.get_params(print=True)}"
        else:
            self.tag = f'{left_or_right}_{self.identifier}_{self._data.describe_split(names)}'

    def get_nobs(self) -> int:
        return self._data.get_nobs()

    def get_idx(self) -> NDArrayInt:
        return self._data.idx

    def get_available_splits(self, *args, **kw) -> dict[int, NDArrayFloat]:
        """
        Achievable cutpoints per variable at this node.

        Returns
        -------
        dict
            Mapping from variable index to achievable cutpoints.
        """
        return self._data.get_available_splits(*args, **kw)

    def can_split(self) -> bool:
        return self.get_nobs() >= 2 * self._data.node_min_size and len(self.get_available_splits()) > 0

    def get_new_split(self, prior: BARTPrior) -> tuple[int, float]:
        """
        Sample a new split for the node from the split prior.

        Parameters
        ----------
        prior : BARTPrior
            Provides the split variable distribution.

        Returns
        -------
        tuple
            (split_var, split_val)
        """
        avail_vars = np.fromiter(self._data.get_available_splits().keys(), dtype=int)

        if len(avail_vars) == 0:
            raise InvalidTreeError('No available variable to split')

        return self._data.sample_split(avail_vars, prior.split_var_probs(avail_vars))

    def log_split_prob(self, prior: BARTPrior) -> float:
        """
        Log prior probability of the current split rule given the rows routed to the node.

        Raises
        ------
        InvalidTreeError
            If the rule is not achievable at this node.
        """
        _, n_vals = self._data.calc_avail_split_and_vars()
        avail_vars = np.fromiter(self._data.get_available_splits().keys(), dtype=int)
        return prior.log_split_prob(self._data.get_split_var(), avail_vars, n_vals)

    def get_split_info(self) -> tuple[int, float]:
        """
        Retrieve the current split rule.

        Returns
        -------
        tuple
            (split_var, split_val)
        """
        return self._data.get_split_var(), self._data.get_split_val()

    def update_split_info(self, split_var: int, split_val: float):
        self._data.update_split_info(split_var, split_val)

    def update_split_data(self, idx: NDArrayInt):
        self._data.update_split_data(idx)

    def get_split_data(self, split_var: int, split_val: float, left_mu: float, right_mu: float) -> tuple[NodeData, NodeData]:
        """
        Split the rows at this node into two parts. Returns the children data.

        Returns
        -------
        tuple
            (left_node_data, right_node_data)
        """
        return self._data.get_split_data(split_var, split_val, left_mu, right_mu)

    def get_data_split(self, split_var: int|None = None, split_val: float|None = None) -> tuple[NDArrayInt, NDArrayInt]:
        """
        Split the node's rows using the current (or provided) split rule.

        Returns
        -------
        tuple
            (left_idx, right_idx)
        """
        if split_var is None:
            split_var = self._data.get_split_var()
        if split_val is None:
            split_val = self._data.get_split_val()
        return self._data.get_data_split(split_var, split_val)

    def is_split_rule_empty(self) -> bool:
        return self._data.is_split_rule_empty()

    def get_data_averages(self, resid: NDArrayFloat, weights: NDArrayFloat) -> tuple[float, float]:
        return self._data.get_data_averages(resid, weights)

    def update_node_params(self, mu: float):
        self._data.update_node_params(mu)

    def get_preds(self) -> tuple[NDArrayInt, float]:
        return self._data.get_preds()

    def get_params(self, print: bool = False) -> float|str:
        return self._data.get_params(print)

    def reset_split_info(self):
        self._data.reset_split_info()
