"""Ensemble state and posterior draws for bayesbart.

The sampler works on mutable Tree objects collected in an Ensemble. Once an
iteration is retained, every tree is frozen into a TreeSnapshot: a compact
arena of read-only arrays that is cheap to store, to predict with and to
serialize. A Posterior is the ordered collection of such draws plus what is
needed to map the tree sum back to the response scale.
"""

import json
import warnings
from dataclasses import dataclass, field
from typing import Sequence, Self
import numpy as np
import pandas as pd
from scipy.special import ndtr, expit
from .tree import Tree
from .exceptions import NonConvergenceWarning
from .mytyping import NDArrayFloat, NDArrayInt

LINKS = ('identity', 'probit', 'logit')


def inverse_link(eta: NDArrayFloat, link: str) -> NDArrayFloat:
    """
    Map the tree sum (plus offset) to the response scale.

    Parameters
    ----------
    eta : NDArrayFloat
        Values on the raw scale.
    link : str
        'identity', 'probit' or 'logit'.

    Returns
    -------
    NDArrayFloat
    """
    if link == 'identity':
        return eta
    if link == 'probit':
        return ndtr(eta)
    if link == 'logit':
        return expit(eta)
    raise ValueError(f'Unknown link {link}')

def partial_residual(resid: NDArrayFloat, tree_fit: NDArrayFloat) -> NDArrayFloat:
    """
    Residual of the response with respect to all the trees but one.

    Parameters
    ----------
    resid : NDArrayFloat
        Current residual of the full ensemble.
    tree_fit : NDArrayFloat
        Current contribution of the left-out tree.

    Returns
    -------
    NDArrayFloat
        resid + tree_fit
    """
    return resid + tree_fit


def _readonly(a: np.ndarray) -> np.ndarray:
    a = np.array(a)
    a.flags.writeable = False
    return a


@dataclass(frozen=True, eq=False)
class TreeSnapshot():
    """
    Frozen copy of a tree stored as parallel arrays indexed by node position.

    Node 0 is the root. For a decision node i, rows with
    x[var[i]] <= threshold[i] go to left[i], the others to right[i]. For a
    leaf, var[i] is -1 and value[i] holds the leaf value.
    """
    var: NDArrayInt
    threshold: NDArrayFloat
    left: NDArrayInt
    right: NDArrayInt
    value: NDArrayFloat

    def __post_init__(self):
        for name in ('var', 'threshold', 'left', 'right', 'value'):
            object.__setattr__(self, name, _readonly(getattr(self, name)))

    @classmethod
    def from_tree(cls, tree: Tree, scale: float = 1.0) -> Self:
        """
        Snapshot a tree, multiplying the leaf values by scale.

        Parameters
        ----------
        tree : Tree
            The tree to freeze.
        scale : float, optional
            Factor applied to the leaf values (default 1).

        Returns
        -------
        TreeSnapshot
        """
        order = [tree.get_root()]
        pos = {order[0].id: 0}
        i = 0
        while i < len(order):
            for child in tree.get_children(order[i]):
                pos[child.id] = len(order)
                order.append(child)
            i += 1

        n = len(order)
        var = np.full(n, -1, dtype=np.int32)
        threshold = np.full(n, np.nan)
        left = np.full(n, -1, dtype=np.int32)
        right = np.full(n, -1, dtype=np.int32)
        value = np.zeros(n)
        for j, node in enumerate(order):
            if node.is_leaf():
                value[j] = node.get_params() * scale
            else:
                var[j], threshold[j] = node.get_split_info()
                l_child, r_child = tree.get_children(node)
                left[j], right[j] = pos[l_child.id], pos[r_child.id]
        return cls(var=var, threshold=threshold, left=left, right=right, value=value)

    def predict(self, X: NDArrayFloat) -> NDArrayFloat:
        """
        Leaf value reached by each row of X.

        Parameters
        ----------
        X : NDArrayFloat
            Design matrix with the same column order as the training data.

        Returns
        -------
        NDArrayFloat
        """
        node = np.zeros(X.shape[0], dtype=np.int32)
        active = np.flatnonzero(self.var[node] >= 0)
        while active.size > 0:
            cur = node[active]
            go_left = X[active, self.var[cur]] <= self.threshold[cur]
            node[active] = np.where(go_left, self.left[cur], self.right[cur])
            active = active[self.var[node[active]] >= 0]
        return self.value[node]

    @property
    def n_leaves(self) -> int:
        return int((self.var < 0).sum())

    @property
    def depth(self) -> int:
        depth = np.zeros(len(self.var), dtype=int)
        for i in np.flatnonzero(self.var >= 0):
            depth[self.left[i]] = depth[self.right[i]] = depth[i] + 1
        return int(depth.max())

    def count_splits(self, p: int) -> NDArrayInt:
        return np.bincount(self.var[self.var >= 0], minlength=p)

    def to_dict(self) -> dict:
        return {'var': self.var.tolist(),
                'threshold': [None if np.isnan(t) else float(t) for t in self.threshold],
                'left': self.left.tolist(), 'right': self.right.tolist(),
                'value': self.value.tolist()}

    @classmethod
    def from_dict(cls, d: dict) -> Self:
        return cls(var=np.array(d['var'], dtype=np.int32),
                   threshold=np.array([np.nan if t is None else t for t in d['threshold']], dtype=float),
                   left=np.array(d['left'], dtype=np.int32),
                   right=np.array(d['right'], dtype=np.int32),
                   value=np.array(d['value'], dtype=float))


@dataclass(frozen=True, eq=False)
class PosteriorDraw():
    """
    One retained state of the chain.

    Attributes
    ----------
    trees : tuple of TreeSnapshot
        The m trees, leaf values on the response-offset scale.
    sigma2 : float
        Residual variance on the response scale (1 for probit, NaN for logit).
    chain : int
        Chain identifier.
    iteration : int
        Iteration at which the draw was retained.
    """
    trees: tuple[TreeSnapshot, ...]
    sigma2: float
    chain: int
    iteration: int

    def predict(self, X: NDArrayFloat) -> NDArrayFloat:
        '''Sum of the trees, without offset.'''
        out = np.zeros(X.shape[0])
        for tree in self.trees:
            out += tree.predict(X)
        return out

    def to_dict(self) -> dict:
        return {'trees': [t.to_dict() for t in self.trees],
                'sigma2': None if np.isnan(self.sigma2) else self.sigma2,
                'chain': self.chain, 'iteration': self.iteration}

    @classmethod
    def from_dict(cls, d: dict) -> Self:
        return cls(trees=tuple(TreeSnapshot.from_dict(t) for t in d['trees']),
                   sigma2=np.nan if d['sigma2'] is None else float(d['sigma2']),
                   chain=int(d['chain']), iteration=int(d['iteration']))


class Ensemble():
    """
    Mutable state of a chain: the m trees and their contribution to the training fit.

    Attributes
    ----------
    trees : list of Tree
        The trees, mutated by the sampler.
    tree_fits : NDArrayFloat
        Array (m, n) with the fit of each tree on the training rows.
    sigma2 : float
        Current residual variance on the internal scale.
    """
    def __init__(self, trees: list[Tree], n: int, sigma2: float = 1.0):
        self.trees = trees
        self.tree_fits: NDArrayFloat = np.zeros((len(trees), n))
        for t, tree in enumerate(trees):
            self.tree_fits[t] = tree.get_fit(n)
        self.sigma2 = sigma2

    @property
    def m(self) -> int:
        return len(self.trees)

    def fitted(self) -> NDArrayFloat:
        return self.tree_fits.sum(axis=0)

    def get_n_leaves(self) -> int:
        return sum(tree.get_n_leaves() for tree in self.trees)

    def snapshot(self, scale: float, sigma2: float, chain: int, iteration: int) -> PosteriorDraw:
        return PosteriorDraw(trees=tuple(TreeSnapshot.from_tree(tree, scale) for tree in self.trees),
                             sigma2=sigma2, chain=chain, iteration=iteration)


def _json_default(o):
    if isinstance(o, np.bool_):
        return bool(o)
    if isinstance(o, np.integer):
        return int(o)
    if isinstance(o, np.floating):
        return float(o)
    if isinstance(o, np.ndarray):
        return o.tolist()
    raise TypeError(f'Object of type {type(o).__name__} is not JSON serializable')


@dataclass(frozen=True, eq=False)
class Posterior():
    """
    Retained draws of one or more chains.

    Predictions on the raw scale are offset + sum of the tree values of a
    draw; the response scale is obtained through the inverse link.

    Attributes
    ----------
    draws : tuple of PosteriorDraw
        Retained draws, ordered by chain then iteration.
    feature_names : tuple of str
        Covariates, in the column order used by the trees.
    link : str
        'identity', 'probit' or 'logit'.
    offset : float
        Added to the tree sum.
    setup : dict
        Configuration of the sampler(s).
    trace : pd.DataFrame
        One row per iteration with columns 'chain', 'iteration', 'sigma',
        'n_leaves', 'mean_fit' and 'retained'.
    counters : dict
        Proposal and acceptance counters.
    timings : dict
        Elapsed times.
    """
    draws: tuple[PosteriorDraw, ...]
    feature_names: tuple[str, ...]
    link: str
    offset: float
    setup: dict = field(default_factory=dict)
    trace: pd.DataFrame = field(default_factory=pd.DataFrame)
    counters: dict = field(default_factory=dict)
    timings: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.link not in LINKS:
            raise ValueError(f'Unknown link {self.link}')
        object.__setattr__(self, 'draws', tuple(self.draws))
        object.__setattr__(self, 'feature_names', tuple(self.feature_names))

    def __len__(self) -> int:
        return len(self.draws)

    @property
    def n_draws(self) -> int:
        return len(self.draws)

    @property
    def is_binary(self) -> bool:
        return self.link != 'identity'

    @property
    def n_chains(self) -> int:
        return len({d.chain for d in self.draws})

    def referenced_variables(self) -> list[str]:
        """
        Names of the covariates used by at least one split of a stored draw.
        """
        counts = np.zeros(len(self.feature_names), dtype=int)
        for draw in self.draws:
            for tree in draw.trees:
                counts += tree.count_splits(len(self.feature_names))
        return [name for name, c in zip(self.feature_names, counts) if c > 0]

    def raw_draws(self, X: NDArrayFloat) -> NDArrayFloat:
        """
        Predictions of every draw on the raw scale.

        Parameters
        ----------
        X : NDArrayFloat
            Design matrix with columns ordered as feature_names.

        Returns
        -------
        NDArrayFloat
            Array (n_draws, n_rows).
        """
        out = np.empty((self.n_draws, X.shape[0]))
        for d, draw in enumerate(self.draws):
            out[d] = self.offset + draw.predict(X)
        return out

    def sigma(self) -> NDArrayFloat:
        return np.sqrt(np.array([d.sigma2 for d in self.draws]))

    def convergence_statistic(self) -> float:
        """
        Variance of the retained trace monitored for convergence.

        The trace is sigma for a continuous response and the mean training
        fit for a binary one.
        """
        col = 'mean_fit' if self.is_binary else 'sigma'
        retained = self.trace.loc[self.trace['retained'], col]
        if len(retained) < 2:
            return 0.0
        return float(retained.var(ddof=1))

    def check_convergence(self, threshold: float) -> bool:
        """
        Warn with NonConvergenceWarning if the retained trace varies more than threshold.

        Returns
        -------
        bool
            True if the chain is deemed converged.
        """
        stat = self.convergence_statistic()
        if stat > threshold:
            warnings.warn(f'Trace variance of retained draws {stat:.3g} exceeds the threshold {threshold:.3g}. '
                          'Consider more iterations or a longer burn-in.', NonConvergenceWarning, stacklevel=2)
            return False
        return True

    @classmethod
    def concat(cls, posteriors: Sequence[Self]) -> Self:
        """
        Merge the draws of independent chains.

        Raises
        ------
        ValueError
            If the chains were fit on different covariates or links.
        """
        if len(posteriors) == 0:
            raise ValueError('Nothing to concatenate')
        first = posteriors[0]
        for post in posteriors[1:]:
            if post.feature_names != first.feature_names or post.link != first.link or not np.isclose(post.offset, first.offset):
                raise ValueError('Cannot concatenate posteriors fit on different data')
        counters: dict = {}
        for post in posteriors:
            for k, v in post.counters.items():
                counters[k] = counters.get(k, 0) + v
        timings = {'elap_time': sum(p.timings.get('elap_time', 0.0) for p in posteriors),
                   'chains': [p.timings for p in posteriors]}
        return cls(draws=tuple(d for p in posteriors for d in p.draws),
                   feature_names=first.feature_names, link=first.link, offset=first.offset,
                   setup=first.setup,
                   trace=pd.concat([p.trace for p in posteriors], ignore_index=True),
                   counters=counters, timings=timings)

    #### Persistence ####

    def to_dict(self) -> dict:
        return {'draws': [d.to_dict() for d in self.draws],
                'feature_names': list(self.feature_names),
                'link': self.link,
                'offset': self.offset,
                'setup': self.setup,
                'trace': self.trace.to_dict(orient='list'),
                'counters': self.counters,
                'timings': self.timings}

    @classmethod
    def from_dict(cls, d: dict) -> Self:
        trace = pd.DataFrame(d.get('trace', {}))
        if 'retained' in trace:
            trace['retained'] = trace['retained'].astype(bool)
        return cls(draws=tuple(PosteriorDraw.from_dict(x) for x in d['draws']),
                   feature_names=tuple(d['feature_names']),
                   link=d['link'], offset=float(d['offset']),
                   setup=d.get('setup', {}), trace=trace,
                   counters=d.get('counters', {}), timings=d.get('timings', {}))

    def save(self, path):
        """
        Write the posterior to a JSON file.
        """
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, default=_json_default)

    @classmethod
    def load(cls, path) -> Self:
        with open(path) as f:
            return cls.from_dict(json.load(f))
