"""Bayesian Additive Regression Trees (BART) sampler.

This module implements the BART class, which runs a backfitting MCMC over a
sum-of-trees ensemble. Each tree is updated by a Metropolis-Hastings step
(grow, prune, change or swap) conditional on the partial residual of the
other trees, followed by Gibbs draws of its leaf values. Binary responses
are handled by data augmentation (probit latent variables or Polya-Gamma
weights for the logit link).
"""

import logging
import time
from typing import Callable, Sequence
import numpy as np
import numpy.typing as npt
import pandas as pd
import humanize
from tqdm import tqdm
from scipy.stats import truncnorm, norm
from scipy.special import logit
from joblib import Parallel, delayed
from .node import Node
from .node_data import NodeData
from .tree import Tree
from .priors import BARTPrior
from .ensemble import Ensemble, Posterior, inverse_link, partial_residual
from .exceptions import InvalidTreeError, InvalidPriorParameters
from .utils import my_choice, invgamma_rvs, polya_gamma_rvs, quantile_cutpoints
from .mytyping import NDArrayFloat

logger = logging.getLogger(__name__)

MOVES = ('grow', 'prune', 'change', 'swap')
REVERSE_MOVE = {'grow': 'prune', 'prune': 'grow', 'change': 'change', 'swap': 'swap'}


class BART():
    """
    Sum-of-trees model fit by Markov chain Monte Carlo.

    Parameters
    ----------
    X : pd.DataFrame
        Covariates. Every column must be numeric and without missing values.
    y : pd.Series or array-like
        Response. Binary responses (bool, 0/1 or two-level categorical) are
        fit with a probit link unless link says otherwise.
    m : int, optional
        Number of trees (default 200).
    alpha : float, optional
        Base splitting probability of the tree prior (default 0.95).
    beta : float, optional
        Depth decay of the splitting probability (default 2).
    k : float, optional
        Shrinkage of the leaf values (default 2).
    nu : float, optional
        Degrees of freedom of the residual variance prior (default 3).
    q : float, optional
        Prior quantile at sigest of the residual standard deviation (default 0.9).
    sigest : float or None, optional
        Rough estimate of the residual standard deviation, on the response
        scale. If None, the residual standard deviation of a least-squares
        fit (or the standard deviation of y when n <= p + 1).
    link : str or None, optional
        'identity', 'probit' or 'logit'. Inferred from y if None.
    numcut : int, optional
        Maximum number of candidate cutpoints per covariate (default 100).
    split_weights : array-like or None, optional
        Relative probability of splitting on each covariate (default uniform).
    node_min_size : int, optional
        Minimum observations per node (default 5).
    iters : int, optional
        Total number of MCMC iterations (default 1200).
    burnin : int, optional
        Number of burn-in iterations (default 200).
    thinning : int, optional
        Thinning factor (default 1).
    move_prob : Sequence[float], optional
        Probabilities for the moves (grow, prune, change, swap) (default [0.25, 0.25, 0.4, 0.1]).
        They are renormalized over the moves that are possible on the current tree.
    convergence_threshold : float or None, optional
        If given, a NonConvergenceWarning is emitted when the variance of the
        retained trace exceeds it.
    callback : callable or None, optional
        Called as callback(iteration, sampler) after every iteration. Returning
        True stops the chain.
    chain : int, optional
        Identifier stored in the draws (default 0).
    verbose : str, optional
        Verbosity level. Non-empty shows a progress bar.
    seed : int, np.random.SeedSequence or np.random.Generator, optional
        Random seed or generator (default 45).
    debug : bool, optional
        If True, validate every tree and the residual after each update (default False).

    Raises
    ------
    InvalidPriorParameters
        If a prior hyperparameter is out of range.
    ValueError
        If the data are not usable (missing values, constant response, ...) or
        the iteration settings are out of range.
    """
    def __init__(self, X: pd.DataFrame, y: pd.Series | npt.ArrayLike,
                 m: int = 200, alpha: float = 0.95, beta: float = 2.0,
                 k: float = 2.0, nu: float = 3.0, q: float = 0.9,
                 sigest: float | None = None, link: str | None = None,
                 numcut: int = 100, split_weights: npt.ArrayLike | None = None,
                 node_min_size: int = 5,
                 iters: int = 1200, burnin: int = 200, thinning: int = 1,
                 move_prob: Sequence[float] = [0.25, 0.25, 0.4, 0.1],
                 convergence_threshold: float | None = None,
                 callback: Callable[[int, 'BART'], bool | None] | None = None,
                 chain: int = 0,
                 verbose: str = '', seed: int | np.random.SeedSequence | np.random.Generator = 45,
                 debug: bool = False):

        if not isinstance(X, pd.DataFrame):
            X = pd.DataFrame(np.asarray(X, dtype=float))
            X.columns = [f'x{j}' for j in range(X.shape[1])]
        if X.shape[1] == 0:
            raise ValueError('X has no columns')
        if node_min_size < 1:
            raise ValueError('node_min_size must be at least 1')
        if iters < 1 or burnin < 0 or thinning < 1:
            raise ValueError(f'Need iters >= 1, burnin >= 0 and thinning >= 1, got {iters}, {burnin} and {thinning}')
        if numcut < 1:
            raise ValueError('numcut must be at least 1')
        if sigest is not None and not sigest > 0:
            raise InvalidPriorParameters(f'sigest must be positive, got {sigest}')
        if isinstance(y, pd.Series) and isinstance(y.dtype, pd.CategoricalDtype):
            if len(y.cat.categories) != 2:
                raise ValueError('A categorical response must have exactly two levels')
            if y.isna().any():
                raise ValueError('Missing values in X or y. Use drop_incomplete() to exclude incomplete rows.')
            y = y.cat.codes.astype(bool)
        y = y.to_numpy() if isinstance(y, pd.Series) else np.asarray(y)
        if y.shape[0] != X.shape[0]:
            raise ValueError(f'X and y have different lengths: {X.shape[0]} and {y.shape[0]}')
        if X.isna().to_numpy().any() or pd.isna(y).any():
            raise ValueError('Missing values in X or y. Use drop_incomplete() to exclude incomplete rows.')
        if X.shape[0] < max(node_min_size, 2):
            raise ValueError(f'At least {max(node_min_size, 2)} observations are required')

        self.X = X
        self.feature_names = [str(c) for c in X.columns]
        self.prior = BARTPrior(m=m, alpha=alpha, beta=beta, k=k, nu=nu, q=q, split_weights=split_weights)
        if self.prior.split_weights is not None and len(self.prior.split_weights) != X.shape[1]:
            raise InvalidPriorParameters(f'split_weights has length {len(self.prior.split_weights)}, expected {X.shape[1]}')

        self.link = self._get_link(y, link)
        if self.link == 'identity':
            self.y = y.astype(float)
        else:
            self.y = self._binarize(y)

        self.m = self.prior.m
        self.sigest = sigest
        self.numcut = numcut
        self.node_min_size = node_min_size
        self.iters = iters
        self.burnin = burnin
        self.thinning = thinning
        if len(move_prob) != len(MOVES):
            raise ValueError(f'move_prob must have {len(MOVES)} entries')
        self.move_prob = np.array(move_prob, dtype=float)
        self.move_prob = self.move_prob/self.move_prob.sum()
        self.convergence_threshold = convergence_threshold
        self.callback = callback
        self.chain = chain
        self.verbose = verbose
        self.debug = debug
        self.orig_seed = seed if isinstance(seed, (int, np.integer)) else None

        if isinstance(seed, (int, np.integer)) or isinstance(seed, np.random.SeedSequence):
            self.rng = np.random.default_rng(seed)
        elif isinstance(seed, np.random.Generator):
            self.rng = seed
        else:
            raise ValueError(f'Seed must be an int, a SeedSequence or a numpy random generator, {type(seed)} was given..')

        self.cache_counters = {'proposed': 0, 'accepted': 0, 'failed_error': 0, 'failed_prob': 0, 'skipped': 0}
        for move in MOVES:
            self.cache_counters[f'{move}_proposed'] = 0
            self.cache_counters[f'{move}_accepted'] = 0
        self.aborted = False

        self._init()

    @staticmethod
    def _get_link(y: np.ndarray, link: str | None) -> str:
        if link is not None:
            if link not in ('identity', 'probit', 'logit'):
                raise ValueError(f'Unknown link {link}')
            return link
        if y.dtype == bool:
            return 'probit'
        if np.issubdtype(y.dtype, np.number) and np.isin(np.unique(y), [0, 1]).all():
            return 'probit'
        return 'identity'

    @staticmethod
    def _binarize(y: np.ndarray) -> np.ndarray:
        y = np.asarray(y).astype(float)
        if not np.isin(y, [0, 1]).all():
            raise ValueError('A binary response must only contain 0 and 1')
        if y.min() == y.max():
            raise ValueError('The binary response contains a single class')
        return y

    def _init(self):
        """
        Scale the response, set the hyperparameters that depend on the data and initialize every tree as a stump.
        """
        X, y = self.X, self.y
        self.Xf = X.to_numpy(dtype=float)
        n, p = self.Xf.shape
        self.n = n
        self.cutpoints = [quantile_cutpoints(self.Xf[:, j], self.numcut) for j in range(p)]

        if self.iters < self.burnin:
            self.iters = self.iters + self.burnin

        self.sigma_mu = self.prior.sigma_mu(self.link)

        if self.link == 'identity':
            if len(self.verbose) > 0:
                print('Running regression trees')
            y_min, y_max = y.min(), y.max()
            if y_max == y_min:
                raise ValueError('The response is constant')
            # internal response in [-0.5, 0.5]
            self.y_scale = y_max - y_min
            self.y_shift = y_min + 0.5*self.y_scale
            self.offset = 0.0
            self.target = (y - self.y_shift)/self.y_scale

            sigest = self.sigest/self.y_scale if self.sigest is not None else self._estimate_sigma(self.target)
            self.lambd = self.prior.calc_lambda(sigest)
            sigma2 = sigest**2
            self.weights = np.full(n, 1/sigma2)
        else:
            if len(self.verbose) > 0:
                print('Running classification trees')
            ybar = y.mean()
            self.y_scale = 1.0
            self.y_shift = 0.0
            self.offset = norm.ppf(ybar) if self.link == 'probit' else logit(ybar)
            self.lambd = np.nan
            sigma2 = 1.0
            self.target = np.zeros(n)
            self.weights = np.ones(n)

        trees = []
        for _ in range(self.m):
            root_node_data = NodeData(X=self.Xf, idx=np.arange(n), cutpoints=self.cutpoints, rng=self.rng,
                                      debug=self.debug, node_min_size=self.node_min_size)
            trees.append(Tree(root_node_data=root_node_data, rng=self.rng, node_min_size=self.node_min_size, debug=self.debug))
        self.ensemble = Ensemble(trees, n, sigma2)
        self.resid = self.target - self.ensemble.fitted()

    def _estimate_sigma(self, target: NDArrayFloat) -> float:
        n, p = self.Xf.shape
        if n > p + 1:
            A = np.column_stack([np.ones(n), self.Xf])
            coef, *_ = np.linalg.lstsq(A, target, rcond=None)
            sse = ((target - A @ coef)**2).sum()
            sigest = np.sqrt(sse/(n - p - 1))
            # a perfect linear fit gives no information on the noise level
            if sigest > 1e-8:
                return sigest
        return target.std()

    def get_setup(self) -> dict:
        setup = self.prior.get_setup()
        setup.update({'sigest': self.sigest, 'link': self.link, 'numcut': self.numcut,
                      'node_min_size': self.node_min_size, 'iters': self.iters, 'burnin': self.burnin,
                      'thinning': self.thinning, 'move_prob': self.move_prob.tolist(),
                      'convergence_threshold': self.convergence_threshold,
                      'seed': self.orig_seed, 'debug': self.debug, 'verbose': self.verbose,
                      'n': self.n, 'y_scale': self.y_scale, 'y_shift': self.y_shift})
        return setup

    def run(self) -> Posterior:
        """
        Run the MCMC algorithm.

        Returns
        -------
        Posterior
            The retained draws, traces, counters, timings and setup.
        """
        self.current_iter = 0
        start_time = time.time()
        draws, trace = self._run()
        end_time = time.time()

        tot_mh_steps = len(trace)
        elap_time = max(end_time - start_time, 1e-9)
        elap_time_human = humanize.precisedelta(int(elap_time))
        acc_rate = self.cache_counters['accepted']/max(self.cache_counters['proposed'], 1)
        logger.info(f'Chain {self.chain}: elapsed time {elap_time_human}, tot iters {tot_mh_steps}, '
                    f'acceptance rate {acc_rate:.3f}')
        if self.verbose:
            print(f'Elapsed time: {elap_time_human}, Tot iters: {tot_mh_steps}, Iters/min: {int(tot_mh_steps/elap_time*60)}/min')

        timings = {'elap_time': elap_time, 'tot_mh_steps': tot_mh_steps, 'iters/min': int(tot_mh_steps/elap_time*60), 'elap_time_human': elap_time_human}
        posterior = Posterior(draws=tuple(draws), feature_names=tuple(self.feature_names), link=self.link,
                              offset=self.y_shift + self.offset*self.y_scale,
                              setup=self.get_setup(), trace=trace,
                              counters=dict(self.cache_counters), timings=timings)
        if self.convergence_threshold is not None:
            posterior.check_convergence(self.convergence_threshold)
        return posterior

    def _run(self) -> tuple[list, pd.DataFrame]:
        """
        Execute the main MCMC loop.

        Returns
        -------
        tuple
            (retained draws, trace table)
        """
        draws = []
        trace: dict[str, list] = {'chain': [], 'iteration': [], 'sigma': [], 'n_leaves': [], 'mean_fit': [], 'retained': []}

        if len(self.verbose) > 0:
            _range = tqdm(range(self.iters), desc=f'chain {self.chain}')
        else:
            _range = range(self.iters)
        for i in _range:
            self.current_iter = i
            self._sweep()

            retained = (i >= self.burnin) and ((i - self.burnin + 1) % self.thinning == 0)
            sigma2 = self.get_sigma2()
            trace['chain'].append(self.chain)
            trace['iteration'].append(i)
            trace['sigma'].append(float(np.sqrt(sigma2)))
            trace['n_leaves'].append(self.ensemble.get_n_leaves())
            trace['mean_fit'].append(float(self.get_fit().mean()))
            trace['retained'].append(retained)

            if retained:
                draws.append(self.ensemble.snapshot(scale=self.y_scale, sigma2=sigma2, chain=self.chain, iteration=i))

            if self.callback is not None and self.callback(i, self):
                self.aborted = True
                logger.warning(f'Chain {self.chain} aborted by the callback at iteration {i}, {len(draws)} draws retained')
                break

        return draws, pd.DataFrame(trace)

    def get_sigma2(self) -> float:
        '''Residual variance on the response scale.'''
        if self.link == 'identity':
            return self.ensemble.sigma2 * self.y_scale**2
        return 1.0 if self.link == 'probit' else np.nan

    def get_fit(self) -> NDArrayFloat:
        '''Current fit of the training rows on the response scale.'''
        raw = self.y_shift + (self.offset + self.ensemble.fitted())*self.y_scale
        return inverse_link(raw, self.link)

    def _sweep(self):
        """
        One iteration: update every tree in turn, redraw all the leaves, then the residual variance.
        """
        ensemble = self.ensemble
        if self.link != 'identity':
            self.sample_latent()
            self.resid = self.target - ensemble.fitted()

        for t in range(ensemble.m):
            r = partial_residual(self.resid, ensemble.tree_fits[t])
            self._update_once(t, r)
            new_fit = ensemble.trees[t].get_fit(self.n)
            ensemble.tree_fits[t] = new_fit
            self.resid = r - new_fit

        self.resample_all_leaves()
        if self.link == 'identity':
            self.resample_sigma()

        if self.debug:
            assert np.allclose(self.resid, self.target - ensemble.fitted())

    def get_move_probs(self, tree: Tree) -> NDArrayFloat:
        """
        Probabilities of the moves on a tree, renormalized over the moves that can be proposed.

        Returns
        -------
        NDArrayFloat
            Aligned with MOVES. All zeros if no move is possible.
        """
        eligible = np.array([len(tree.get_growable_leaves()) > 0,
                             not tree.is_stump(),
                             not tree.is_stump(),
                             len(tree.get_nonleaf_nodes(filter_root=True)) > 0])
        probs = self.move_prob * eligible
        tot = probs.sum()
        return probs/tot if tot > 0 else probs

    def _update_once(self, t: int, r: NDArrayFloat) -> None:
        """
        Perform one Metropolis-Hastings update of tree t, then redraw its leaf values.

        Parameters
        ----------
        t : int
            Index of the tree.
        r : NDArrayFloat
            Partial residual of the other trees.
        """
        tree = self.ensemble.trees[t]
        move_probs = self.get_move_probs(tree)
        if move_probs.sum() == 0:
            self.cache_counters['skipped'] += 1
        else:
            move = MOVES[self.rng.choice(len(MOVES), p=move_probs)]
            self.cache_counters['proposed'] += 1
            self.cache_counters[f'{move}_proposed'] += 1
            try:
                new_tree, log_ratio = self.update_tree(tree, move, r)
                log_ratio += np.log(self.get_move_probs(new_tree)[MOVES.index(REVERSE_MOVE[move])]) - np.log(move_probs[MOVES.index(move)])
                success = True
            except InvalidTreeError:
                success = False
                self.cache_counters['failed_error'] += 1

            if success:
                if np.log(self.rng.random()) <= log_ratio:
                    self.ensemble.trees[t] = new_tree
                    self.cache_counters['accepted'] += 1
                    self.cache_counters[f'{move}_accepted'] += 1
                else:
                    self.cache_counters['failed_prob'] += 1

        # Update leaf parameters whether accepted or not
        self.resample_leaf_params(self.ensemble.trees[t], r)

        if self.debug:
            assert self.ensemble.trees[t].is_valid()

    def update_tree(self, tree: Tree, move: str, r: NDArrayFloat) -> tuple[Tree, float]:
        """
        Propose a new tree from the specified move.

        The current tree is never modified: the move is applied to a copy.

        Parameters
        ----------
        tree : Tree
            The current tree.
        move : str
            The move type ('grow', 'prune', 'change', 'swap').
        r : NDArrayFloat
            Partial residual of the other trees.

        Returns
        -------
        tuple
            (proposed tree, log acceptance ratio without the move probabilities)

        Raises
        ------
        InvalidTreeError
            If the move cannot produce a valid tree.
        """
        if move == 'grow':
            new_tree, log_ratio = self.grow(tree, r)
        elif move == 'prune':
            new_tree, log_ratio = self.prune(tree, r)
        elif move == 'change':
            new_tree, log_ratio = self.change(tree, r)
        elif move == 'swap':
            new_tree, log_ratio = self.swap(tree, r)
        else:
            raise ValueError(f'Unknown move {move}')

        if self.debug:
            if not new_tree.is_valid():
                raise ValueError('not-a-tree returned, BUG!!')

        return new_tree, log_ratio

    def grow(self, tree: Tree, r: NDArrayFloat) -> tuple[Tree, float]:
        """
        Pick a growable leaf and split it using a rule drawn from the prior.

        The probability of the rule appears both in the prior and in the
        proposal, hence it cancels out of the ratio.
        """
        new_tree = tree.copy()

        cands = new_tree.get_growable_leaves()
        if len(cands) == 0:
            raise InvalidTreeError('No leaf can be split')
        node_to_split: Node = my_choice(self.rng, cands)
        split_var, split_val = node_to_split.get_new_split(self.prior)

        llik_before = self.calc_leaf_llik(node_to_split, r)
        new_tree.apply_split(node_to_split, split_var, split_val, 0.0, 0.0)
        l_child, r_child = new_tree.get_children(node_to_split)
        llik_after = self.calc_leaf_llik(l_child, r) + self.calc_leaf_llik(r_child, r)

        depth = node_to_split.depth
        prior = self.prior
        log_prior = prior.log_p_split(depth) + 2*prior.log_p_stop(depth+1) - prior.log_p_stop(depth)
        log_trans = np.log(len(cands)) - np.log(len(new_tree.get_parents_with_two_leaves()))
        return new_tree, log_prior + log_trans + llik_after - llik_before

    def prune(self, tree: Tree, r: NDArrayFloat) -> tuple[Tree, float]:
        """
        Pick a node with two leaves as children and turn it into a leaf.
        """
        # no operation can be done on a stump
        if tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot prune.')

        new_tree = tree.copy()
        cands = new_tree.get_parents_with_two_leaves()
        if len(cands) == 0:
            raise InvalidTreeError('No available nodes to prune')

        to_prune: Node = my_choice(self.rng, cands)
        l_child, r_child = new_tree.get_children(to_prune)
        llik_before = self.calc_leaf_llik(l_child, r) + self.calc_leaf_llik(r_child, r)

        new_tree.collapse(to_prune)
        llik_after = self.calc_leaf_llik(to_prune, r)

        depth = to_prune.depth
        prior = self.prior
        log_prior = prior.log_p_stop(depth) - prior.log_p_split(depth) - 2*prior.log_p_stop(depth+1)
        log_trans = np.log(len(cands)) - np.log(len(new_tree.get_growable_leaves()))
        return new_tree, log_prior + log_trans + llik_after - llik_before

    def change(self, tree: Tree, r: NDArrayFloat) -> tuple[Tree, float]:
        """
        Pick an internal node and replace its splitting rule with one drawn from the prior.
        """
        if tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot change.')

        new_tree = tree.copy()
        cands = new_tree.get_nonleaf_nodes()
        to_change: Node = my_choice(self.rng, cands)

        log_p_old_rule = to_change.log_split_prob(self.prior)
        prior_before = self.calc_log_tree_prob(new_tree, to_change)
        llik_before = self.calc_subtree_llik(new_tree, to_change, r)

        split_var, split_val = to_change.get_new_split(self.prior)
        new_tree.update_split(to_change, split_var, split_val)

        log_p_new_rule = to_change.log_split_prob(self.prior)
        prior_after = self.calc_log_tree_prob(new_tree, to_change)
        llik_after = self.calc_subtree_llik(new_tree, to_change, r)

        log_trans = log_p_old_rule - log_p_new_rule
        return new_tree, prior_after - prior_before + log_trans + llik_after - llik_before

    def swap(self, tree: Tree, r: NDArrayFloat) -> tuple[Tree, float]:
        """
        Pick a parent-child pair of internal nodes and swap their splitting rules.

        If the other child has the same rule, then swap parent with both children.
        """
        # no operation can be done on a stump
        if tree.is_stump():
            raise InvalidTreeError('Tree has only one node. Cannot swap.')

        new_tree = tree.copy()
        cands = new_tree.get_nonleaf_nodes(filter_root=True)
        if len(cands) == 0:
            raise InvalidTreeError('No available nodes to swap')

        c1: Node = my_choice(self.rng, cands)
        parent = new_tree.get_parent(c1)
        c2 = new_tree.get_sibling(c1)
        has_same_rule = not c2.is_leaf() and c2.get_split_info() == c1.get_split_info()

        prior_before = self.calc_log_tree_prob(new_tree, parent)
        llik_before = self.calc_subtree_llik(new_tree, parent, r)

        # swap rules
        par_s_var, par_s_val = parent.get_split_info()
        c1_s_var, c1_s_val = c1.get_split_info()
        if has_same_rule:
            c2.update_split_info(par_s_var, par_s_val)
        c1.update_split_info(par_s_var, par_s_val)
        parent.update_split_info(c1_s_var, c1_s_val)

        # update data splits recursively
        new_tree.update_subtree_data(parent)

        prior_after = self.calc_log_tree_prob(new_tree, parent)
        llik_after = self.calc_subtree_llik(new_tree, parent, r)

        # the set of candidate pairs is unchanged, the proposal is symmetric
        return new_tree, prior_after - prior_before + llik_after - llik_before

    def calc_leaf_llik(self, leaf: Node, r: NDArrayFloat) -> float:
        """
        Log marginal likelihood of the partial residuals routed to a leaf.
        """
        W, S = leaf.get_data_averages(r, self.weights)
        return self.prior.leaf_log_marginal(W, S, self.sigma_mu)

    def calc_subtree_llik(self, tree: Tree, node: Node, r: NDArrayFloat) -> float:
        return sum(self.calc_leaf_llik(leaf, r) for leaf in tree.get_subtree_leaves(node))

    def calc_log_tree_prob(self, tree: Tree, node: Node | None = None) -> float:
        """
        Compute the log prior probability of the subtree rooted at node (the whole tree if None).

        This includes the probability of every split rule given the rows
        reaching the node.

        Raises
        ------
        InvalidTreeError
            If a split rule can not be drawn at its node, i.e. the tree has
            prior probability zero.
        """
        prior = self.prior

        def _calc_rec(node: Node) -> float:
            if node.is_leaf():
                return prior.log_p_stop(node.depth)

            # current node is internal
            tot = prior.log_p_split(node.depth) + node.log_split_prob(prior)
            for child in tree.get_children(node):
                tot += _calc_rec(child)
            return tot

        if node is None:
            node = tree.get_root()
        return _calc_rec(node)

    def resample_leaf_params(self, tree: Tree, r: NDArrayFloat):
        """
        Resample the leaf values of a tree from their full conditionals.
        """
        for leaf in tree.get_leaves():
            W, S = leaf.get_data_averages(r, self.weights)
            mean, std = self.prior.leaf_posterior(W, S, self.sigma_mu)
            leaf.update_node_params(self.rng.normal(mean, std))

    def resample_all_leaves(self):
        """
        Gibbs pass redrawing the leaves of every tree given the others.
        """
        ensemble = self.ensemble
        for t, tree in enumerate(ensemble.trees):
            r = partial_residual(self.resid, ensemble.tree_fits[t])
            self.resample_leaf_params(tree, r)
            new_fit = tree.get_fit(self.n)
            ensemble.tree_fits[t] = new_fit
            self.resid = r - new_fit

    def resample_sigma(self):
        """
        Resample the residual variance from its full conditional.
        """
        sse = (self.resid**2).sum()
        a, scale = self.prior.sigma2_posterior(self.n, sse, self.lambd)
        sigma2 = invgamma_rvs(a=a, scale=scale, rng=self.rng)
        self.ensemble.sigma2 = sigma2
        self.weights = np.full(self.n, 1/sigma2)

    def sample_latent(self):
        """
        Data augmentation step for binary responses.

        Probit: latent normals truncated to the side given by y.
        Logit: Polya-Gamma weights and the corresponding working response.
        """
        eta = self.offset + self.ensemble.fitted()
        if self.link == 'probit':
            pos = self.y == 1
            a = np.where(pos, -eta, -np.inf)
            b = np.where(pos, np.inf, -eta)
            z = truncnorm.rvs(a, b, loc=eta, scale=1.0, random_state=self.rng)
            self.target = z - self.offset
        else:
            omega = np.maximum(polya_gamma_rvs(eta, self.rng), 1e-10)
            self.weights = omega
            self.target = (self.y - 0.5)/omega - self.offset


def _run_chain(X, y, chain, seed, kwargs) -> Posterior:
    return BART(X, y, chain=chain, seed=np.random.default_rng(seed), **kwargs).run()

def run_chains(X: pd.DataFrame, y: pd.Series | npt.ArrayLike, n_chains: int = 4,
               n_jobs: int | None = None, seed: int = 45, **kwargs) -> Posterior:
    """
    Run independent chains in parallel and merge their draws.

    Parameters
    ----------
    X, y
        Training data, see BART.
    n_chains : int, optional
        Number of chains (default 4).
    n_jobs : int or None, optional
        Size of the worker pool, as in joblib (default None, sequential).
    seed : int, optional
        Root seed; every chain gets an independent child stream (default 45).
    **kwargs
        Passed to BART.

    Returns
    -------
    Posterior
        Draws of all chains, ordered by chain.
    """
    seeds = np.random.SeedSequence(seed).spawn(n_chains)
    posteriors = Parallel(n_jobs=n_jobs)(delayed(_run_chain)(X, y, c, s, kwargs) for c, s in enumerate(seeds))
    return Posterior.concat(posteriors)
