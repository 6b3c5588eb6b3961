"""Prior model for bayesbart.

This module defines the BARTPrior class, which gathers the priors of the
sum-of-trees model: the depth-dependent splitting probability, the split
variable and split value distributions, the Normal prior on the leaf values
and the scaled inverse chi-squared prior on the residual variance.
"""

import numpy as np
import numpy.typing as npt
from scipy.stats import chi2
from .exceptions import InvalidPriorParameters
from .mytyping import NDArrayFloat, NDArrayInt

# half-range of the latent response covered by +-k prior standard deviations
LEAF_PRIOR_RANGE = {'identity': 0.5, 'probit': 3.0, 'logit': 3.0 * np.pi / np.sqrt(3)}


class BARTPrior():
    """
    Priors of the BART model.

    The object only stores hyperparameters; every method is a pure function
    of them and of its arguments.

    Parameters
    ----------
    m : int, optional
        Number of trees in the ensemble (default 200).
    alpha : float, optional
        Base splitting probability, must lie in (0, 1] (default 0.95).
    beta : float, optional
        Depth decay of the splitting probability (default 2).
    k : float, optional
        Number of leaf-prior standard deviations matching the response
        half-range (default 2).
    nu : float, optional
        Degrees of freedom of the residual variance prior (default 3).
    q : float, optional
        Prior quantile of the residual standard deviation placed at the
        rough estimate sigest (default 0.9).
    split_weights : array-like or None, optional
        Unnormalized probabilities of splitting on each variable. Uniform
        if None.

    Raises
    ------
    InvalidPriorParameters
        If any hyperparameter is outside its admissible range.
    """
    def __init__(self, m: int = 200, alpha: float = 0.95, beta: float = 2.0,
                 k: float = 2.0, nu: float = 3.0, q: float = 0.9,
                 split_weights: npt.ArrayLike|None = None):
        if not isinstance(m, (int, np.integer)) or m <= 0:
            raise InvalidPriorParameters(f'The number of trees must be a positive integer, got {m}')
        if not 0 < alpha <= 1:
            raise InvalidPriorParameters(f'alpha must be in (0, 1], got {alpha}')
        if beta <= 0:
            raise InvalidPriorParameters(f'beta must be positive, got {beta}')
        if k <= 0:
            raise InvalidPriorParameters(f'k must be positive, got {k}')
        if nu <= 0:
            raise InvalidPriorParameters(f'nu must be positive, got {nu}')
        if not 0 < q < 1:
            raise InvalidPriorParameters(f'q must be in (0, 1), got {q}')
        if split_weights is not None:
            split_weights = np.asarray(split_weights, dtype=float)
            if np.any(split_weights < 0) or not np.any(split_weights > 0):
                raise InvalidPriorParameters('split_weights must be non-negative and not all zero')

        self.m = int(m)
        self.alpha = float(alpha)
        self.beta = float(beta)
        self.k = float(k)
        self.nu = float(nu)
        self.q = float(q)
        self.split_weights: NDArrayFloat|None = split_weights

    #### Tree structure ####

    def get_p_split(self, depth: int) -> float:
        """
        Compute the probability of splitting a node at a given depth.

        Parameters
        ----------
        depth : int
            The node depth (root is 0).

        Returns
        -------
        float
            The splitting probability alpha / (1 + depth)^beta.
        """
        return self.alpha/(1+depth)**self.beta

    def log_p_split(self, depth: int) -> float:
        return np.log(self.alpha) - self.beta * np.log1p(depth)

    def log_p_stop(self, depth: int) -> float:
        return np.log1p(-self.get_p_split(depth))

    def split_var_probs(self, avail_vars: NDArrayInt) -> NDArrayFloat:
        """
        Distribution of the split variable over the variables that can be split at a node.

        Parameters
        ----------
        avail_vars : NDArrayInt
            Indices of the variables with at least one achievable cutpoint.

        Returns
        -------
        NDArrayFloat
            Probabilities aligned with avail_vars.
        """
        if self.split_weights is None:
            return np.full(len(avail_vars), 1/len(avail_vars))
        w = self.split_weights[avail_vars]
        if w.sum() == 0:
            return np.full(len(avail_vars), 1/len(avail_vars))
        return w / w.sum()

    def log_split_prob(self, var: int, avail_vars: NDArrayInt, n_vals: int) -> float:
        """
        Log prior probability of a split rule at a node: variable, then value uniformly.

        Parameters
        ----------
        var : int
            The split variable.
        avail_vars : NDArrayInt
            Variables that can be split at the node.
        n_vals : int
            Number of achievable cutpoints of var at the node.

        Returns
        -------
        float
        """
        probs = self.split_var_probs(avail_vars)
        p_var = probs[np.flatnonzero(avail_vars == var)[0]]
        return np.log(p_var) - np.log(n_vals)

    #### Leaf values ####

    def sigma_mu(self, link: str) -> float:
        """
        Prior standard deviation of a leaf value.

        The variance shrinks with the number of trees, so that the prior on
        the sum of m leaves puts the response half-range at k standard
        deviations.

        Parameters
        ----------
        link : str
            'identity', 'probit' or 'logit'.

        Returns
        -------
        float
        """
        return LEAF_PRIOR_RANGE[link] / (self.k * np.sqrt(self.m))

    @staticmethod
    def leaf_log_marginal(W: float, S: float, sigma_mu: float) -> float:
        """
        Log marginal likelihood of the residuals in a leaf, leaf value integrated out.

        Terms that do not depend on the tree partition are dropped.

        Parameters
        ----------
        W : float
            Sum of the residual precisions in the leaf.
        S : float
            Precision-weighted sum of the residuals in the leaf.
        sigma_mu : float
            Prior standard deviation of the leaf value.

        Returns
        -------
        float
        """
        tau2 = sigma_mu**2
        return -0.5*np.log1p(tau2*W) + 0.5*tau2*S**2/(1 + tau2*W)

    @staticmethod
    def leaf_posterior(W: float, S: float, sigma_mu: float) -> tuple[float, float]:
        """
        Parameters of the Normal full conditional of a leaf value.

        Returns
        -------
        tuple
            (mean, std)
        """
        prec = 1/sigma_mu**2 + W
        return S/prec, 1/np.sqrt(prec)

    #### Residual variance ####

    def calc_lambda(self, sigest: float) -> float:
        """
        Scale of the residual variance prior such that P(sigma < sigest) = q.

        Parameters
        ----------
        sigest : float
            Rough estimate of the residual standard deviation.

        Returns
        -------
        float
        """
        return sigest**2 * chi2.ppf(1 - self.q, self.nu) / self.nu

    def sigma2_posterior(self, n: int, sse: float, lambd: float) -> tuple[float, float]:
        """
        Parameters of the inverse gamma full conditional of the residual variance.

        Returns
        -------
        tuple
            (a, scale)
        """
        return (self.nu + n)/2, (self.nu*lambd + sse)/2

    def get_setup(self) -> dict:
        return {'m': self.m, 'alpha': self.alpha, 'beta': self.beta, 'k': self.k,
                'nu': self.nu, 'q': self.q,
                'split_weights': None if self.split_weights is None else self.split_weights.tolist()}
