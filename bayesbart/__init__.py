"""bayesbart: A Python package for Bayesian Additive Regression Trees in species distribution modeling.

This package provides classes and functions to fit sum-of-trees models by
MCMC, predict with credible intervals (also on raster stacks), rank and
select covariates, compute partial dependence and cross-validate with
spatial blocks. The package is composed of modules for node data handling,
tree structures, priors, the sampler, predictions, diagnostics and
evaluation.

Available objects:
  - BART, run_chains
  - BARTPrior
  - Posterior, PosteriorDraw, TreeSnapshot
  - Tree, Node, NodeData
  - predict, predict_draws, predict_raster
  - Diagnostics: variable_counts, variable_importance, importance_fit,
    variable_selection, gelman_rubin, check_convergence, summarize_draws
  - Partial dependence: partial_dependence, partial_dependence_2d,
    spatial_partial_dependence
  - Cross-validation and metrics
  - Utility and simulation functions
  - Exceptions: InvalidTreeError, InvalidPriorParameters, MissingCovariate,
    DegenerateFold, NonConvergenceWarning
"""

__version__ = "0.1.0"

from .bart import BART, run_chains
from .priors import BARTPrior
from .ensemble import Posterior, PosteriorDraw, TreeSnapshot, inverse_link, partial_residual
from .tree import Tree
from .node import Node
from .node_data import NodeData
from .predict import predict, predict_draws, predict_raster
from .diagnostics import (
    variable_counts,
    variable_importance,
    importance_fit,
    variable_selection,
    gelman_rubin,
    check_convergence,
    summarize_draws,
)
from .partial_dependence import (
    partial_dependence,
    partial_dependence_2d,
    spatial_partial_dependence,
)
from .validation import (
    autocorrelation_range,
    spatial_folds,
    cross_validate,
)
from .metrics import (
    auc,
    auc_pr,
    threshold_metrics,
    optimal_threshold,
    miller_calibration,
    hosmer_lemeshow,
    evaluate,
)
from .utils import (
    drop_incomplete,
    sim_linear,
    sim_presence,
    sim_checkerboard,
)
from .exceptions import (
    InvalidTreeError,
    InvalidPriorParameters,
    MissingCovariate,
    DegenerateFold,
    NonConvergenceWarning,
)
