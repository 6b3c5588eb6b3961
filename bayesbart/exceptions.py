"""Custom exceptions for bayesbart.

This module defines the exceptions and warnings raised by the sampler,
the predictor and the cross-validation harness.
"""

class InvalidTreeError(Exception):
    """Exception raised when a proposed move would produce an invalid tree.

    The sampler treats it as a self-rejection of the proposal.
    """
    pass

class InvalidPriorParameters(ValueError):
    """Exception raised for non-positive prior hyperparameters or ensemble size."""
    pass

class MissingCovariate(LookupError):
    """Exception raised when a covariate used by a stored split is not supplied."""
    def __init__(self, missing):
        self.missing = list(missing)
        super().__init__(f'Missing covariates referenced by the model: {", ".join(self.missing)}')

class DegenerateFold(ValueError):
    """Exception raised when a set of observations has no presences or no absences."""
    pass

class NonConvergenceWarning(UserWarning):
    """Warning emitted when the retained draws show excessive trace variance."""
    pass
