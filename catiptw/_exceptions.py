class ConfigurationInvalid(Exception):
    """Raised when estimator or bootstrap settings cannot produce a valid analysis."""
    pass


class DataIncomplete(Exception):
    """
    Raised when the analysis table still has missing values.

    catiptw only supports complete-case analysis: rows with missing values
    are dropped (see ``catiptw.data.complete_cases``), never imputed. This
    biases results unless the data are missing completely at random.
    """
    pass


class ModelFitFailure(Exception):
    """
    Raised when a multinomial propensity model cannot be fitted.

    Covers non-convergence, non-finite coefficients, singular information
    matrices and exposure levels absent from the data being fitted.
    """
    pass


class ModelOutputInvalid(Exception):
    """
    Raised when a predicted probability matrix is not a valid simplex:
    a row does not sum to 1 within tolerance, or an entry lies outside [0, 1].
    """
    pass


class DegenerateWeight(Exception):
    """
    Raised when a subject's probability of their observed exposure level is
    numerically zero under the denominator model, so their weight is undefined.
    """

    def __init__(self, message: str, subjects=()) -> None:
        super().__init__(message)
        self.subjects = list(subjects)


class ReplicateFitFailure(Exception):
    """A single bootstrap replicate could not be computed and was dropped."""

    def __init__(self, replicate: int, cause: BaseException) -> None:
        super().__init__(
            f"Bootstrap replicate {replicate} failed: "
            f"{type(cause).__name__}: {cause}"
        )
        self.replicate = replicate
        self.cause = cause
