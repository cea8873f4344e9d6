"""Custom exception classes for the scplacebo library."""

class ScplaceboError(Exception):
    """Base class for all custom exceptions in the scplacebo library."""
    pass

class ScplaceboConfigError(ScplaceboError):
    """Exception raised for errors in configuration."""
    pass

class ScplaceboDataError(ScplaceboError):
    """Exception raised for errors related to input data."""
    pass

class ScplaceboEstimationError(ScplaceboError):
    """Exception raised for errors during the estimation process."""
    pass

class ScplaceboCancelledError(ScplaceboEstimationError):
    """Exception raised when a placebo batch is stopped between iterations."""
    pass
