class CategorizerError(Exception):
    """Base class for errors raised inside the categorization core."""


class ValidationError(CategorizerError):
    """A transaction record is missing or has malformed required fields."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class BudgetExceeded(CategorizerError):
    """The remote layer was denied admission by the budget guard."""


class RemoteUnavailable(CategorizerError):
    """The remote classifier is not configured or its breaker is open."""


class RemoteTimeout(CategorizerError):
    """A remote call exceeded its hard timeout and was abandoned."""


class RemoteParseError(CategorizerError):
    """A remote response could not be mapped onto the category catalog."""


class ModelUnavailable(CategorizerError):
    """No usable statistical model has been published yet."""


class ConcurrencyConflict(CategorizerError):
    """A compare-and-set on a shared counter kept losing the race."""


class ModelSchemaError(ValueError):
    """A serialized classifier model does not match the expected schema."""
