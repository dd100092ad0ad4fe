"""Custom exception classes for the classifier."""


class NotFoundError(Exception):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} not found")
        self.resource = resource


class AlreadyExistsError(Exception):
    def __init__(self, resource: str = "Resource"):
        super().__init__(f"{resource} already exists")
        self.resource = resource


class ValidationError(Exception):
    def __init__(self, detail: str = "Validation error"):
        super().__init__(detail)
        self.detail = detail


# ── Stage-boundary errors ─────────────────────────────
# Raised inside a cascade stage and absorbed by the cascade.


class ClassifierError(Exception):
    """Base class for failures a cascade stage may absorb."""


class PatternError(ClassifierError):
    """A rule pattern could not be compiled."""

    def __init__(self, pattern: str, reason: str, rule_id: int | None = None):
        super().__init__(f"Invalid pattern {pattern!r}: {reason}")
        self.pattern = pattern
        self.reason = reason
        self.rule_id = rule_id


class ServiceUnavailable(ClassifierError):
    """The LLM backend is unreachable, erroring or timed out."""


class ValidationMiss(ClassifierError):
    """The LLM suggested a category outside the allowed set."""

    def __init__(self, suggested: str):
        super().__init__(f"Category {suggested!r} is not an allowed category")
        self.suggested = suggested


class ReferenceMiss(ClassifierError):
    """A mapping points at a category that no longer exists."""

    def __init__(self, category_id: int | None):
        super().__init__(f"Category {category_id} no longer exists")
        self.category_id = category_id
