"""Error types raised by the family tree core and persistence layer."""


class FamilyTreeError(Exception):
    """Base class for all family tree errors."""


class NotFoundError(FamilyTreeError):
    """A requested record does not exist."""

    def __init__(self, kind: str, record_id: int):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind.capitalize()} not found: {record_id}")


class ValidationFailure(FamilyTreeError):
    """Input was rejected by validation."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")


class PersistenceError(FamilyTreeError):
    """The underlying storage call failed."""

    def __init__(self, operation: str, message: str):
        self.operation = operation
        super().__init__(f"{operation} failed: {message}")


class PartialCascadeError(PersistenceError):
    """A non-atomic cascading delete stopped part way through."""

    def __init__(self, individual_id: int, completed: list[str], failed_step: str, message: str):
        self.individual_id = individual_id
        self.completed = list(completed)
        self.failed_step = failed_step
        super().__init__(
            "delete_individual",
            f"cascade for individual {individual_id} stopped at '{failed_step}' "
            f"after {len(self.completed)} completed step(s): {message}",
        )


class CycleDetectedError(FamilyTreeError):
    """Parent-child edges form a loop."""

    def __init__(self, path: list[int]):
        self.path = list(path)
        super().__init__(
            "Cycle detected in parent-child relationships: "
            + " -> ".join(str(p) for p in self.path)
        )
