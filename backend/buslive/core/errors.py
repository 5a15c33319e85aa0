"""Failure kinds raised inside the tracking core."""


class SourceFailure(Exception):
    """An upstream data source could not be fetched or decoded."""

    def __init__(self, label: str, reason: str = "") -> None:
        self.label = label
        self.reason = reason
        super().__init__(f"{label}: {reason}" if reason else label)


class StaleContextResult(Exception):
    """A fetch resolved after its route context was superseded."""

    def __init__(self, context_id: int, current_id: int) -> None:
        self.context_id = context_id
        self.current_id = current_id
        super().__init__(f"context {context_id} superseded by {current_id}")


class MalformedRecord(ValueError):
    """A single upstream record failed to parse."""
