from __future__ import annotations


class ExpanderError(RuntimeError):
    """Base class for errors raised by the expander pipeline."""


class SubscriptionSetupFailed(ExpanderError):
    """Tree or visibility observation could not be established; the pipeline does not start."""


class ActionFailed(ExpanderError):
    def __init__(self, element: object, cause: BaseException) -> None:
        super().__init__(f"activation failed for {element!r}: {cause}")
        self.element = element
        self.cause = cause
