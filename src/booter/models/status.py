"""Phase and outcome enums for the pivot state machine."""

from enum import Enum


class PhaseEnum(str, Enum):
    """Which root is live.

    State transitions:
    bootstrap --forward_pivot--> target --reverse_return--> bootstrap
        ^                          |
        └──── pivot/exec failure ──┘
    """

    BOOTSTRAP = "bootstrap"
    TARGET = "target"


class ReturnOutcome(str, Enum):
    """Result of a reverse_return request."""

    RETURNED = "returned"
    IN_PROGRESS = "in_progress"


class PivotOutcome(str, Enum):
    """Result of forward_pivot when the target init could not take over."""

    RECOVERED = "recovered"
