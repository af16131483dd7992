"""Stage enum for the image-based upgrade lifecycle."""

from enum import Enum


class StageEnum(str, Enum):
    """Image-based upgrade stages.

    State transitions:
    Idle → Prep → Upgrade → Idle
             ↓       ↓
           Rollback ←┘ → Idle
    """

    IDLE = "Idle"
    PREP = "Prep"
    UPGRADE = "Upgrade"
    ROLLBACK = "Rollback"
