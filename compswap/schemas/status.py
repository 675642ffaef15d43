"""
TaskStatus - shared state machine for replacement jobs and rules.

    INIT ──> HANDING ──> SUCCESS
      │         │
      └─────────┴──────> FAIL

Status never moves backwards. SUCCESS and FAIL are terminal.
"""

from enum import Enum


class TaskStatus(str, Enum):
    """Status of a replacement job or rule."""
    INIT = "INIT"
    HANDING = "HANDING"
    SUCCESS = "SUCCESS"
    FAIL = "FAIL"

    @property
    def is_pending(self) -> bool:
        """True while the job/rule still has work to do."""
        return self in (TaskStatus.INIT, TaskStatus.HANDING)

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.SUCCESS, TaskStatus.FAIL)


PENDING_STATUSES = (TaskStatus.INIT, TaskStatus.HANDING)

_ALLOWED = {
    TaskStatus.INIT: {TaskStatus.INIT, TaskStatus.HANDING, TaskStatus.SUCCESS, TaskStatus.FAIL},
    TaskStatus.HANDING: {TaskStatus.HANDING, TaskStatus.SUCCESS, TaskStatus.FAIL},
    TaskStatus.SUCCESS: {TaskStatus.SUCCESS},
    TaskStatus.FAIL: {TaskStatus.FAIL},
}


def can_transition(old: TaskStatus, new: TaskStatus) -> bool:
    """Check whether moving from old to new keeps status monotonic."""
    return TaskStatus(new) in _ALLOWED[TaskStatus(old)]
