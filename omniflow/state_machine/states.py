"""
Execution states and allowed transitions of the flow state machine
"""
from omniflow.db.models.chatbot_execution import ExecutionStatus, TERMINAL_STATUSES


# מעברים חוקיים: התחלה מחדש (upsert) מאפסת כל מצב ואינה עוברת כאן
EXECUTION_TRANSITIONS = {
    ExecutionStatus.RUNNING: [
        ExecutionStatus.RUNNING,
        ExecutionStatus.WAITING,
        ExecutionStatus.PAUSED,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.ERROR,
    ],
    ExecutionStatus.WAITING: [
        ExecutionStatus.RUNNING,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.ERROR,
    ],
    ExecutionStatus.PAUSED: [
        ExecutionStatus.RUNNING,
        ExecutionStatus.COMPLETED,
        ExecutionStatus.ERROR,
    ],
    ExecutionStatus.COMPLETED: [],
    ExecutionStatus.ERROR: [],
}

# סטטוסים שמפעיל רשאי לכפות
OPERATOR_STATUSES = [ExecutionStatus(status) for status in TERMINAL_STATUSES]


def is_valid_transition(current: str, target: str) -> bool:
    try:
        current_status = ExecutionStatus(current)
        target_status = ExecutionStatus(target)
    except ValueError:
        return False
    return target_status in EXECUTION_TRANSITIONS[current_status]
