"""
Flow execution state machine: ledger, graph walker and timers
"""
from omniflow.state_machine.states import EXECUTION_TRANSITIONS, is_valid_transition
from omniflow.state_machine.ledger import ExecutionContext, ExecutionLedger
from omniflow.state_machine.flow_executor import FlowExecutor, ResumeOutcome

__all__ = [
    "EXECUTION_TRANSITIONS",
    "is_valid_transition",
    "ExecutionContext",
    "ExecutionLedger",
    "FlowExecutor",
    "ResumeOutcome",
]
