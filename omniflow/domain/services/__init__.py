"""
Domain Services
"""
from omniflow.domain.services.action_executor import ActionContext, ActionExecutor
from omniflow.domain.services.automation_executor import AutomationExecutor
from omniflow.domain.services.automation_log_service import AutomationLogService
from omniflow.domain.services.flow_timer_service import FlowTimerService
from omniflow.domain.services.outbox_service import OutboxService

__all__ = [
    "ActionContext",
    "ActionExecutor",
    "AutomationExecutor",
    "AutomationLogService",
    "FlowTimerService",
    "OutboxService",
]
