"""
Database Models
"""
from omniflow.db.models.crm import (
    Channel,
    Contact,
    Conversation,
    Message,
    Tag,
    ContactTag,
    Deal,
    Notification,
)
from omniflow.db.models.automation import Automation
from omniflow.db.models.automation_log import AutomationExecutionLog
from omniflow.db.models.chatbot import Chatbot, FlowNode, FlowEdge
from omniflow.db.models.chatbot_execution import ChatbotExecution
from omniflow.db.models.flow_timer import FlowTimer
from omniflow.db.models.outbox_message import OutboxMessage

__all__ = [
    "Channel",
    "Contact",
    "Conversation",
    "Message",
    "Tag",
    "ContactTag",
    "Deal",
    "Notification",
    "Automation",
    "AutomationExecutionLog",
    "Chatbot",
    "FlowNode",
    "FlowEdge",
    "ChatbotExecution",
    "FlowTimer",
    "OutboxMessage",
]
