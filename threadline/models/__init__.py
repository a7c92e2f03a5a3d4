from threadline.models.agent_profile import AgentProfile
from threadline.models.auto_reply_log import AutoReplyLog
from threadline.models.automation_run_log import AutomationRunLog
from threadline.models.conversation import Conversation
from threadline.models.inbound_dedup import InboundMessageDedup
from threadline.models.lead import Contact, Lead
from threadline.models.message import Message
from threadline.models.outbound_job import OutboundJob
from threadline.models.outbound_log import OutboundMessageLog
from threadline.models.task import Task

__all__ = [
    "AgentProfile",
    "AutoReplyLog",
    "AutomationRunLog",
    "Contact",
    "Conversation",
    "InboundMessageDedup",
    "Lead",
    "Message",
    "OutboundJob",
    "OutboundMessageLog",
    "Task",
]
