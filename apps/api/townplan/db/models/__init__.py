"""SQLAlchemy ORM models."""

from townplan.db.models.users import User
from townplan.db.models.applications import Application
from townplan.db.models.approvals import (
    ApplicationGroupAssignment,
    ApprovalGroup,
    ApprovalGroupMember,
    DecisionComment,
    DecisionRevocation,
    FinalApproval,
    MemberDecision,
)
from townplan.db.models.chat import (
    ChatAttachment,
    ChatMessage,
    ChatParticipant,
    ChatThread,
    MessageStar,
    ReadReceipt,
)
from townplan.db.models.issues import ApplicationIssue

__all__ = [
    "User",
    "Application",
    "ApplicationGroupAssignment",
    "ApprovalGroup",
    "ApprovalGroupMember",
    "DecisionComment",
    "DecisionRevocation",
    "FinalApproval",
    "MemberDecision",
    "ChatAttachment",
    "ChatMessage",
    "ChatParticipant",
    "ChatThread",
    "MessageStar",
    "ReadReceipt",
    "ApplicationIssue",
]
