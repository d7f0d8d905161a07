"""Enum definitions for application constants."""

from enum import Enum


class ApplicationStatus(str, Enum):
    """
    Application lifecycle.

    SUBMITTED → UNDER_REVIEW → (APPROVED | REJECTED) → COLLECTED
    REJECTED and COLLECTED are terminal.
    """
    SUBMITTED = "SUBMITTED"
    UNDER_REVIEW = "UNDER_REVIEW"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COLLECTED = "COLLECTED"

    @classmethod
    def has_value(cls, value: str) -> bool:
        return value in cls._value2member_map_


class ReviewMode(str, Enum):
    """Whether members must decide in review_order."""
    UNORDERED = "UNORDERED"
    ORDERED = "ORDERED"


class MemberRole(str, Enum):
    PRIMARY = "PRIMARY"
    BACKUP = "BACKUP"
    RETIRED = "RETIRED"  # Kept for history, never a required reviewer


class MemberAvailability(str, Enum):
    AVAILABLE = "AVAILABLE"
    UNAVAILABLE = "UNAVAILABLE"
    LIMITED = "LIMITED"


class DecisionStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class DecisionOutcome(str, Enum):
    """Outcomes a member or final approver may submit."""
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class CommentType(str, Enum):
    GENERAL = "GENERAL"
    APPROVAL = "APPROVAL"
    REJECTION = "REJECTION"
    ISSUE = "ISSUE"
    RESOLUTION = "RESOLUTION"


class IssuePriority(str, Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class IssueAssignmentType(str, Enum):
    """
    Who an issue is addressed to.

    - COLLABORATIVE: the whole approval group, no target
    - GROUP_MEMBER: one approval group member (member reference)
    - SPECIFIC_USER: any staff user (user reference)
    """
    COLLABORATIVE = "COLLABORATIVE"
    GROUP_MEMBER = "GROUP_MEMBER"
    SPECIFIC_USER = "SPECIFIC_USER"


class IssueStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class ThreadType(str, Enum):
    APPLICATION = "APPLICATION"  # Review discussion for the whole group
    GROUP = "GROUP"  # Collaborative issue
    MIXED = "MIXED"  # Issue addressed to a group member
    SPECIFIC_USER = "SPECIFIC_USER"  # Issue addressed to a specific user
    DIRECT = "DIRECT"


class ParticipantRole(str, Enum):
    OWNER = "OWNER"
    ADMIN = "ADMIN"
    MEMBER = "MEMBER"


class ParticipantPermission(str, Enum):
    """Permission checked by can_user_manage_participants."""
    ADD = "add"
    REMOVE = "remove"
    MANAGE = "manage"
    ANY = "any"


class MessageType(str, Enum):
    TEXT = "TEXT"
    SYSTEM = "SYSTEM"
    ACTION = "ACTION"


class MessageStatus(str, Enum):
    SENT = "SENT"
    DELIVERED = "DELIVERED"
    READ = "READ"


class RealtimeEventType(str, Enum):
    """Websocket envelope types."""
    CHAT_MESSAGE = "CHAT_MESSAGE"
    TYPING_INDICATOR = "TYPING_INDICATOR"
    READ_RECEIPT = "READ_RECEIPT"
    PARTICIPANT_CHANGE = "PARTICIPANT_CHANGE"
    ISSUE_UPDATE = "ISSUE_UPDATE"
    DECISION_UPDATE = "DECISION_UPDATE"
    USER_STATUS = "USER_STATUS"
    SUBSCRIBE = "SUBSCRIBE"
    UNSUBSCRIBE = "UNSUBSCRIBE"
    SUBSCRIBED = "SUBSCRIBED"
    ERROR = "ERROR"
