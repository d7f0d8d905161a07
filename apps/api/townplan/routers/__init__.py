"""API routers."""

from townplan.routers.applications import router as applications_router
from townplan.routers.approval_groups import router as approval_groups_router
from townplan.routers.chat import router as chat_router
from townplan.routers.issues import router as issues_router
from townplan.routers.websocket import router as websocket_router

__all__ = [
    "applications_router",
    "approval_groups_router",
    "chat_router",
    "issues_router",
    "websocket_router",
]
