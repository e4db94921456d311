"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from hvacdesk_core.state.database import create_session_factory, get_engine, session_scope
from hvacdesk_core.state.repository import (
    AuditRepository,
    CompanyRepository,
    UserRepository,
    WebhookEventRepository,
)

__all__ = [
    "AuditRepository",
    "CompanyRepository",
    "UserRepository",
    "WebhookEventRepository",
    "create_session_factory",
    "get_engine",
    "session_scope",
]
