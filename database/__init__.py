"""
Database layer — SQLAlchemy async persistence (PostgreSQL / MySQL / SQLite).

Quick start:
  from database import Database, ActionStore
  db = Database(settings.database)
  await db.init_db()
  due = await ActionStore(db).find_due()
"""
from database.models import (
    Base, OrganizationRow, PersonRow, EmailSenderRow, SequenceRow,
    StepTemplateRow, ConversationRow, MessageRow, ScheduledActionRow,
)
from database.session import Database
from database.action_store import ActionStore
from database.store import ConversationStore

__all__ = [
    # ORM models
    "Base", "OrganizationRow", "PersonRow", "EmailSenderRow", "SequenceRow",
    "StepTemplateRow", "ConversationRow", "MessageRow", "ScheduledActionRow",
    # Engine / sessions
    "Database",
    # Stores
    "ActionStore", "ConversationStore",
]
