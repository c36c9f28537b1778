"""Database models for the clinic queue.

We use SQLModel to define the schema.  The tables hold a full snapshot of
the coordinator: sequence counters, waiting tickets in queue order and the
call records with their requirement checklists.  Lists are stored as JSON
text so the same schema works on SQLite and PostgreSQL.
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class CounterRow(SQLModel, table=True):
    __tablename__ = "counters"

    category: str = Field(primary_key=True)
    value: int = Field(default=0)


class QueuedTicketRow(SQLModel, table=True):
    __tablename__ = "queued_tickets"

    id: Optional[int] = Field(default=None, primary_key=True)
    category: str = Field(index=True)
    position: int
    code: str


class CallRow(SQLModel, table=True):
    __tablename__ = "calls"

    id: str = Field(primary_key=True)
    seq: int = Field(index=True)  # call order, ticket-code lookups rely on it
    code: str = Field(index=True)
    category: str
    window: int
    created_at: datetime
    requirements: str = Field(default="[]")
    completed: str = Field(default="[]")
    routed_to_consultation: bool = Field(default=False)
    in_progress: bool = Field(default=False)
    current_requirement: Optional[str] = None
    served: bool = Field(default=False)
    closed: bool = Field(default=False)
