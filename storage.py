"""Snapshot persistence for the queue coordinator.

The coordinator itself is purely in-memory; this adapter writes its full
state to the database periodically and reads it back at startup.  Each
save replaces the previous snapshot in a single transaction.
"""

from __future__ import annotations

import json
import logging
from datetime import timezone
from typing import Optional

from sqlalchemy import text
from sqlmodel import Session, SQLModel, create_engine, select

from models import CallRow, CounterRow, QueuedTicketRow
from state import CallRecord, QueueState

logger = logging.getLogger(__name__)


class SnapshotStore:
    def __init__(self, database_url: str) -> None:
        connect_args = {}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.database_url = database_url
        self.engine = create_engine(database_url, connect_args=connect_args)

    def init(self) -> None:
        """Create tables if they do not exist."""
        SQLModel.metadata.create_all(self.engine)

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    def save(self, state: QueueState) -> None:
        with Session(self.engine) as session:
            for model in (CounterRow, QueuedTicketRow, CallRow):
                for row in session.exec(select(model)).all():
                    session.delete(row)
            session.flush()

            for category, value in state.counters.items():
                session.add(CounterRow(category=category, value=value))
            for category, codes in state.queues.items():
                for position, code in enumerate(codes):
                    session.add(QueuedTicketRow(category=category, position=position, code=code))
            for seq, record in enumerate(state.calls):
                session.add(
                    CallRow(
                        id=record.id,
                        seq=seq,
                        code=record.code,
                        category=record.category,
                        window=record.window,
                        created_at=record.created_at,
                        requirements=json.dumps(record.requirements),
                        completed=json.dumps(record.completed),
                        routed_to_consultation=record.routed_to_consultation,
                        in_progress=record.in_progress,
                        current_requirement=record.current_requirement,
                        served=record.served,
                        closed=record.closed,
                    )
                )
            session.commit()
        logger.debug(
            "Saved snapshot: %d counters, %d calls", len(state.counters), len(state.calls)
        )

    def load(self) -> Optional[QueueState]:
        """Return the last saved snapshot, or ``None`` on a fresh database."""
        with Session(self.engine) as session:
            counters = session.exec(select(CounterRow)).all()
            tickets = session.exec(
                select(QueuedTicketRow).order_by(QueuedTicketRow.category, QueuedTicketRow.position)
            ).all()
            calls = session.exec(select(CallRow).order_by(CallRow.seq)).all()

            if not counters and not tickets and not calls:
                return None

            state = QueueState(counters={row.category: row.value for row in counters})
            for row in tickets:
                state.queues.setdefault(row.category, []).append(row.code)
            for row in calls:
                created_at = row.created_at
                # SQLite hands datetimes back without their timezone.
                if created_at.tzinfo is None:
                    created_at = created_at.replace(tzinfo=timezone.utc)
                state.calls.append(
                    CallRecord(
                        id=row.id,
                        code=row.code,
                        category=row.category,
                        window=row.window,
                        created_at=created_at,
                        requirements=json.loads(row.requirements),
                        completed=json.loads(row.completed),
                        routed_to_consultation=row.routed_to_consultation,
                        in_progress=row.in_progress,
                        current_requirement=row.current_requirement,
                        served=row.served,
                        closed=row.closed,
                    )
                )
        return state

    def close(self) -> None:
        self.engine.dispose()
