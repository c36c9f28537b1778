"""Queue and call lifecycle logic.

The :class:`QueueCoordinator` owns all mutable state: the per-category
sequence counters, the waiting queues and the call records.  Every
operation validates first and commits second while holding a single
lock, and hands its events to the notifier before releasing it so that
observers see them in commit order.  Notifiers must not block.
Nothing in here touches the network or the disk.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from config import CategoryConfig, Settings
from errors import (
    CallNotFoundError,
    InvalidCategoryError,
    InvalidPayloadError,
    InvalidWindowError,
    RequirementNotFoundError,
    TicketNotFoundError,
)
from state import CallRecord, QueueState

logger = logging.getLogger(__name__)

CODE_WIDTH = 3

Event = Tuple[str, Dict[str, Any]]


class Notifier(Protocol):
    def publish(self, event: str, payload: Dict[str, Any]) -> None:
        ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_code(tag: str, number: int) -> str:
    return f"{tag}{number:0{CODE_WIDTH}d}"


def normalize_requirements(requirements: Any) -> List[str]:
    """Strip, drop blanks and collapse duplicates keeping first-seen order."""
    if not isinstance(requirements, (list, tuple)):
        raise InvalidPayloadError("requirements must be a list of strings")
    cleaned: List[str] = []
    for item in requirements:
        if not isinstance(item, str):
            raise InvalidPayloadError("requirements must be a list of strings")
        name = item.strip()
        if name:
            cleaned.append(name)
    return list(dict.fromkeys(cleaned))


class SequenceAllocator:
    """Per-category counter behind the ticket numbers."""

    def __init__(self, counters: Optional[Dict[str, int]] = None) -> None:
        self._counters: Dict[str, int] = dict(counters or {})

    def next(self, tag: str) -> int:
        value = self._counters.get(tag, 0) + 1
        self._counters[tag] = value
        return value

    def current(self, tag: str) -> int:
        return self._counters.get(tag, 0)

    def raise_to(self, tag: str, value: int) -> None:
        if value > self._counters.get(tag, 0):
            self._counters[tag] = value

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counters)


class QueueStore:
    """Waiting ticket codes per category, in arrival order."""

    def __init__(self, tags: Iterable[str] = ()) -> None:
        self._queues: Dict[str, List[str]] = {tag: [] for tag in tags}

    def enqueue(self, tag: str, code: str) -> int:
        queue = self._queues.setdefault(tag, [])
        queue.append(code)
        return len(queue)

    def contains(self, tag: str, code: str) -> bool:
        return code in self._queues.get(tag, [])

    def dequeue_specific(self, tag: str, code: str) -> str:
        try:
            self._queues.get(tag, []).remove(code)
        except ValueError:
            raise TicketNotFoundError(f"Ticket {code} is not waiting in queue {tag}") from None
        return code

    def snapshot(self) -> Dict[str, List[str]]:
        return {tag: list(codes) for tag, codes in self._queues.items()}

    def restore(self, queues: Dict[str, List[str]]) -> None:
        for tag, codes in queues.items():
            self._queues[tag] = list(codes)


class QueueCoordinator:
    def __init__(
        self,
        categories: Iterable[CategoryConfig],
        notifier: Optional[Notifier] = None,
        retention: timedelta = timedelta(hours=24),
        recent_limit: int = 5,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._categories: Dict[str, CategoryConfig] = {c.tag: c for c in categories}
        self._routing: Dict[str, frozenset] = {
            tag: frozenset(c.windows) for tag, c in self._categories.items()
        }
        self.notifier = notifier
        self.retention = retention
        self.recent_limit = recent_limit
        self._clock = clock
        self._lock = threading.Lock()
        self._allocator = SequenceAllocator({tag: 0 for tag in self._categories})
        self._queue = QueueStore(self._categories)
        self._calls: List[CallRecord] = []
        self._by_id: Dict[str, CallRecord] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> "QueueCoordinator":
        return cls(
            settings.categories,
            notifier=notifier,
            retention=timedelta(hours=settings.retention_hours),
            recent_limit=settings.recent_calls_limit,
            clock=clock,
        )

    @property
    def categories(self) -> List[CategoryConfig]:
        return list(self._categories.values())

    # ------------------------------------------------------------------
    # helpers (callers hold the lock unless noted)
    # ------------------------------------------------------------------

    def _emit(self, events: List[Event]) -> None:
        """Publish events in commit order; called with the lock held."""
        if self.notifier is None:
            return
        for name, payload in events:
            try:
                self.notifier.publish(name, payload)
            except Exception:
                logger.exception("Failed to publish %s event", name)

    def _resolve_category(self, category: Any) -> str:
        tag = category.strip().upper() if isinstance(category, str) else None
        if not tag or tag not in self._categories:
            allowed = ", ".join(sorted(self._categories))
            raise InvalidCategoryError(f"Invalid category {category!r}. Use one of: {allowed}")
        return tag

    def _category_for_code(self, code: str) -> Optional[str]:
        for tag in sorted(self._categories, key=len, reverse=True):
            rest = code[len(tag):]
            if code.startswith(tag) and rest.isdigit():
                return tag
        return None

    def _board(self) -> Dict[str, Any]:
        recent = [r for r in reversed(self._calls) if not r.closed][: self.recent_limit]
        return {
            "queue": self._queue.snapshot(),
            "recent_calls": [r.to_dict() for r in recent],
        }

    def _open_by_id(self, call_id: Optional[str]) -> CallRecord:
        record = self._by_id.get(call_id) if call_id else None
        if record is None or record.closed:
            raise CallNotFoundError(f"No open call with id {call_id!r}")
        return record

    def _open_by_code(self, code: str, window: Optional[int] = None) -> CallRecord:
        # First match in call order; codes are category-prefixed so they
        # only repeat if a counter were ever reset.
        for record in self._calls:
            if record.closed or record.code != code:
                continue
            if window is not None and record.window != window:
                continue
            return record
        where = f" at window {window}" if window is not None else ""
        raise CallNotFoundError(f"No open call for ticket {code}{where}")

    def _finish(self, record: CallRecord, events: List[Event], finalized: bool) -> None:
        if finalized:
            events.append(("call-finalized", {"id": record.id, "code": record.code}))
        events.append(("queue-updated", self._board()))

    # ------------------------------------------------------------------
    # tickets
    # ------------------------------------------------------------------

    def generate(self, category: Any) -> Dict[str, Any]:
        """Issue the next ticket of ``category`` and put it in the queue."""
        tag = self._resolve_category(category)
        with self._lock:
            number = self._allocator.next(tag)
            code = format_code(tag, number)
            position = self._queue.enqueue(tag, code)
            ticket = {"code": code, "category": tag, "number": number, "position": position}
            events: List[Event] = [("ticket-created", dict(ticket)), ("queue-updated", self._board())]
            self._emit(events)
        logger.info("Issued ticket %s", code)
        return ticket

    def call_ticket(self, window: Any, code: Any, category: Any = None) -> Dict[str, Any]:
        """Pull ``code`` out of its queue and open a call record at ``window``.

        The window names the exact ticket it wants, usually but not always
        the head of the queue.
        """
        if isinstance(window, bool) or not isinstance(window, int) or window < 1:
            raise InvalidPayloadError("window must be a positive integer")
        if not isinstance(code, str) or not code.strip():
            raise InvalidPayloadError("code is required")
        code = code.strip().upper()
        tag = self._category_for_code(code)
        if category is not None:
            requested = self._resolve_category(category)
            if requested != tag:
                raise TicketNotFoundError(f"Ticket {code} is not waiting in queue {requested}")
        if tag is None:
            raise TicketNotFoundError(f"Ticket {code} not found")

        with self._lock:
            if not self._queue.contains(tag, code):
                raise TicketNotFoundError(f"Ticket {code} not found")
            if window not in self._routing.get(tag, ()):
                name = self._categories[tag].name
                raise InvalidWindowError(f"{name} tickets cannot be called to window {window}")
            self._queue.dequeue_specific(tag, code)
            record = CallRecord(
                id=str(uuid.uuid4()),
                code=code,
                category=tag,
                window=window,
                created_at=self._clock(),
            )
            self._calls.append(record)
            self._by_id[record.id] = record
            called = record.to_dict()
            events: List[Event] = [("ticket-called", dict(called)), ("queue-updated", self._board())]
            self._emit(events)
        logger.info("Ticket %s called to window %s", code, window)
        return called

    # ------------------------------------------------------------------
    # call lifecycle
    # ------------------------------------------------------------------

    def assign_requirements(
        self,
        requirements: Any,
        call_id: Optional[str] = None,
        code: Optional[str] = None,
        window: Optional[int] = None,
        edit: bool = False,
    ) -> Dict[str, Any]:
        """Attach the exam checklist to a call and route it to consultation.

        First assignment is keyed by the ticket code and window that called
        it; edits must name the call id.  The new list replaces the old one.
        """
        names = normalize_requirements(requirements)
        if not names:
            raise InvalidPayloadError("at least one requirement is needed")
        if edit and not call_id:
            raise CallNotFoundError("Editing requirements needs the call id")
        if not call_id and (not isinstance(code, str) or not code.strip() or window is None):
            raise InvalidPayloadError("Provide the call id, or the ticket code and window")

        with self._lock:
            if call_id:
                record = self._open_by_id(call_id)
            else:
                record = self._open_by_code(code.strip().upper(), window)
            kept = set(names)
            record.requirements = names
            record.completed = [r for r in record.completed if r in kept]
            if record.current_requirement not in record.outstanding:
                record.current_requirement = None
                record.in_progress = False
            record.routed_to_consultation = True
            finalized = not record.outstanding
            if finalized:
                record.close()
            payload = record.to_dict()
            events: List[Event] = [("call-routed", dict(payload))]
            self._finish(record, events, finalized)
            self._emit(events)
        return payload

    def set_in_progress(self, call_id: str, requirement: Optional[str] = None) -> Dict[str, Any]:
        """Mark which requirement is being worked on; ``None`` clears it."""
        name = requirement.strip() if isinstance(requirement, str) else None
        with self._lock:
            record = self._open_by_id(call_id)
            if not name:
                record.current_requirement = None
                record.in_progress = False
            else:
                if name not in record.outstanding:
                    raise RequirementNotFoundError(
                        f"Requirement {name!r} is not outstanding for ticket {record.code}"
                    )
                record.current_requirement = name
                record.in_progress = True
            payload = record.to_dict()
            events: List[Event] = [("call-updated", dict(payload))]
            self._finish(record, events, False)
            self._emit(events)
        return payload

    def complete_requirement(self, call_id: str, requirement: str) -> Dict[str, Any]:
        """Tick off one requirement; the last one closes the call.

        Repeating a completion is a no-op, including after the last one
        closed the call.
        """
        if not isinstance(requirement, str) or not requirement.strip():
            raise InvalidPayloadError("requirement is required")
        name = requirement.strip()
        with self._lock:
            record = self._by_id.get(call_id) if call_id else None
            if record is not None and record.closed and name in record.completed:
                return record.to_dict()
            record = self._open_by_id(call_id)
            if name not in record.requirements:
                raise RequirementNotFoundError(
                    f"Requirement {name!r} was not assigned to ticket {record.code}"
                )
            if name not in record.completed:
                record.completed.append(name)
            if record.current_requirement == name:
                record.current_requirement = None
                record.in_progress = False
            finalized = not record.outstanding
            if finalized:
                record.close()
            payload = record.to_dict()
            events: List[Event] = [("call-updated", dict(payload))]
            self._finish(record, events, finalized)
            self._emit(events)
        if finalized:
            logger.info("Ticket %s finished all requirements", payload["code"])
        return payload

    def remove_requirement(self, call_id: str, requirement: str) -> Dict[str, Any]:
        """Strike a requirement that was assigned by mistake."""
        if not isinstance(requirement, str) or not requirement.strip():
            raise InvalidPayloadError("requirement is required")
        name = requirement.strip()
        with self._lock:
            record = self._open_by_id(call_id)
            if name not in record.requirements:
                raise RequirementNotFoundError(
                    f"Requirement {name!r} is not assigned to ticket {record.code}"
                )
            record.requirements = [r for r in record.requirements if r != name]
            record.completed = [r for r in record.completed if r != name]
            if record.current_requirement == name:
                record.current_requirement = None
                record.in_progress = False
            finalized = not record.outstanding
            if finalized:
                record.close()
            payload = record.to_dict()
            events: List[Event] = [("call-updated", dict(payload))]
            self._finish(record, events, finalized)
            self._emit(events)
        return payload

    def finalize(self, call_id: Optional[str] = None, code: Optional[str] = None) -> Dict[str, Any]:
        """Close a call by id, or by ticket code when no id is at hand."""
        if not call_id and not (isinstance(code, str) and code.strip()):
            raise InvalidPayloadError("Provide the call id or the ticket code")
        with self._lock:
            if call_id:
                record = self._open_by_id(call_id)
            else:
                record = self._open_by_code(code.strip().upper())
            record.close()
            payload = record.to_dict()
            events: List[Event] = []
            self._finish(record, events, True)
            self._emit(events)
        logger.info("Ticket %s finalized", payload["code"])
        return payload

    # ------------------------------------------------------------------
    # read views
    # ------------------------------------------------------------------

    def snapshot(self, include_counters: bool = True) -> Dict[str, Any]:
        with self._lock:
            board = self._board()
            if include_counters:
                board["counters"] = self._allocator.snapshot()
        return board

    def pending_by_window(self) -> Dict[int, str]:
        """Latest open, not yet routed ticket at each window."""
        with self._lock:
            pending: Dict[int, str] = {}
            for record in self._calls:
                if not record.closed and not record.routed_to_consultation:
                    pending[record.window] = record.code
        return pending

    def consultation_calls(self, only_pending: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                r.to_dict()
                for r in self._calls
                if r.routed_to_consultation and r.requirements and not (only_pending and r.served)
            ]

    def get_call(self, call_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._by_id.get(call_id)
            return record.to_dict() if record else None

    # ------------------------------------------------------------------
    # retention and persistence
    # ------------------------------------------------------------------

    def sweep(self, now: Optional[datetime] = None) -> int:
        """Drop closed calls older than the retention horizon."""
        now = now or self._clock()
        with self._lock:
            kept = [r for r in self._calls if not (r.closed and now - r.created_at >= self.retention)]
            evicted = len(self._calls) - len(kept)
            if evicted:
                self._calls = kept
                self._by_id = {r.id: r for r in kept}
        if evicted:
            logger.info("Retention sweep evicted %d closed calls", evicted)
        return evicted

    def export_state(self) -> QueueState:
        with self._lock:
            return QueueState(
                counters=self._allocator.snapshot(),
                queues=self._queue.snapshot(),
                calls=copy.deepcopy(self._calls),
            )

    def restore(self, state: QueueState) -> None:
        """Replace the in-memory state with a previously saved one."""
        calls = copy.deepcopy(state.calls)
        for record in calls:
            record.normalize()
        with self._lock:
            self._allocator = SequenceAllocator({tag: 0 for tag in self._categories})
            for tag, value in state.counters.items():
                self._allocator.raise_to(tag, value)
            self._queue = QueueStore(self._categories)
            self._queue.restore(state.queues)
            # Never hand out a number that is already in circulation.
            seen = [(tag, code) for tag, codes in state.queues.items() for code in codes]
            seen.extend((r.category, r.code) for r in calls)
            for tag, code in seen:
                match = re.fullmatch(rf"{re.escape(tag)}(\d+)", code)
                if match:
                    self._allocator.raise_to(tag, int(match.group(1)))
            self._calls = calls
            self._by_id = {r.id: r for r in calls}
        logger.info(
            "Restored %d waiting tickets and %d calls",
            sum(len(codes) for codes in state.queues.values()),
            len(calls),
        )
