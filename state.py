"""In-memory records owned by the queue coordinator.

These are plain dataclasses; the coordinator is the only writer and hands
out dict copies (``to_dict``) to everything else.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class CallRecord:
    """A ticket once it has been called to a window."""

    id: str
    code: str
    category: str
    window: int
    created_at: datetime
    requirements: List[str] = field(default_factory=list)
    completed: List[str] = field(default_factory=list)
    routed_to_consultation: bool = False
    in_progress: bool = False
    current_requirement: Optional[str] = None
    served: bool = False
    closed: bool = False

    @property
    def outstanding(self) -> List[str]:
        done = set(self.completed)
        return [r for r in self.requirements if r not in done]

    def close(self) -> None:
        self.served = True
        self.closed = True
        self.in_progress = False
        self.current_requirement = None

    def normalize(self) -> None:
        """Bring a record back in line with the lifecycle invariants.

        Used when records come from storage; the coordinator's own
        transitions never leave a record in a state this would change.
        """
        assigned = set(self.requirements)
        self.completed = [r for r in dict.fromkeys(self.completed) if r in assigned]
        if self.closed:
            self.served = True
        if self.current_requirement is not None and self.current_requirement not in self.outstanding:
            self.current_requirement = None
        self.in_progress = self.current_requirement is not None
        if self.requirements and not self.outstanding:
            self.closed = True
            self.served = True
        if self.served:
            self.in_progress = False
            self.current_requirement = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "code": self.code,
            "category": self.category,
            "window": self.window,
            "created_at": self.created_at.isoformat(),
            "requirements": list(self.requirements),
            "completed": list(self.completed),
            "routed_to_consultation": self.routed_to_consultation,
            "in_progress": self.in_progress,
            "current_requirement": self.current_requirement,
            "served": self.served,
            "closed": self.closed,
        }


@dataclass
class QueueState:
    """Everything needed to rebuild the coordinator after a restart."""

    counters: Dict[str, int] = field(default_factory=dict)
    queues: Dict[str, List[str]] = field(default_factory=dict)
    calls: List[CallRecord] = field(default_factory=list)
