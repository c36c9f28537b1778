"""Pydantic schemas for request bodies.

Responses are returned as plain dicts straight from the coordinator.
"""
from typing import List, Optional

from pydantic import BaseModel, Field


class TicketRequest(BaseModel):
    category: str


class CallRequest(BaseModel):
    window: int = Field(ge=1)
    code: str
    category: Optional[str] = None


class FinalizeRequest(BaseModel):
    id: Optional[str] = None
    code: Optional[str] = None


class RequirementsRequest(BaseModel):
    requirements: List[str]
    id: Optional[str] = None
    code: Optional[str] = None
    window: Optional[int] = Field(default=None, ge=1)
    edit: bool = False


class InProgressRequest(BaseModel):
    requirement: Optional[str] = None


class RequirementRequest(BaseModel):
    requirement: str
