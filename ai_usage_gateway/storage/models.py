"""
Data models for storage layer.

Defines ledger entries, conversation rows and report structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one attempted model invocation.

    Append-only entries that form the auditable usage ledger.
    Once written, these records must never be modified.
    """
    actor_id: str
    group_id: str
    feature: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    latency_ms: int
    success: bool
    timestamp: datetime
    cost_cents: float = 0.0
    endpoint: Optional[str] = None
    error_message: Optional[str] = None
    request_summary: Optional[str] = None
    response_summary: Optional[str] = None


@dataclass(frozen=True)
class Conversation:
    """A multi-turn chat owned by one actor."""
    id: str
    actor_id: str
    group_id: str
    title: str
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass(frozen=True)
class ChatMessage:
    """One turn of a conversation."""
    conversation_id: str
    role: str  # "user", "assistant" or "system"
    content: str
    created_at: datetime
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    model: Optional[str] = None
    latency_ms: Optional[int] = None


@dataclass
class UsageBucket:
    """Aggregated requests, tokens and cost for one slice of the ledger."""
    requests: int = 0
    tokens: int = 0
    cost_cents: float = 0.0


@dataclass
class UsageSummary:
    """Usage over a lookback period, broken down for reporting."""
    total_requests: int
    total_tokens: int
    total_cost_cents: float
    by_feature: Dict[str, UsageBucket] = field(default_factory=dict)
    by_actor: Dict[str, UsageBucket] = field(default_factory=dict)
    by_day: Dict[str, UsageBucket] = field(default_factory=dict)
    success_rate: float = 1.0
    average_latency_ms: float = 0.0


@dataclass(frozen=True)
class MonthlyProjection:
    """Monthly usage extrapolated from the last seven days."""
    estimated_tokens: int
    estimated_cost_cents: float
    basis: str


@dataclass(frozen=True)
class ErrorEntry:
    """A failed invocation, for the recent-errors report."""
    feature: str
    error_message: Optional[str]
    timestamp: datetime
    actor_id: str


@dataclass(frozen=True)
class PrincipalUsage:
    """Today's consumption for one principal."""
    requests: int
    tokens: int


@dataclass(frozen=True)
class UsageStats:
    """Today's consumption against the configured limits."""
    actor: PrincipalUsage
    group: PrincipalUsage
    limits: Dict[str, object]
