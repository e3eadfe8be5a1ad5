"""
shepherd_kernel.domain.approval -- Auto-approval policy value objects.

Rules and policies are built from configuration (shepherd_config) and
evaluated by shepherd_engines.approval.  Everything here is frozen.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from shepherd_kernel.domain.types import Operation


class ApprovalDecision(str, Enum):
    AUTO_APPROVE = "auto_approve"
    REQUIRE_APPROVAL = "require_approval"


@dataclass(frozen=True)
class Requester:
    """Who is asking.  Roles come from the (external) RBAC layer."""

    requester_id: str
    roles: frozenset[str] = frozenset()


@dataclass(frozen=True)
class ApprovalRule:
    """
    One auto-approval rule.  Empty match sets mean "any".

    Lower ``priority`` is evaluated first; ties break on ``name``.
    """

    name: str
    priority: int = 100
    actions: frozenset[Operation] = frozenset()
    roles: frozenset[str] = frozenset()
    namespaces: frozenset[str] = frozenset()
    max_cpu: int | None = None
    max_memory_mb: int | None = None
    description: str = ""


@dataclass(frozen=True)
class ApprovalPolicy:
    rules: tuple[ApprovalRule, ...] = field(default_factory=tuple)

    def ordered_rules(self) -> tuple[ApprovalRule, ...]:
        return tuple(sorted(self.rules, key=lambda r: (r.priority, r.name)))


@dataclass(frozen=True)
class ApprovalEvaluation:
    decision: ApprovalDecision
    matched_rule: str | None = None
    reason: str = ""

    @property
    def requires_approval(self) -> bool:
        return self.decision == ApprovalDecision.REQUIRE_APPROVAL
