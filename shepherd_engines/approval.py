"""
shepherd_engines.approval -- Pure auto-approval policy evaluation.

Responsibility:
    Decide whether a request may skip human approval.

Architecture position:
    Engines -- pure calculation layer, zero I/O.
    May only import shepherd_kernel/domain/ types and exceptions.

Invariants enforced:
    - Deterministic rule ordering: rules sorted by (priority, name); lower
      priority number wins; first match wins.
    - Fail closed: no matching rule means REQUIRE_APPROVAL.
    - Purity: no clock access, no I/O, no database.  Called before any
      transaction is opened.

Failure modes:
    - PolicyInputInvalidError on malformed input.  Nothing else is raised.
"""

from __future__ import annotations

from shepherd_kernel.domain.approval import (
    ApprovalDecision,
    ApprovalEvaluation,
    ApprovalPolicy,
    ApprovalRule,
    Requester,
)
from shepherd_kernel.domain.spec import ResourceSpec
from shepherd_kernel.domain.types import Operation
from shepherd_kernel.exceptions import PolicyInputInvalidError


def evaluate_auto_approval(
    requester: Requester,
    action: Operation | str,
    target: ResourceSpec,
    policy: ApprovalPolicy | None,
) -> ApprovalEvaluation:
    """Return AUTO_APPROVE with the matched rule name, or REQUIRE_APPROVAL.

    Args:
        requester: Requesting identity and roles.
        action: The operation being requested.
        target: Requested resource spec (namespace and sizing are matched).
        policy: Rules to evaluate.  None behaves like an empty policy.

    Raises:
        PolicyInputInvalidError: empty requester id, unknown action, missing
            namespace, or non-integer / negative resources.
    """
    operation = _validate_inputs(requester, action, target)

    if policy is None or not policy.rules:
        return ApprovalEvaluation(
            decision=ApprovalDecision.REQUIRE_APPROVAL,
            reason="No auto-approval policy configured",
        )

    for rule in policy.ordered_rules():
        if rule_matches(rule, requester, operation, target):
            return ApprovalEvaluation(
                decision=ApprovalDecision.AUTO_APPROVE,
                matched_rule=rule.name,
                reason=f"Auto-approved by rule '{rule.name}'",
            )

    return ApprovalEvaluation(
        decision=ApprovalDecision.REQUIRE_APPROVAL,
        reason="No auto-approval rule matched",
    )


def rule_matches(
    rule: ApprovalRule,
    requester: Requester,
    operation: Operation,
    target: ResourceSpec,
) -> bool:
    if rule.actions and operation not in rule.actions:
        return False
    if rule.roles and not (rule.roles & requester.roles):
        return False
    if rule.namespaces and target.namespace not in rule.namespaces:
        return False
    if rule.max_cpu is not None and target.cpu is not None:
        if target.cpu > rule.max_cpu:
            return False
    if rule.max_memory_mb is not None and target.memory_mb is not None:
        if target.memory_mb > rule.max_memory_mb:
            return False
    return True


def _validate_inputs(
    requester: Requester,
    action: Operation | str,
    target: ResourceSpec,
) -> Operation:
    if not isinstance(requester, Requester):
        raise PolicyInputInvalidError("requester", "must be a Requester")
    if not isinstance(requester.requester_id, str) or not requester.requester_id.strip():
        raise PolicyInputInvalidError("requester_id", "must be a non-empty string")

    try:
        operation = Operation(action)
    except ValueError:
        raise PolicyInputInvalidError("action", f"unknown action {action!r}") from None

    if target is None:
        raise PolicyInputInvalidError("target", "is required")
    if not isinstance(target, ResourceSpec):
        raise PolicyInputInvalidError("target", "must be a ResourceSpec")
    if not isinstance(target.namespace, str) or not target.namespace:
        raise PolicyInputInvalidError("namespace", "is required")

    for name in ("cpu", "memory_mb", "disk_gb"):
        value = getattr(target, name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int):
            raise PolicyInputInvalidError(name, "must be an integer")
        if value < 0:
            raise PolicyInputInvalidError(name, "must not be negative")

    return operation
