"""Pure calculation engines: auto-approval policy and retry backoff."""

from shepherd_engines.approval import evaluate_auto_approval, rule_matches
from shepherd_engines.backoff import BackoffPolicy, backoff_delay, next_attempt_at

__all__ = [
    "BackoffPolicy",
    "backoff_delay",
    "evaluate_auto_approval",
    "next_attempt_at",
    "rule_matches",
]
