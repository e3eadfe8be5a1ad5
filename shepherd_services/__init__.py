"""Outer service layer: the submission boundary facade."""

from shepherd_services.governance import GovernanceService, RequestStatus

__all__ = ["GovernanceService", "RequestStatus"]
