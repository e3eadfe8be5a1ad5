"""ORM models for the governance pipeline."""

from shepherd_kernel.models.event import EventModel
from shepherd_kernel.models.job import JobModel
from shepherd_kernel.models.ticket import ApprovalTicketModel, TicketDecisionModel

__all__ = [
    "ApprovalTicketModel",
    "EventModel",
    "JobModel",
    "TicketDecisionModel",
]
