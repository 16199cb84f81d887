"""
Row-level visibility rules.

A complaint, and everything hanging off it (comments, logs, attachment),
is visible to its owner and to admins. Queries are narrowed here rather
than by callers filtering results themselves.
"""
from sqlalchemy.orm import Query

from campus_complaints.core.errors import AuthorizationError
from campus_complaints.core.security import Actor
from campus_complaints.models.models import Complaint, ComplaintLog


def scope_complaints(query: Query, actor: Actor) -> Query:
    if actor.is_admin:
        return query
    return query.filter(Complaint.user_id == actor.user_id)


def scope_logs(query: Query, actor: Actor) -> Query:
    if actor.is_admin:
        return query
    return query.join(Complaint, Complaint.id == ComplaintLog.complaint_id).filter(
        Complaint.user_id == actor.user_id
    )


def can_view_complaint(actor: Actor, complaint: Complaint) -> bool:
    return actor.is_admin or complaint.user_id == actor.user_id


def ensure_can_view(actor: Actor, complaint: Complaint) -> None:
    if not can_view_complaint(actor, complaint):
        raise AuthorizationError("Access denied")


def ensure_admin(actor: Actor) -> None:
    if not actor.is_admin:
        raise AuthorizationError("Admin privileges required")
