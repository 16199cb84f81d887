"""
Complaint lifecycle: submission, admin triage, bulk triage, comments and
category removal, together with their audit-log and email side effects.

An admin update is two commits, the complaint row then its log row, with
no transaction around the pair. A failure between them leaves the update
applied without a log entry.
"""
from dataclasses import dataclass, field
from typing import List, Optional
import logging

from decouple import config
from sqlalchemy.orm import Session

from campus_complaints.core.errors import ValidationError, NotFoundError, ConflictError, RemoteError
from campus_complaints.core.policy import ensure_admin, ensure_can_view
from campus_complaints.core.security import Actor
from campus_complaints.crud import crud
from campus_complaints.models.models import (
    Complaint, ComplaintComment, ComplaintLog, ComplaintStatus, ComplaintPriority, NotificationKind
)
from campus_complaints.schemas.schemas import (
    NotificationResult, SUBJECT_MIN_LENGTH, SUBJECT_MAX_LENGTH,
    DESCRIPTION_MIN_LENGTH, DESCRIPTION_MAX_LENGTH,
)
from campus_complaints.utils.file_handler import (
    validate_attachment, attachment_extension, build_attachment_path,
)

logger = logging.getLogger(__name__)

NOTIFY_ON_ADMIN_COMMENT = config("NOTIFY_ON_ADMIN_COMMENT", cast=bool, default=True)


@dataclass
class Attachment:
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class UpdateOutcome:
    complaint: Complaint
    log: ComplaintLog
    notifications: List[NotificationResult] = field(default_factory=list)


def validate_submission(subject: str, description: str) -> tuple:
    subject = (subject or "").strip()
    description = (description or "").strip()
    if not subject or not description:
        raise ValidationError("Please fill in all required fields")
    if len(subject) < SUBJECT_MIN_LENGTH:
        raise ValidationError(f"Subject must be at least {SUBJECT_MIN_LENGTH} characters")
    if len(subject) > SUBJECT_MAX_LENGTH:
        raise ValidationError(f"Subject must be at most {SUBJECT_MAX_LENGTH} characters")
    if len(description) < DESCRIPTION_MIN_LENGTH:
        raise ValidationError(f"Description must be at least {DESCRIPTION_MIN_LENGTH} characters")
    if len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"Description must be at most {DESCRIPTION_MAX_LENGTH} characters")
    return subject, description


def describe_change(old_status: ComplaintStatus, new_status: ComplaintStatus,
                    old_priority: ComplaintPriority, new_priority: ComplaintPriority) -> str:
    parts = []
    if old_status != new_status:
        parts.append(f"Status changed from {old_status.value} to {new_status.value}")
    if old_priority != new_priority:
        parts.append(f"Priority changed from {old_priority.value} to {new_priority.value}")
    if not parts:
        return "Complaint updated"
    return "; ".join(parts)


def describe_bulk_change(status: Optional[ComplaintStatus], priority: Optional[ComplaintPriority]) -> str:
    parts = []
    if status is not None:
        parts.append(f"status to {status.value}")
    if priority is not None:
        parts.append(f"priority to {priority.value}")
    return "Bulk update: " + ", ".join(parts)


class ComplaintLifecycle:
    def __init__(self, notifier, blob_store, notify_on_admin_comment: bool = NOTIFY_ON_ADMIN_COMMENT):
        self.notifier = notifier
        self.blob_store = blob_store
        self.notify_on_admin_comment = notify_on_admin_comment

    def get_visible_complaint(self, db: Session, actor: Actor, complaint_id: int) -> Complaint:
        complaint = crud.complaint.get_with_details(db, complaint_id=complaint_id)
        if not complaint:
            raise NotFoundError("Complaint not found")
        ensure_can_view(actor, complaint)
        return complaint

    def submit(self, db: Session, actor: Actor, category_id: int, subject: str, description: str,
               attachment: Optional[Attachment] = None) -> Complaint:
        """
        Create a complaint owned by the caller.

        Every check runs before the first write. The attachment is uploaded
        after the row exists so its path can embed the complaint id; an
        upload failure keeps the complaint and drops the attachment.
        """
        subject, description = validate_submission(subject, description)
        if attachment is not None:
            validate_attachment(attachment.filename, attachment.content_type, attachment.size)
        if not crud.category.get(db, id=category_id):
            raise ValidationError("Please select a valid category")

        complaint = crud.complaint.create(
            db, owner_id=actor.user_id, category_id=category_id,
            subject=subject, description=description,
        )
        logger.info(f"Complaint {complaint.id} submitted by user {actor.user_id}")

        if attachment is not None:
            path = build_attachment_path(
                actor.user_id, complaint.id,
                attachment_extension(attachment.content_type),
            )
            try:
                self.blob_store.upload(path, attachment.data, attachment.content_type)
            except RemoteError as e:
                logger.error(f"Attachment upload failed for complaint {complaint.id}: {e.message}")
            else:
                complaint = crud.complaint.set_attachment(db, complaint, path)

        return complaint

    def update_status_and_priority(self, db: Session, actor: Actor, complaint_id: int,
                                   new_status: ComplaintStatus, new_priority: ComplaintPriority,
                                   admin_response: Optional[str] = None) -> UpdateOutcome:
        """
        Any status may move to any other status. resolved_at is stamped on
        entry into resolved and kept through later reopenings.
        """
        ensure_admin(actor)
        complaint = crud.complaint.get(db, id=complaint_id)
        if not complaint:
            raise NotFoundError("Complaint not found")

        old_status = complaint.status
        old_priority = complaint.priority
        response = (admin_response or "").strip() or None

        complaint = crud.complaint.update_admin_fields(
            db, complaint, status=new_status, priority=new_priority, admin_response=response,
        )
        log = crud.complaint_log.log_action(
            db,
            complaint_id=complaint.id,
            performed_by=actor.user_id,
            action=describe_change(old_status, new_status, old_priority, new_priority),
            old_status=old_status,
            new_status=new_status,
            notes=response,
        )
        logger.info(f"Complaint {complaint.id} updated by admin {actor.user_id}: {log.action}")

        notifications = []
        if old_status != new_status:
            notifications.append(self._notify(
                db, NotificationKind.STATUS_CHANGE, complaint.id, old_status.value, new_status.value,
            ))
        if old_priority != new_priority:
            notifications.append(self._notify(
                db, NotificationKind.PRIORITY_CHANGE, complaint.id, old_priority.value, new_priority.value,
            ))
        return UpdateOutcome(complaint=complaint, log=log, notifications=notifications)

    def bulk_update(self, db: Session, actor: Actor, complaint_ids: List[int],
                    new_status: Optional[ComplaintStatus] = None,
                    new_priority: Optional[ComplaintPriority] = None) -> List[int]:
        """
        Apply the same change to many complaints in one write. One log row per
        complaint; no emails, so a large batch does not flood inboxes.
        """
        ensure_admin(actor)
        if new_status is None and new_priority is None:
            raise ValidationError("Select a status or priority to apply")

        ids = list(dict.fromkeys(complaint_ids))
        if not ids:
            raise ValidationError("Select at least one complaint")

        before = {c.id: c.status for c in crud.complaint.get_by_ids(db, ids)}
        missing = [i for i in ids if i not in before]
        if missing:
            raise NotFoundError(f"Complaints not found: {', '.join(str(i) for i in missing)}")

        crud.complaint.bulk_update(db, ids, status=new_status, priority=new_priority)

        action = describe_bulk_change(new_status, new_priority)
        crud.complaint_log.log_many(db, [
            ComplaintLog(
                complaint_id=complaint_id,
                performed_by=actor.user_id,
                action=action,
                old_status=before[complaint_id],
                new_status=new_status if new_status is not None else before[complaint_id],
            )
            for complaint_id in ids
        ])
        logger.info(f"Bulk update of {len(ids)} complaints by admin {actor.user_id}: {action}")
        return ids

    def add_comment(self, db: Session, actor: Actor, complaint_id: int, content: str) -> ComplaintComment:
        content = (content or "").strip()
        if not content:
            raise ValidationError("Comment cannot be empty")

        complaint = self.get_visible_complaint(db, actor, complaint_id)
        is_admin = actor.is_admin
        comment = crud.comment.create(
            db, complaint_id=complaint.id, user_id=actor.user_id, content=content, is_admin=is_admin,
        )

        if is_admin and self.notify_on_admin_comment:
            self._notify(db, NotificationKind.ADMIN_COMMENT, complaint.id, comment=content)
        return comment

    def list_comments(self, db: Session, actor: Actor, complaint_id: int) -> List[ComplaintComment]:
        complaint = self.get_visible_complaint(db, actor, complaint_id)
        return crud.comment.get_by_complaint(db, complaint_id=complaint.id)

    def attachment_url(self, db: Session, actor: Actor, complaint_id: int) -> str:
        complaint = self.get_visible_complaint(db, actor, complaint_id)
        if not complaint.attachment_path:
            raise NotFoundError("Complaint has no attachment")
        return self.blob_store.create_signed_url(complaint.attachment_path)

    def delete_category(self, db: Session, actor: Actor, category_id: int) -> None:
        ensure_admin(actor)
        category = crud.category.get(db, id=category_id)
        if not category:
            raise NotFoundError("Category not found")
        in_use = crud.category.count_complaints(db, category_id=category_id)
        if in_use > 0:
            raise ConflictError(f"Cannot delete: {in_use} complaint(s) are using this category")
        crud.category.remove(db, id=category_id)
        logger.info(f"Category {category_id} deleted by admin {actor.user_id}")

    def _notify(self, db: Session, kind: NotificationKind, complaint_id: int,
                old_value: Optional[str] = None, new_value: Optional[str] = None,
                comment: Optional[str] = None) -> NotificationResult:
        result = self.notifier.notify(
            db, kind, complaint_id, old_value=old_value, new_value=new_value, comment=comment,
        )
        if not result.success:
            logger.warning(f"Failed to send {kind.value} notification for complaint {complaint_id}: {result.error}")
        return result
