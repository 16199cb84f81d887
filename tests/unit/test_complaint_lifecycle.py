import pytest

from campus_complaints.core.errors import ValidationError, AuthorizationError, NotFoundError, ConflictError
from campus_complaints.crud import crud
from campus_complaints.models.models import (
    Complaint, ComplaintLog, ComplaintStatus, ComplaintPriority, NotificationKind
)
from campus_complaints.services.complaint_service import (
    ComplaintLifecycle, Attachment, describe_change, describe_bulk_change
)
from conftest import FakeBlobStore, FakeNotifier

DESCRIPTION = "The projector in room B12 does not turn on."


class TestSubmit:
    def test_submit_creates_submitted_medium_complaint(self, db, lifecycle, student_actor, category):
        complaint = lifecycle.submit(
            db, student_actor, category_id=category.id,
            subject="Broken projector", description="Projector in B12 is dead.",
        )
        assert complaint.id is not None
        assert complaint.user_id == student_actor.user_id
        assert complaint.status == ComplaintStatus.SUBMITTED
        assert complaint.priority == ComplaintPriority.MEDIUM
        assert complaint.resolved_at is None
        assert complaint.attachment_path is None

    @pytest.mark.parametrize("subject,description,message", [
        ("Hey", DESCRIPTION, "Subject must be at least 5 characters"),
        ("Broken projector", "Too short", "Description must be at least 20 characters"),
        ("x" * 101, DESCRIPTION, "Subject must be at most 100 characters"),
        ("Broken projector", "x" * 2001, "Description must be at most 2000 characters"),
        ("   ", DESCRIPTION, "Please fill in all required fields"),
    ])
    def test_invalid_input_writes_nothing(self, db, lifecycle, student_actor, category,
                                          subject, description, message):
        with pytest.raises(ValidationError) as exc_info:
            lifecycle.submit(db, student_actor, category_id=category.id,
                             subject=subject, description=description)
        assert exc_info.value.message == message
        assert db.query(Complaint).count() == 0

    @pytest.mark.parametrize("subject,description", [
        ("x" * 5, DESCRIPTION),
        ("x" * 100, DESCRIPTION),
        ("Broken projector", "x" * 20),
        ("Broken projector", "x" * 2000),
    ])
    def test_length_limits_are_inclusive(self, db, lifecycle, student_actor, category, subject, description):
        complaint = lifecycle.submit(db, student_actor, category_id=category.id,
                                     subject=subject, description=description)
        assert complaint.subject == subject
        assert complaint.description == description

    def test_unknown_category_is_rejected(self, db, lifecycle, student_actor):
        with pytest.raises(ValidationError):
            lifecycle.submit(db, student_actor, category_id=9999,
                             subject="Broken projector", description=DESCRIPTION)
        assert db.query(Complaint).count() == 0

    def test_disallowed_attachment_writes_nothing(self, db, lifecycle, blob_store, student_actor, category):
        attachment = Attachment(filename="run.exe", content_type="application/x-msdownload", data=b"MZ")
        with pytest.raises(ValidationError):
            lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                             description=DESCRIPTION, attachment=attachment)
        assert db.query(Complaint).count() == 0
        assert blob_store.blobs == {}

    def test_oversized_attachment_is_rejected(self, db, lifecycle, student_actor, category):
        attachment = Attachment(filename="scan.pdf", content_type="application/pdf",
                                data=b"0" * (5 * 1024 * 1024 + 1))
        with pytest.raises(ValidationError):
            lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                             description=DESCRIPTION, attachment=attachment)

    def test_attachment_at_size_limit_is_accepted(self, db, lifecycle, blob_store, student_actor, category):
        attachment = Attachment(filename="scan.pdf", content_type="application/pdf",
                                data=b"0" * (5 * 1024 * 1024))
        complaint = lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                                     description=DESCRIPTION, attachment=attachment)
        assert complaint.attachment_path.endswith(".pdf")
        assert len(blob_store.blobs[complaint.attachment_path]) == 5 * 1024 * 1024

    @pytest.mark.parametrize("filename,content_type", [
        ("x.html", "application/pdf"),
        ("avatar.svg", "image/png"),
        ("report.pdf", "image/jpeg"),
    ])
    def test_extension_must_match_declared_type(self, db, lifecycle, blob_store, student_actor, category,
                                                filename, content_type):
        attachment = Attachment(filename=filename, content_type=content_type, data=b"<script>alert(1)</script>")
        with pytest.raises(ValidationError) as exc_info:
            lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                             description=DESCRIPTION, attachment=attachment)
        assert "does not match file type" in exc_info.value.message
        assert db.query(Complaint).count() == 0
        assert blob_store.blobs == {}

    def test_stored_extension_follows_declared_type(self, db, lifecycle, student_actor, category):
        attachment = Attachment(filename="scan.JPEG", content_type="image/jpeg", data=b"jpeg")
        complaint = lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                                     description=DESCRIPTION, attachment=attachment)
        assert complaint.attachment_path.endswith(".jpg")

    def test_attachment_path_is_namespaced_by_owner_and_complaint(self, db, lifecycle, blob_store,
                                                                  student_actor, category):
        attachment = Attachment(filename="photo.PNG", content_type="image/png", data=b"\x89PNG")
        complaint = lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                                     description=DESCRIPTION, attachment=attachment)
        assert complaint.attachment_path.startswith(f"{student_actor.user_id}/{complaint.id}/")
        assert complaint.attachment_path.endswith(".png")
        assert blob_store.blobs[complaint.attachment_path] == b"\x89PNG"

    def test_upload_failure_keeps_complaint(self, db, notifier, student_actor, category):
        lifecycle = ComplaintLifecycle(notifier, FakeBlobStore(fail=True))
        attachment = Attachment(filename="photo.jpg", content_type="image/jpeg", data=b"jpeg")
        complaint = lifecycle.submit(db, student_actor, category_id=category.id, subject="Broken projector",
                                     description=DESCRIPTION, attachment=attachment)
        assert db.query(Complaint).count() == 1
        assert complaint.attachment_path is None


class TestAdminUpdate:
    @pytest.fixture
    def complaint(self, db, lifecycle, student_actor, category):
        return lifecycle.submit(db, student_actor, category_id=category.id,
                                subject="Broken projector", description=DESCRIPTION)

    def test_resolving_logs_once_and_notifies_status(self, db, lifecycle, notifier, admin_actor, complaint):
        outcome = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id,
            new_status=ComplaintStatus.RESOLVED,
            new_priority=ComplaintPriority.MEDIUM,
            admin_response="Replaced the bulb",
        )
        logs = crud.complaint_log.get_by_complaint(db, complaint_id=complaint.id)
        assert len(logs) == 1
        assert logs[0].old_status == ComplaintStatus.SUBMITTED
        assert logs[0].new_status == ComplaintStatus.RESOLVED
        assert logs[0].notes == "Replaced the bulb"
        assert logs[0].performed_by == admin_actor.user_id
        assert outcome.complaint.resolved_at is not None
        assert outcome.complaint.admin_response == "Replaced the bulb"
        assert [n["kind"] for n in notifier.sent] == [NotificationKind.STATUS_CHANGE]
        assert notifier.sent[0]["old_value"] == "submitted"
        assert notifier.sent[0]["new_value"] == "resolved"

    def test_status_and_priority_change_send_two_notifications(self, db, lifecycle, notifier,
                                                              admin_actor, complaint):
        lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id,
            new_status=ComplaintStatus.IN_REVIEW,
            new_priority=ComplaintPriority.HIGH,
        )
        assert [n["kind"] for n in notifier.sent] == [
            NotificationKind.STATUS_CHANGE, NotificationKind.PRIORITY_CHANGE
        ]

    def test_no_change_still_logs_without_notifying(self, db, lifecycle, notifier, admin_actor, complaint):
        outcome = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id,
            new_status=ComplaintStatus.SUBMITTED,
            new_priority=ComplaintPriority.MEDIUM,
            admin_response="   ",
        )
        assert outcome.log.action == "Complaint updated"
        assert outcome.log.notes is None
        assert outcome.complaint.admin_response is None
        assert notifier.sent == []

    def test_resolved_at_survives_reopening(self, db, lifecycle, admin_actor, complaint):
        resolved = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id, ComplaintStatus.RESOLVED, ComplaintPriority.MEDIUM,
        ).complaint
        stamp = resolved.resolved_at

        reopened = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id, ComplaintStatus.IN_REVIEW, ComplaintPriority.MEDIUM,
        ).complaint
        assert reopened.status == ComplaintStatus.IN_REVIEW
        assert reopened.resolved_at == stamp

        again = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id, ComplaintStatus.RESOLVED, ComplaintPriority.MEDIUM,
        ).complaint
        assert again.resolved_at is not None

    def test_failed_notification_does_not_undo_update(self, db, blob_store, admin_actor, complaint):
        lifecycle = ComplaintLifecycle(FakeNotifier(success=False), blob_store)
        outcome = lifecycle.update_status_and_priority(
            db, admin_actor, complaint.id, ComplaintStatus.IN_REVIEW, ComplaintPriority.MEDIUM,
        )
        assert outcome.complaint.status == ComplaintStatus.IN_REVIEW
        assert outcome.notifications[0].success is False

    def test_student_cannot_update(self, db, lifecycle, student_actor, complaint):
        with pytest.raises(AuthorizationError):
            lifecycle.update_status_and_priority(
                db, student_actor, complaint.id, ComplaintStatus.RESOLVED, ComplaintPriority.LOW,
            )
        assert db.query(ComplaintLog).count() == 0

    def test_missing_complaint(self, db, lifecycle, admin_actor):
        with pytest.raises(NotFoundError):
            lifecycle.update_status_and_priority(
                db, admin_actor, 4242, ComplaintStatus.RESOLVED, ComplaintPriority.LOW,
            )


class TestBulkUpdate:
    @pytest.fixture
    def complaints(self, db, lifecycle, student_actor, category):
        return [
            lifecycle.submit(db, student_actor, category_id=category.id,
                             subject=f"Broken projector {i}", description=DESCRIPTION)
            for i in range(3)
        ]

    def test_one_log_per_complaint_and_no_emails(self, db, lifecycle, notifier, admin_actor, complaints):
        ids = [c.id for c in complaints]
        updated = lifecycle.bulk_update(db, admin_actor, ids, new_status=ComplaintStatus.IN_REVIEW)

        assert updated == ids
        logs = db.query(ComplaintLog).all()
        assert len(logs) == 3
        assert {log.complaint_id for log in logs} == set(ids)
        assert all(log.action == "Bulk update: status to in_review" for log in logs)
        assert notifier.sent == []
        for c in crud.complaint.get_by_ids(db, ids):
            assert c.status == ComplaintStatus.IN_REVIEW
            assert c.priority == ComplaintPriority.MEDIUM

    def test_bulk_resolve_stamps_only_unresolved(self, db, lifecycle, admin_actor, complaints):
        first = lifecycle.update_status_and_priority(
            db, admin_actor, complaints[0].id, ComplaintStatus.RESOLVED, ComplaintPriority.MEDIUM,
        ).complaint
        stamp = first.resolved_at

        lifecycle.bulk_update(db, admin_actor, [c.id for c in complaints],
                              new_status=ComplaintStatus.RESOLVED)

        by_id = {c.id: c for c in crud.complaint.get_by_ids(db, [c.id for c in complaints])}
        assert by_id[complaints[0].id].resolved_at == stamp
        assert by_id[complaints[1].id].resolved_at is not None
        assert by_id[complaints[2].id].resolved_at is not None

    def test_priority_only_keeps_status_in_log(self, db, lifecycle, admin_actor, complaints):
        lifecycle.bulk_update(db, admin_actor, [complaints[0].id], new_priority=ComplaintPriority.CRITICAL)
        log = db.query(ComplaintLog).one()
        assert log.old_status == log.new_status == ComplaintStatus.SUBMITTED
        assert log.action == "Bulk update: priority to critical"

    def test_duplicate_ids_collapse(self, db, lifecycle, admin_actor, complaints):
        ids = lifecycle.bulk_update(db, admin_actor, [complaints[0].id, complaints[0].id],
                                    new_priority=ComplaintPriority.LOW)
        assert ids == [complaints[0].id]
        assert db.query(ComplaintLog).count() == 1

    def test_requires_a_change(self, db, lifecycle, admin_actor, complaints):
        with pytest.raises(ValidationError):
            lifecycle.bulk_update(db, admin_actor, [complaints[0].id])

    def test_unknown_id_changes_nothing(self, db, lifecycle, admin_actor, complaints):
        with pytest.raises(NotFoundError):
            lifecycle.bulk_update(db, admin_actor, [complaints[0].id, 9999],
                                  new_status=ComplaintStatus.RESOLVED)
        assert crud.complaint.get(db, id=complaints[0].id).status == ComplaintStatus.SUBMITTED
        assert db.query(ComplaintLog).count() == 0


class TestComments:
    @pytest.fixture
    def complaint(self, db, lifecycle, student_actor, category):
        return lifecycle.submit(db, student_actor, category_id=category.id,
                                subject="Broken projector", description=DESCRIPTION)

    def test_owner_comment_is_not_admin_and_silent(self, db, lifecycle, notifier, student_actor, complaint):
        comment = lifecycle.add_comment(db, student_actor, complaint.id, "  Any update?  ")
        assert comment.content == "Any update?"
        assert comment.is_admin is False
        assert notifier.sent == []

    def test_admin_comment_notifies_owner(self, db, lifecycle, notifier, admin_actor, complaint):
        comment = lifecycle.add_comment(db, admin_actor, complaint.id, "Technician booked")
        assert comment.is_admin is True
        assert notifier.sent == [{
            "kind": NotificationKind.ADMIN_COMMENT,
            "complaint_id": complaint.id,
            "old_value": None,
            "new_value": None,
            "comment": "Technician booked",
        }]

    def test_admin_comment_notification_can_be_disabled(self, db, notifier, blob_store, admin_actor, complaint):
        lifecycle = ComplaintLifecycle(notifier, blob_store, notify_on_admin_comment=False)
        lifecycle.add_comment(db, admin_actor, complaint.id, "Technician booked")
        assert notifier.sent == []

    def test_other_student_cannot_comment(self, db, lifecycle, other_actor, complaint):
        with pytest.raises(AuthorizationError):
            lifecycle.add_comment(db, other_actor, complaint.id, "Me too")
        assert crud.comment.get_by_complaint(db, complaint_id=complaint.id) == []

    def test_empty_comment_is_rejected(self, db, lifecycle, student_actor, complaint):
        with pytest.raises(ValidationError):
            lifecycle.add_comment(db, student_actor, complaint.id, "   ")

    def test_comments_listed_in_order(self, db, lifecycle, student_actor, admin_actor, complaint):
        lifecycle.add_comment(db, student_actor, complaint.id, "first")
        lifecycle.add_comment(db, admin_actor, complaint.id, "second")
        contents = [c.content for c in lifecycle.list_comments(db, student_actor, complaint.id)]
        assert contents == ["first", "second"]


class TestAttachmentUrl:
    def test_signed_url_for_owner(self, db, lifecycle, student_actor, category):
        complaint = lifecycle.submit(
            db, student_actor, category_id=category.id, subject="Broken projector", description=DESCRIPTION,
            attachment=Attachment(filename="a.pdf", content_type="application/pdf", data=b"%PDF"),
        )
        url = lifecycle.attachment_url(db, student_actor, complaint.id)
        assert complaint.attachment_path in url
        assert url.endswith("expires_in=3600")

    def test_no_attachment(self, db, lifecycle, student_actor, category):
        complaint = lifecycle.submit(db, student_actor, category_id=category.id,
                                     subject="Broken projector", description=DESCRIPTION)
        with pytest.raises(NotFoundError):
            lifecycle.attachment_url(db, student_actor, complaint.id)

    def test_other_student_denied(self, db, lifecycle, student_actor, other_actor, category):
        complaint = lifecycle.submit(
            db, student_actor, category_id=category.id, subject="Broken projector", description=DESCRIPTION,
            attachment=Attachment(filename="a.pdf", content_type="application/pdf", data=b"%PDF"),
        )
        with pytest.raises(AuthorizationError):
            lifecycle.attachment_url(db, other_actor, complaint.id)


class TestDeleteCategory:
    def test_category_in_use_cannot_be_deleted(self, db, lifecycle, student_actor, admin_actor, category):
        for i in range(2):
            lifecycle.submit(db, student_actor, category_id=category.id,
                             subject=f"Broken projector {i}", description=DESCRIPTION)
        with pytest.raises(ConflictError) as exc_info:
            lifecycle.delete_category(db, admin_actor, category.id)
        assert exc_info.value.message == "Cannot delete: 2 complaint(s) are using this category"
        assert crud.category.get(db, id=category.id) is not None

    def test_unused_category_is_deleted(self, db, lifecycle, admin_actor, category):
        lifecycle.delete_category(db, admin_actor, category.id)
        assert crud.category.get(db, id=category.id) is None

    def test_student_cannot_delete(self, db, lifecycle, student_actor, category):
        with pytest.raises(AuthorizationError):
            lifecycle.delete_category(db, student_actor, category.id)


def test_describe_change():
    assert describe_change(
        ComplaintStatus.SUBMITTED, ComplaintStatus.RESOLVED,
        ComplaintPriority.MEDIUM, ComplaintPriority.HIGH,
    ) == "Status changed from submitted to resolved; Priority changed from medium to high"


def test_describe_bulk_change():
    assert describe_bulk_change(ComplaintStatus.RESOLVED, ComplaintPriority.LOW) == \
        "Bulk update: status to resolved, priority to low"
