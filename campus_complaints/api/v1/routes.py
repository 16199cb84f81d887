from fastapi import APIRouter, Depends, HTTPException, status, UploadFile, File, Form, Query
from fastapi.responses import FileResponse, StreamingResponse
from sqlalchemy.orm import Session
from typing import List, Optional, Dict
from datetime import date, timedelta
import logging

from campus_complaints.db.database import get_db
from campus_complaints.core.errors import NotFoundError, ConflictError
from campus_complaints.core.security import (
    Actor, get_current_user, get_current_actor, get_admin_actor,
    create_access_token, generate_reset_token, verify_reset_token, password_fingerprint,
    ACCESS_TOKEN_EXPIRE_MINUTES,
)
from campus_complaints.crud import crud
from campus_complaints.schemas import schemas
from campus_complaints.models.models import User, Complaint, Profile, ComplaintStatus, ComplaintPriority
from campus_complaints.services.notification_service import NotificationService
from campus_complaints.services.complaint_service import ComplaintLifecycle, Attachment
from campus_complaints.services import report_service
from campus_complaints.utils.file_handler import get_blob_store, media_type_for, SIGNED_URL_TTL

logger = logging.getLogger(__name__)

# Initialize router
router = APIRouter()

# Initialize services
notification_service = NotificationService()


def get_lifecycle() -> ComplaintLifecycle:
    return ComplaintLifecycle(notification_service, get_blob_store())


def _current_user_schema(user: User) -> schemas.CurrentUser:
    return schemas.CurrentUser(
        user_id=user.id,
        email=user.email,
        full_name=user.profile.full_name if user.profile else user.email,
        student_id=user.profile.student_id if user.profile else None,
        roles=user.role_names,
        is_admin=user.is_admin,
    )


def _with_owner(complaint: Complaint, profiles: Dict[int, Profile]) -> schemas.ComplaintWithOwner:
    owner = profiles.get(complaint.user_id)
    return schemas.ComplaintWithOwner.model_validate(complaint).model_copy(update={
        "owner_name": owner.full_name if owner else "Unknown",
        "owner_email": owner.email if owner else "Unknown",
    })

# ================== AUTHENTICATION ROUTES ==================

@router.post("/auth/register", response_model=schemas.ResponseBase, status_code=status.HTTP_201_CREATED)
async def register(
    user_data: schemas.UserCreate,
    db: Session = Depends(get_db)
):
    """
    Sign up as a student
    """
    if crud.user.get_by_email(db, email=user_data.email):
        raise ConflictError("Email already registered")

    user = crud.user.create(db, obj_in=user_data)
    logger.info(f"Registered user {user.id}")
    return schemas.ResponseBase(
        success=True,
        message="Account created successfully",
        data={"user_id": user.id}
    )

@router.post("/auth/login", response_model=schemas.Token)
async def login(
    user_credentials: schemas.UserLogin,
    db: Session = Depends(get_db)
):
    """
    Authenticate user and return access token
    """
    user = crud.user.authenticate(
        db, email=user_credentials.email, password=user_credentials.password
    )

    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not crud.user.is_active(user):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )

    crud.user.touch_login(db, user)
    access_token = create_access_token(
        data={
            "sub": user.email,
            "user_id": user.id,
            "role": "admin" if user.is_admin else "student",
        },
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )

    return schemas.Token(
        access_token=access_token,
        token_type="bearer",
        expires_in=ACCESS_TOKEN_EXPIRE_MINUTES * 60,
        user=_current_user_schema(user)
    )

@router.post("/auth/logout", response_model=schemas.ResponseBase)
async def logout(current_user: User = Depends(get_current_user)):
    """
    Tokens are stateless; the client discards its copy
    """
    logger.info(f"User {current_user.id} signed out")
    return schemas.ResponseBase(success=True, message="Signed out")

@router.get("/auth/me", response_model=schemas.CurrentUser)
async def get_current_user_profile(current_user: User = Depends(get_current_user)):
    return _current_user_schema(current_user)

@router.post("/auth/password-reset/request", response_model=schemas.ResponseBase)
def request_password_reset(
    reset_request: schemas.PasswordResetRequest,
    db: Session = Depends(get_db)
):
    """
    Always acknowledges, whether or not the email belongs to an account
    """
    user = crud.user.get_by_email(db, email=reset_request.email)
    if user:
        token = generate_reset_token(user.id, user.hashed_password)
        name = user.profile.full_name if user.profile else user.email
        result = notification_service.send_password_reset_email(user.email, name, token)
        if not result.success:
            logger.warning(f"Password reset email for user {user.id} not sent: {result.error}")
    return schemas.ResponseBase(
        success=True,
        message="If an account exists for that email, a reset link has been sent"
    )

@router.post("/auth/password-reset/confirm", response_model=schemas.ResponseBase)
async def confirm_password_reset(
    reset_data: schemas.PasswordResetConfirm,
    db: Session = Depends(get_db)
):
    """
    A reset token stops working once the password it was issued for has changed
    """
    claims = verify_reset_token(reset_data.token)
    user = crud.user.get(db, id=claims[0]) if claims is not None else None
    if not user or claims[1] != password_fingerprint(user.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired reset token"
        )
    crud.user.set_password(db, user, reset_data.new_password)
    return schemas.ResponseBase(success=True, message="Password updated successfully")

# ================== USER MANAGEMENT ROUTES ==================

@router.post("/users/{user_id}/roles", response_model=schemas.CurrentUser)
async def grant_role(
    user_id: int,
    role_grant: schemas.RoleGrant,
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    """
    Grant a role to a user (Admin only)
    """
    user = crud.user.get(db, id=user_id)
    if not user:
        raise NotFoundError("User not found")
    user = crud.user.grant_role(db, user, role_grant.role)
    logger.info(f"Admin {actor.user_id} granted {role_grant.role.value} to user {user_id}")
    return _current_user_schema(user)

# ================== CATEGORY ROUTES ==================

@router.get("/categories", response_model=List[schemas.Category])
async def get_categories(
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    return crud.category.get_all(db)

@router.post("/categories", response_model=schemas.Category, status_code=status.HTTP_201_CREATED)
async def create_category(
    category_data: schemas.CategoryCreate,
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    if crud.category.get_by_name(db, name=category_data.name):
        raise ConflictError("A category with this name already exists")
    return crud.category.create(db, obj_in=category_data)

@router.put("/categories/{category_id}", response_model=schemas.Category)
async def update_category(
    category_id: int,
    category_data: schemas.CategoryUpdate,
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    category = crud.category.get(db, id=category_id)
    if not category:
        raise NotFoundError("Category not found")
    existing = crud.category.get_by_name(db, name=category_data.name)
    if existing and existing.id != category_id:
        raise ConflictError("A category with this name already exists")
    return crud.category.update(db, db_obj=category, obj_in=category_data)

@router.delete("/categories/{category_id}", response_model=schemas.ResponseBase)
async def delete_category(
    category_id: int,
    actor: Actor = Depends(get_admin_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    lifecycle.delete_category(db, actor, category_id)
    return schemas.ResponseBase(success=True, message="Category deleted successfully")

# ================== COMPLAINT ROUTES ==================

@router.post("/complaints", response_model=schemas.Complaint, status_code=status.HTTP_201_CREATED)
async def create_complaint(
    category_id: int = Form(...),
    subject: str = Form(...),
    description: str = Form(...),
    attachment: Optional[UploadFile] = File(None),
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    """
    Submit a new complaint, optionally with one attachment
    """
    upload = None
    if attachment is not None and attachment.filename:
        upload = Attachment(
            filename=attachment.filename,
            content_type=attachment.content_type,
            data=await attachment.read(),
        )

    complaint = lifecycle.submit(
        db, actor,
        category_id=category_id,
        subject=subject,
        description=description,
        attachment=upload,
    )
    return crud.complaint.get_with_details(db, complaint_id=complaint.id)

@router.get("/complaints", response_model=List[schemas.ComplaintWithOwner])
async def get_complaints(
    status: Optional[ComplaintStatus] = None,
    category_id: Optional[int] = None,
    priority: Optional[ComplaintPriority] = None,
    search: Optional[str] = None,
    actor: Actor = Depends(get_current_actor),
    db: Session = Depends(get_db)
):
    """
    Complaints visible to the caller, newest first
    """
    filters = schemas.ComplaintFilter(
        status=status,
        category_id=category_id,
        priority=priority,
        search=search or None,
    )
    complaints = crud.complaint.get_visible(db, actor, filters=filters)
    profiles = crud.profile.map_by_user_ids(db, (c.user_id for c in complaints))
    return [_with_owner(c, profiles) for c in complaints]

@router.post("/complaints/bulk", response_model=schemas.BulkUpdateResult)
async def bulk_update_complaints(
    bulk_data: schemas.ComplaintBulkUpdate,
    actor: Actor = Depends(get_admin_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    """
    Apply one status and/or priority to many complaints (Admin only)
    """
    ids = lifecycle.bulk_update(
        db, actor, bulk_data.complaint_ids,
        new_status=bulk_data.status,
        new_priority=bulk_data.priority,
    )
    return schemas.BulkUpdateResult(updated=len(ids), complaint_ids=ids)

@router.get("/complaints/{complaint_id}", response_model=schemas.ComplaintWithOwner)
async def get_complaint(
    complaint_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    complaint = lifecycle.get_visible_complaint(db, actor, complaint_id)
    profiles = crud.profile.map_by_user_ids(db, [complaint.user_id])
    return _with_owner(complaint, profiles)

@router.put("/complaints/{complaint_id}", response_model=schemas.Complaint)
def update_complaint(
    complaint_id: int,
    update_data: schemas.ComplaintAdminUpdate,
    actor: Actor = Depends(get_admin_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    """
    Set status, priority and admin response (Admin only)
    """
    outcome = lifecycle.update_status_and_priority(
        db, actor, complaint_id,
        new_status=update_data.status,
        new_priority=update_data.priority,
        admin_response=update_data.admin_response,
    )
    return crud.complaint.get_with_details(db, complaint_id=outcome.complaint.id)

@router.get("/complaints/{complaint_id}/attachment-url", response_model=schemas.AttachmentUrl)
async def get_attachment_url(
    complaint_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    url = lifecycle.attachment_url(db, actor, complaint_id)
    return schemas.AttachmentUrl(url=url, expires_in=SIGNED_URL_TTL)

@router.get("/files/{path:path}")
async def download_file(path: str, token: str = Query(...)):
    """
    Serve a locally stored attachment to the holder of a signed URL
    """
    store = get_blob_store()
    if not hasattr(store, "resolve"):
        raise NotFoundError("File not found")
    target = store.resolve(path, token)
    return FileResponse(
        path=target,
        filename=target.name,
        media_type=media_type_for(target.name),
        headers={"X-Content-Type-Options": "nosniff"}
    )

# ================== COMMENT ROUTES ==================

@router.get("/complaints/{complaint_id}/comments", response_model=List[schemas.Comment])
async def get_comments(
    complaint_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    comments = lifecycle.list_comments(db, actor, complaint_id)
    profiles = crud.profile.map_by_user_ids(db, (c.user_id for c in comments))
    return [
        schemas.Comment.model_validate(c).model_copy(update={
            "author_name": profiles[c.user_id].full_name if c.user_id in profiles else "Unknown"
        })
        for c in comments
    ]

@router.post("/complaints/{complaint_id}/comments", response_model=schemas.Comment, status_code=status.HTTP_201_CREATED)
def create_comment(
    complaint_id: int,
    comment_data: schemas.CommentCreate,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    comment = lifecycle.add_comment(db, actor, complaint_id, comment_data.content)
    return comment

# ================== ACTIVITY LOG ROUTES ==================

@router.get("/complaints/{complaint_id}/logs", response_model=List[schemas.ComplaintLog])
async def get_complaint_logs(
    complaint_id: int,
    actor: Actor = Depends(get_current_actor),
    lifecycle: ComplaintLifecycle = Depends(get_lifecycle),
    db: Session = Depends(get_db)
):
    complaint = lifecycle.get_visible_complaint(db, actor, complaint_id)
    return crud.complaint_log.get_by_complaint(db, complaint_id=complaint.id)

@router.get("/activity-log", response_model=List[schemas.ActivityLogEntry])
async def get_activity_log(
    search: Optional[str] = None,
    action: Optional[str] = Query(None, pattern="^(status|priority|bulk)$"),
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    """
    Most recent 500 admin actions with admin name and complaint subject (Admin only)
    """
    logs = crud.complaint_log.get_recent(db, actor, limit=500)
    profiles = crud.profile.map_by_user_ids(db, (log.performed_by for log in logs))
    subjects = {c.id: c.subject for c in crud.complaint.get_by_ids(db, list({log.complaint_id for log in logs}))}

    entries = [
        schemas.ActivityLogEntry(
            **schemas.ComplaintLog.model_validate(log).model_dump(),
            admin_name=profiles[log.performed_by].full_name if log.performed_by in profiles else "Unknown",
            complaint_subject=subjects.get(log.complaint_id, "Unknown"),
        )
        for log in logs
    ]

    if search:
        query = search.lower()
        entries = [
            e for e in entries
            if query in e.action.lower()
            or query in e.admin_name.lower()
            or query in e.complaint_subject.lower()
            or (e.notes and query in e.notes.lower())
        ]
    if action:
        entries = [e for e in entries if action in e.action.lower()]
    return entries

# ================== OVERVIEW ROUTES ==================

@router.get("/overview/student", response_model=schemas.StudentOverview)
async def get_student_overview(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Counts and recent complaints for the caller's own complaints
    """
    own = Actor(user_id=current_user.id)
    counts = crud.complaint.status_counts(db, own)
    recent = crud.complaint.get_recent(db, own, limit=5)
    return schemas.StudentOverview(
        stats=report_service.status_counts(counts),
        recent_complaints=[schemas.Complaint.model_validate(c) for c in recent],
    )

@router.get("/overview/admin", response_model=schemas.AdminOverview)
async def get_admin_overview(
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    counts = crud.complaint.status_counts(db, actor)
    stats = report_service.status_counts(counts)
    recent = crud.complaint.get_recent(db, actor, limit=5)
    profiles = crud.profile.map_by_user_ids(db, (c.user_id for c in recent))
    return schemas.AdminOverview(
        stats=stats,
        resolution_rate=report_service.resolution_rate(stats.resolved, stats.total),
        recent_complaints=[_with_owner(c, profiles) for c in recent],
    )

# ================== REPORT ROUTES ==================

@router.get("/reports/summary", response_model=schemas.ReportSummary)
async def get_report_summary(
    days: int = Query(7, ge=1, le=90),
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    """
    Aggregates for the reports page (Admin only)
    """
    complaints = crud.complaint.get_for_reports(db, actor)
    return report_service.summarize(complaints, total_students=crud.profile.count(db), days=days)

@router.get("/reports/export")
async def export_complaints(
    status: Optional[ComplaintStatus] = None,
    category_id: Optional[int] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    actor: Actor = Depends(get_admin_actor),
    db: Session = Depends(get_db)
):
    """
    CSV export of the complaints matching the selected filters (Admin only)
    """
    filters = schemas.ExportFilter(status=status, category_id=category_id, date_from=date_from, date_to=date_to)
    complaints = crud.complaint.get_for_export(db, actor, filters)
    if not complaints:
        raise NotFoundError("No complaints found with the selected filters")

    profiles = crud.profile.map_by_user_ids(db, (c.user_id for c in complaints))
    content = report_service.export_csv(complaints, profiles)
    filename = f"complaints_report_{date.today().isoformat()}.csv"
    logger.info(f"Admin {actor.user_id} exported {len(complaints)} complaints")

    return StreamingResponse(
        iter([content]),
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}"}
    )
