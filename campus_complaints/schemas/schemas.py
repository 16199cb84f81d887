from pydantic import BaseModel, EmailStr, field_validator, Field, ConfigDict
from typing import Optional, List, Dict, Any
from datetime import datetime, date
from campus_complaints.models.models import ComplaintStatus, ComplaintPriority, AppRole

SUBJECT_MIN_LENGTH = 5
SUBJECT_MAX_LENGTH = 100
DESCRIPTION_MIN_LENGTH = 20
DESCRIPTION_MAX_LENGTH = 2000

# Base Schemas
class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

# Identity Schemas
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    full_name: str = Field(..., min_length=2, max_length=100)
    student_id: Optional[str] = Field(None, max_length=50)

    @field_validator('full_name')
    @classmethod
    def validate_full_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError('Name must be at least 2 characters')
        return v

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class PasswordResetRequest(BaseModel):
    email: EmailStr

class PasswordResetConfirm(BaseModel):
    token: str
    new_password: str = Field(..., min_length=6, max_length=72)

class RoleGrant(BaseModel):
    role: AppRole

class CurrentUser(BaseModel):
    user_id: int
    email: str
    full_name: str
    student_id: Optional[str] = None
    roles: List[AppRole]
    is_admin: bool

class Token(BaseModel):
    access_token: str
    token_type: str
    expires_in: int
    user: CurrentUser

class TokenData(BaseModel):
    sub: str
    user_id: int
    role: str

# Category Schemas
class CategoryBase(BaseModel):
    name: str = Field(..., max_length=50)
    description: Optional[str] = Field(None, max_length=200)

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        v = v.strip()
        if len(v) < 2:
            raise ValueError('Name must be at least 2 characters')
        return v

    @field_validator('description')
    @classmethod
    def blank_description_is_none(cls, v):
        if v is None:
            return None
        return v.strip() or None

class CategoryCreate(CategoryBase):
    pass

class CategoryUpdate(CategoryBase):
    pass

class Category(BaseSchema):
    id: int
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None

class CategoryRef(BaseSchema):
    id: int
    name: str

# Complaint Schemas
class Complaint(BaseSchema):
    id: int
    user_id: int
    category_id: int
    subject: str
    description: str
    status: ComplaintStatus
    priority: ComplaintPriority
    admin_response: Optional[str] = None
    attachment_path: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    category: Optional[CategoryRef] = None

class ComplaintWithOwner(Complaint):
    owner_name: Optional[str] = None
    owner_email: Optional[str] = None

class ComplaintAdminUpdate(BaseModel):
    status: ComplaintStatus
    priority: ComplaintPriority
    admin_response: Optional[str] = None

class ComplaintBulkUpdate(BaseModel):
    complaint_ids: List[int] = Field(..., min_length=1)
    status: Optional[ComplaintStatus] = None
    priority: Optional[ComplaintPriority] = None

class BulkUpdateResult(BaseModel):
    updated: int
    complaint_ids: List[int]

class AttachmentUrl(BaseModel):
    url: str
    expires_in: int

# Comment Schemas
class CommentCreate(BaseModel):
    content: str = Field(..., min_length=1)

class Comment(BaseSchema):
    id: int
    complaint_id: int
    user_id: int
    content: str
    is_admin: bool
    created_at: Optional[datetime] = None
    author_name: Optional[str] = None

# Log Schemas
class ComplaintLog(BaseSchema):
    id: int
    complaint_id: int
    action: str
    old_status: Optional[ComplaintStatus] = None
    new_status: Optional[ComplaintStatus] = None
    notes: Optional[str] = None
    performed_by: int
    created_at: Optional[datetime] = None

class ActivityLogEntry(ComplaintLog):
    admin_name: str
    complaint_subject: str

# Notification Schemas
class NotificationResult(BaseModel):
    success: bool
    error: Optional[str] = None

# Overview and Report Schemas
class StatusCounts(BaseModel):
    total: int = 0
    submitted: int = 0
    in_review: int = 0
    resolved: int = 0

class StudentOverview(BaseModel):
    stats: StatusCounts
    recent_complaints: List[Complaint]

class AdminOverview(BaseModel):
    stats: StatusCounts
    resolution_rate: int
    recent_complaints: List[ComplaintWithOwner]

class NamedCount(BaseModel):
    name: str
    count: int

class CategoryResolutionTime(BaseModel):
    category: str
    avg_days: int

class TrendPoint(BaseModel):
    date: date
    submitted: int
    resolved: int
    total: int

class ReportSummary(BaseModel):
    total_complaints: int
    total_students: int
    resolution_rate: int
    avg_resolution_days: int
    status_counts: Dict[str, int]
    priority_counts: Dict[str, int]
    category_counts: List[NamedCount]
    resolution_time_by_category: List[CategoryResolutionTime]
    trend: List[TrendPoint]

# Response Schemas
class ResponseBase(BaseModel):
    success: bool
    message: str
    data: Optional[Any] = None

# Search and Filter Schemas
class ComplaintFilter(BaseModel):
    status: Optional[ComplaintStatus] = None
    category_id: Optional[int] = None
    priority: Optional[ComplaintPriority] = None
    search: Optional[str] = None

class ExportFilter(BaseModel):
    status: Optional[ComplaintStatus] = None
    category_id: Optional[int] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
