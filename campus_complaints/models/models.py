from sqlalchemy import Boolean, Column, Integer, String, Text, DateTime, ForeignKey, Enum, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from campus_complaints.db.database import Base

# Enums for status, priority and roles
class ComplaintStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    IN_REVIEW = "in_review"
    RESOLVED = "resolved"

class ComplaintPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

class AppRole(str, enum.Enum):
    STUDENT = "student"
    ADMIN = "admin"

class NotificationKind(str, enum.Enum):
    STATUS_CHANGE = "status_change"
    PRIORITY_CHANGE = "priority_change"
    ADMIN_COMMENT = "admin_comment"

# Identity Model (sign-in credentials)
class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    hashed_password = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True)
    last_login = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    # Relationships
    profile = relationship("Profile", back_populates="user", uselist=False)
    roles = relationship("RoleAssignment", back_populates="user")
    complaints = relationship("Complaint", back_populates="owner")

    @property
    def role_names(self):
        return sorted(r.role.value for r in self.roles)

    @property
    def is_admin(self) -> bool:
        return any(r.role == AppRole.ADMIN for r in self.roles)

# Profile Model (one per identity, created on sign-up)
class Profile(Base):
    __tablename__ = "profiles"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    full_name = Column(String(100), nullable=False)
    email = Column(String(255), nullable=False)
    student_id = Column(String(50), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="profile")

# Role assignment; absence of an admin row means student
class RoleAssignment(Base):
    __tablename__ = "user_roles"
    __table_args__ = (UniqueConstraint("user_id", "role", name="uq_user_role"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    role = Column(Enum(AppRole), nullable=False, default=AppRole.STUDENT)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="roles")

# Category Model
class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), unique=True, nullable=False)
    description = Column(String(200))
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    complaints = relationship("Complaint", back_populates="category")

# Complaint Model
class Complaint(Base):
    __tablename__ = "complaints"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=False, index=True)
    subject = Column(String(100), nullable=False)
    description = Column(Text, nullable=False)
    status = Column(Enum(ComplaintStatus), nullable=False, default=ComplaintStatus.SUBMITTED, index=True)
    priority = Column(Enum(ComplaintPriority), nullable=False, default=ComplaintPriority.MEDIUM, index=True)
    admin_response = Column(Text)
    attachment_path = Column(String(500))

    # Timestamps
    resolved_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    owner = relationship("User", back_populates="complaints")
    category = relationship("Category", back_populates="complaints")
    comments = relationship(
        "ComplaintComment",
        back_populates="complaint",
        order_by="ComplaintComment.id",
        cascade="all, delete-orphan",
    )
    logs = relationship("ComplaintLog", back_populates="complaint", cascade="all, delete-orphan")

# Comment Model (threaded messages between student and staff)
class ComplaintComment(Base):
    __tablename__ = "complaint_comments"

    id = Column(Integer, primary_key=True, index=True)
    complaint_id = Column(Integer, ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    content = Column(Text, nullable=False)
    is_admin = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    complaint = relationship("Complaint", back_populates="comments")
    author = relationship("User")

# Audit Log Model
class ComplaintLog(Base):
    __tablename__ = "complaint_logs"

    id = Column(Integer, primary_key=True, index=True)
    complaint_id = Column(Integer, ForeignKey("complaints.id", ondelete="CASCADE"), nullable=False, index=True)
    action = Column(Text, nullable=False)  # e.g. "Status changed from submitted to resolved"
    old_status = Column(Enum(ComplaintStatus))
    new_status = Column(Enum(ComplaintStatus))
    notes = Column(Text)
    performed_by = Column(Integer, ForeignKey("users.id"), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    complaint = relationship("Complaint", back_populates="logs")
    performer = relationship("User")
