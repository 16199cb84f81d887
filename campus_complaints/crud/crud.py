from sqlalchemy.orm import Session, joinedload
from sqlalchemy import or_, desc, func, case, literal
from typing import List, Optional, Dict, Iterable
from datetime import datetime, time
from campus_complaints.core.security import Actor, get_password_hash, verify_password
from campus_complaints.core.policy import scope_complaints, scope_logs
from campus_complaints.models.models import (
    User, Profile, RoleAssignment, Category, Complaint,
    ComplaintComment, ComplaintLog, ComplaintStatus, ComplaintPriority, AppRole
)
from campus_complaints.schemas.schemas import (
    UserCreate, CategoryCreate, CategoryUpdate, ComplaintFilter, ExportFilter
)

# Base CRUD Class
class CRUDBase:
    def __init__(self, model):
        self.model = model

    def get(self, db: Session, id: int):
        return db.query(self.model).filter(self.model.id == id).first()

    def remove(self, db: Session, id: int):
        obj = db.get(self.model, id)
        db.delete(obj)
        db.commit()
        return obj

# User CRUD Operations
class CRUDUser(CRUDBase):
    def __init__(self):
        super().__init__(User)

    def get_by_email(self, db: Session, email: str) -> Optional[User]:
        return db.query(User).filter(func.lower(User.email) == email.lower()).first()

    def create(self, db: Session, obj_in: UserCreate) -> User:
        """
        Sign-up: identity, profile and student role are written together
        """
        db_obj = User(
            email=obj_in.email.lower(),
            hashed_password=get_password_hash(obj_in.password),
        )
        db_obj.profile = Profile(
            full_name=obj_in.full_name,
            email=obj_in.email.lower(),
            student_id=obj_in.student_id,
        )
        db_obj.roles = [RoleAssignment(role=AppRole.STUDENT)]
        db.add(db_obj)
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def authenticate(self, db: Session, email: str, password: str) -> Optional[User]:
        user = self.get_by_email(db, email=email)
        if not user:
            return None
        if not verify_password(password, user.hashed_password):
            return None
        return user

    def is_active(self, user: User) -> bool:
        return user.is_active

    def grant_role(self, db: Session, user: User, role: AppRole) -> User:
        if role not in {r.role for r in user.roles}:
            db.add(RoleAssignment(user_id=user.id, role=role))
            db.commit()
            db.refresh(user)
        return user

    def set_password(self, db: Session, user: User, password: str) -> User:
        user.hashed_password = get_password_hash(password)
        db.commit()
        return user

    def touch_login(self, db: Session, user: User) -> None:
        user.last_login = datetime.utcnow()
        db.commit()

# Profile CRUD Operations
class CRUDProfile(CRUDBase):
    def __init__(self):
        super().__init__(Profile)

    def get_by_user(self, db: Session, user_id: int) -> Optional[Profile]:
        return db.query(Profile).filter(Profile.user_id == user_id).first()

    def map_by_user_ids(self, db: Session, user_ids: Iterable[int]) -> Dict[int, Profile]:
        """
        One batched lookup for every owner or performer referenced by a listing
        """
        ids = set(user_ids)
        if not ids:
            return {}
        profiles = db.query(Profile).filter(Profile.user_id.in_(ids)).all()
        return {p.user_id: p for p in profiles}

    def count(self, db: Session) -> int:
        return db.query(Profile).count()

# Category CRUD Operations
class CRUDCategory(CRUDBase):
    def __init__(self):
        super().__init__(Category)

    def get_by_name(self, db: Session, name: str) -> Optional[Category]:
        return db.query(Category).filter(func.lower(Category.name) == name.lower()).first()

    def get_all(self, db: Session) -> List[Category]:
        return db.query(Category).order_by(Category.name).all()

    def create(self, db: Session, obj_in: CategoryCreate) -> Category:
        db_obj = Category(name=obj_in.name, description=obj_in.description)
        db.add(db_obj)
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def update(self, db: Session, db_obj: Category, obj_in: CategoryUpdate) -> Category:
        db_obj.name = obj_in.name
        db_obj.description = obj_in.description
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def count_complaints(self, db: Session, category_id: int) -> int:
        return db.query(Complaint).filter(Complaint.category_id == category_id).count()

# Complaint CRUD Operations
class CRUDComplaint(CRUDBase):
    def __init__(self):
        super().__init__(Complaint)

    def create(self, db: Session, owner_id: int, category_id: int, subject: str, description: str) -> Complaint:
        db_obj = Complaint(
            user_id=owner_id,
            category_id=category_id,
            subject=subject,
            description=description,
            status=ComplaintStatus.SUBMITTED,
            priority=ComplaintPriority.MEDIUM,
        )
        db.add(db_obj)
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def set_attachment(self, db: Session, complaint: Complaint, path: str) -> Complaint:
        complaint.attachment_path = path
        db.commit()
        db.refresh(complaint)
        return complaint

    def get_with_details(self, db: Session, complaint_id: int) -> Optional[Complaint]:
        return db.query(Complaint).options(
            joinedload(Complaint.category),
        ).filter(Complaint.id == complaint_id).first()

    def get_visible(self, db: Session, actor: Actor, filters: ComplaintFilter = None) -> List[Complaint]:
        query = scope_complaints(db.query(Complaint), actor).options(joinedload(Complaint.category))

        if filters:
            if filters.status:
                query = query.filter(Complaint.status == filters.status)
            if filters.category_id:
                query = query.filter(Complaint.category_id == filters.category_id)
            if filters.priority:
                query = query.filter(Complaint.priority == filters.priority)
            if filters.search:
                search_term = f"%{filters.search.strip()}%"
                clauses = [
                    Complaint.subject.ilike(search_term),
                    Complaint.description.ilike(search_term),
                ]
                if actor.is_admin:
                    query = query.outerjoin(Profile, Profile.user_id == Complaint.user_id)
                    clauses.extend([
                        Profile.full_name.ilike(search_term),
                        Profile.email.ilike(search_term),
                    ])
                query = query.filter(or_(*clauses))

        return query.order_by(desc(Complaint.created_at), desc(Complaint.id)).all()

    def get_recent(self, db: Session, actor: Actor, limit: int = 5) -> List[Complaint]:
        return scope_complaints(db.query(Complaint), actor).options(
            joinedload(Complaint.category)
        ).order_by(desc(Complaint.created_at), desc(Complaint.id)).limit(limit).all()

    def status_counts(self, db: Session, actor: Actor) -> Dict[str, int]:
        rows = scope_complaints(
            db.query(Complaint.status, func.count(Complaint.id)), actor
        ).group_by(Complaint.status).all()
        counts = {s.value: 0 for s in ComplaintStatus}
        for status, count in rows:
            counts[status.value] = count
        return counts

    def get_by_ids(self, db: Session, ids: List[int]) -> List[Complaint]:
        return db.query(Complaint).filter(Complaint.id.in_(ids)).all()

    def update_admin_fields(self, db: Session, complaint: Complaint, status: ComplaintStatus,
                            priority: ComplaintPriority, admin_response: Optional[str]) -> Complaint:
        if status == ComplaintStatus.RESOLVED and complaint.status != ComplaintStatus.RESOLVED:
            complaint.resolved_at = datetime.utcnow()
        complaint.status = status
        complaint.priority = priority
        complaint.admin_response = admin_response
        db.commit()
        db.refresh(complaint)
        return complaint

    def bulk_update(self, db: Session, ids: List[int], status: Optional[ComplaintStatus] = None,
                    priority: Optional[ComplaintPriority] = None) -> int:
        """
        Single multi-row UPDATE; resolved_at is stamped only for rows entering resolved
        """
        values = {}
        if status is not None:
            values[Complaint.status] = status
            if status == ComplaintStatus.RESOLVED:
                values[Complaint.resolved_at] = case(
                    (Complaint.status != ComplaintStatus.RESOLVED, literal(datetime.utcnow(), Complaint.resolved_at.type)),
                    else_=Complaint.resolved_at,
                )
        if priority is not None:
            values[Complaint.priority] = priority
        updated = db.query(Complaint).filter(Complaint.id.in_(ids)).update(
            values, synchronize_session=False
        )
        db.commit()
        db.expire_all()
        return updated

    def get_for_export(self, db: Session, actor: Actor, filters: ExportFilter) -> List[Complaint]:
        query = scope_complaints(db.query(Complaint), actor).options(joinedload(Complaint.category))
        if filters.status:
            query = query.filter(Complaint.status == filters.status)
        if filters.category_id:
            query = query.filter(Complaint.category_id == filters.category_id)
        if filters.date_from:
            query = query.filter(Complaint.created_at >= datetime.combine(filters.date_from, time.min))
        if filters.date_to:
            query = query.filter(Complaint.created_at <= datetime.combine(filters.date_to, time.max))
        return query.order_by(desc(Complaint.created_at), desc(Complaint.id)).all()

    def get_for_reports(self, db: Session, actor: Actor) -> List[Complaint]:
        return scope_complaints(db.query(Complaint), actor).options(
            joinedload(Complaint.category)
        ).all()

# Comment CRUD Operations
class CRUDComment(CRUDBase):
    def __init__(self):
        super().__init__(ComplaintComment)

    def create(self, db: Session, complaint_id: int, user_id: int, content: str, is_admin: bool) -> ComplaintComment:
        db_obj = ComplaintComment(
            complaint_id=complaint_id,
            user_id=user_id,
            content=content,
            is_admin=is_admin,
        )
        db.add(db_obj)
        db.commit()
        db.refresh(db_obj)
        return db_obj

    def get_by_complaint(self, db: Session, complaint_id: int) -> List[ComplaintComment]:
        return db.query(ComplaintComment).filter(
            ComplaintComment.complaint_id == complaint_id
        ).order_by(ComplaintComment.created_at, ComplaintComment.id).all()

# Complaint Log CRUD Operations
class CRUDComplaintLog(CRUDBase):
    def __init__(self):
        super().__init__(ComplaintLog)

    def log_action(self, db: Session, complaint_id: int, performed_by: int, action: str,
                   old_status: ComplaintStatus = None, new_status: ComplaintStatus = None,
                   notes: str = None) -> ComplaintLog:
        log = ComplaintLog(
            complaint_id=complaint_id,
            performed_by=performed_by,
            action=action,
            old_status=old_status,
            new_status=new_status,
            notes=notes,
        )
        db.add(log)
        db.commit()
        db.refresh(log)
        return log

    def log_many(self, db: Session, entries: List[ComplaintLog]) -> List[ComplaintLog]:
        db.add_all(entries)
        db.commit()
        return entries

    def get_by_complaint(self, db: Session, complaint_id: int) -> List[ComplaintLog]:
        return db.query(ComplaintLog).filter(
            ComplaintLog.complaint_id == complaint_id
        ).order_by(ComplaintLog.created_at, ComplaintLog.id).all()

    def get_recent(self, db: Session, actor: Actor, limit: int = 500) -> List[ComplaintLog]:
        return scope_logs(db.query(ComplaintLog), actor).order_by(
            desc(ComplaintLog.created_at), desc(ComplaintLog.id)
        ).limit(limit).all()

# Initialize CRUD instances
user = CRUDUser()
profile = CRUDProfile()
category = CRUDCategory()
complaint = CRUDComplaint()
comment = CRUDComment()
complaint_log = CRUDComplaintLog()
