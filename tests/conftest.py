import os
import tempfile

# Settings are read at import time, so they must be in place first
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ALLOWED_HOSTS"] = "testserver,localhost"
os.environ["SEED_DEFAULT_DATA"] = "false"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="campus-complaints-")
os.environ["LOG_FILE"] = os.path.join(tempfile.gettempdir(), "campus-complaints-test.log")
os.environ["RESEND_API_KEY"] = ""
os.environ["SMTP_USER"] = ""
os.environ["SECRET_KEY"] = "test-secret-key"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app, DEFAULT_CATEGORIES
from campus_complaints.api.v1.routes import get_lifecycle
from campus_complaints.core.errors import RemoteError
from campus_complaints.core.security import Actor
from campus_complaints.crud import crud
from campus_complaints.db.database import Base, get_db
from campus_complaints.models.models import AppRole, Category
from campus_complaints.schemas.schemas import UserCreate, NotificationResult
from campus_complaints.services.complaint_service import ComplaintLifecycle

# 1. Setup In-Memory SQLite Database
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# 2. Dependency Override
def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()

app.dependency_overrides[get_db] = override_get_db

# 3. Test doubles
class FakeNotifier:
    def __init__(self, success=True):
        self.success = success
        self.sent = []

    def notify(self, db, kind, complaint_id, old_value=None, new_value=None, comment=None):
        self.sent.append({
            "kind": kind,
            "complaint_id": complaint_id,
            "old_value": old_value,
            "new_value": new_value,
            "comment": comment,
        })
        if self.success:
            return NotificationResult(success=True)
        return NotificationResult(success=False, error="Failed to send email")


class FakeBlobStore:
    def __init__(self, fail=False):
        self.fail = fail
        self.blobs = {}

    def upload(self, path, data, content_type=None):
        if self.fail:
            raise RemoteError("Storage unavailable")
        self.blobs[path] = data

    def create_signed_url(self, path, ttl_seconds=3600):
        return f"https://blobs.test/{path}?expires_in={ttl_seconds}"


def create_user(db, email, full_name, password="secret123", admin=False, student_id=None):
    user = crud.user.create(db, obj_in=UserCreate(
        email=email, password=password, full_name=full_name, student_id=student_id,
    ))
    if admin:
        user = crud.user.grant_role(db, user, AppRole.ADMIN)
    return user


def seed_categories(db):
    for name, description in DEFAULT_CATEGORIES:
        db.add(Category(name=name, description=description))
    db.commit()

# 4. Unit fixtures
@pytest.fixture
def db():
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    seed_categories(session)
    yield session
    session.close()
    Base.metadata.drop_all(bind=engine)

@pytest.fixture
def student(db):
    return create_user(db, "student@campus.edu", "Sam Student", student_id="STU001")

@pytest.fixture
def other_student(db):
    return create_user(db, "other@campus.edu", "Olive Other", student_id="STU002")

@pytest.fixture
def admin(db):
    return create_user(db, "admin@campus.edu", "Ada Admin", admin=True)

@pytest.fixture
def student_actor(student):
    return Actor.from_user(student)

@pytest.fixture
def other_actor(other_student):
    return Actor.from_user(other_student)

@pytest.fixture
def admin_actor(admin):
    return Actor.from_user(admin)

@pytest.fixture
def notifier():
    return FakeNotifier()

@pytest.fixture
def blob_store():
    return FakeBlobStore()

@pytest.fixture
def lifecycle(notifier, blob_store):
    return ComplaintLifecycle(notifier, blob_store, notify_on_admin_comment=True)

@pytest.fixture
def category(db):
    return crud.category.get_by_name(db, name="Facilities")

# 5. API fixtures
@pytest.fixture(scope="module")
def client():
    # Create tables
    Base.metadata.create_all(bind=engine)

    # Pre-seed Data
    db = TestingSessionLocal()
    seed_categories(db)
    create_user(db, "admin@campus.edu", "Ada Admin", password="admin123", admin=True)
    create_user(db, "student@campus.edu", "Sam Student", password="student123", student_id="STU001")
    create_user(db, "other@campus.edu", "Olive Other", password="other123", student_id="STU002")
    db.close()

    with TestClient(app) as c:
        yield c

    # Drop tables (cleanup)
    Base.metadata.drop_all(bind=engine)

def _login(client, email, password):
    response = client.post("/api/v1/auth/login", json={"email": email, "password": password})
    return {"Authorization": f"Bearer {response.json()['access_token']}"}

@pytest.fixture(scope="module")
def admin_headers(client):
    return _login(client, "admin@campus.edu", "admin123")

@pytest.fixture(scope="module")
def student_headers(client):
    return _login(client, "student@campus.edu", "student123")

@pytest.fixture(scope="module")
def other_headers(client):
    return _login(client, "other@campus.edu", "other123")

@pytest.fixture
def recorded_notifications(client):
    """
    Route lifecycle calls through a recording notifier for one test
    """
    fake = FakeNotifier()
    app.dependency_overrides[get_lifecycle] = lambda: ComplaintLifecycle(
        fake, FakeBlobStore(), notify_on_admin_comment=True
    )
    yield fake.sent
    app.dependency_overrides.pop(get_lifecycle, None)
