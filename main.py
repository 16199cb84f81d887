from fastapi import FastAPI, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from decouple import config, Csv
import time
import logging

# Import our modules
from campus_complaints.api.v1.routes import router as api_router
from campus_complaints.core.errors import ComplaintSystemError
from campus_complaints.db.database import create_database, test_connection, get_db, SessionLocal
from campus_complaints.crud import crud
from campus_complaints.models.models import AppRole
from campus_complaints.schemas.schemas import CategoryCreate, UserCreate

LOG_FILE = config("LOG_FILE", default="app.log")
CORS_ORIGINS = config("CORS_ORIGINS", cast=Csv(), default="http://localhost:5173")
ALLOWED_HOSTS = config("ALLOWED_HOSTS", cast=Csv(), default="localhost,127.0.0.1,*.localhost")
SEED_DEFAULT_DATA = config("SEED_DEFAULT_DATA", cast=bool, default=True)
DEBUG = config("DEBUG", cast=bool, default=False)

DEFAULT_CATEGORIES = [
    ("Academic", "Issues related to courses, exams, grades, or faculty"),
    ("Facilities", "Problems with buildings, classrooms, labs, or campus infrastructure"),
    ("Administrative", "Concerns about registration, records, or administrative processes"),
    ("Financial", "Issues with fees, scholarships, or financial aid"),
    ("Other", "Any other complaints not covered by the above categories"),
]

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.FileHandler(LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Create FastAPI app (single instance)
app = FastAPI(
    title="Campus Complaints",
    description="Complaint submission, triage and reporting for a campus",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    debug=DEBUG
)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Trust host middleware (for security)
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=ALLOWED_HOSTS
)

# Custom middleware for request logging
@app.middleware("http")
async def log_requests(request: Request, call_next):
    start_time = time.time()
    logger.info(f"Request: {request.method} {request.url.path}")
    response = await call_next(request)
    process_time = time.time() - start_time
    logger.info(f"Response: {response.status_code} - {process_time:.4f}s")
    response.headers["X-Process-Time"] = str(process_time)
    response.headers["X-API-Version"] = "1.0.0"
    return response

# Exception handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    logger.error(f"HTTP Exception: {exc.status_code} - {exc.detail}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.detail,
            "error_code": exc.status_code
        },
        headers=getattr(exc, "headers", None)
    )

@app.exception_handler(ComplaintSystemError)
async def complaint_error_handler(request: Request, exc: ComplaintSystemError):
    logger.warning(f"{type(exc).__name__}: {exc.status_code} - {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "message": exc.message,
            "error_code": exc.status_code
        }
    )

@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.error(f"Validation Error: {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "message": "Validation error",
            "errors": [
                {"loc": list(e.get("loc", [])), "msg": e.get("msg"), "type": e.get("type")}
                for e in exc.errors()
            ]
        }
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "message": "Internal server error",
            "error": str(exc) if app.debug else "An unexpected error occurred"
        }
    )

# Include API routes
app.include_router(api_router, prefix="/api/v1", tags=["API v1"])

# Root endpoints
@app.get("/")
async def root():
    return {
        "message": "Campus Complaints API",
        "version": "1.0.0",
        "status": "active",
        "docs": "/docs",
        "api_prefix": "/api/v1"
    }

@app.get("/health")
async def health_check(db: Session = Depends(get_db)):
    try:
        db.execute(text("SELECT 1"))
        db_status = "healthy"
    except SQLAlchemyError as e:
        logger.error(f"Database health check failed: {str(e)}")
        db_status = "unhealthy"
    return {
        "status": "healthy" if db_status == "healthy" else "unhealthy",
        "timestamp": time.time(),
        "database": db_status,
        "version": "1.0.0"
    }

# Startup and shutdown events
@app.on_event("startup")
async def startup_event():
    logger.info("Starting Campus Complaints API...")
    if not test_connection():
        logger.error("Database connection failed")
        return
    create_database()
    logger.info("Database tables ready")
    if SEED_DEFAULT_DATA:
        create_default_data()
        logger.info("Default data initialized")
    logger.info("Application startup completed")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("Shutting down Campus Complaints API...")

def create_default_data():
    """
    Seed the default categories and, when ADMIN_EMAIL is set, an admin account
    """
    db = SessionLocal()
    try:
        for name, description in DEFAULT_CATEGORIES:
            if not crud.category.get_by_name(db, name=name):
                crud.category.create(db, obj_in=CategoryCreate(name=name, description=description))
                logger.info(f"Created default category: {name}")

        admin_email = config("ADMIN_EMAIL", default="")
        admin_password = config("ADMIN_PASSWORD", default="")
        if admin_email and admin_password and not crud.user.get_by_email(db, email=admin_email):
            admin_user = crud.user.create(db, obj_in=UserCreate(
                email=admin_email,
                password=admin_password,
                full_name="System Administrator",
            ))
            crud.user.grant_role(db, admin_user, AppRole.ADMIN)
            logger.info(f"Created default admin user: {admin_user.email}")
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Error creating default data: {str(e)}")
        raise
    finally:
        db.close()

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=config("HOST", default="127.0.0.1"),
        port=config("PORT", cast=int, default=8000),
        reload=DEBUG,
        log_level="info",
        access_log=True
    )
