from sqlalchemy import create_engine, Column, String, DateTime, Text, Integer
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from datetime import datetime
from typing import Generator, Optional, Tuple, Union
from config import settings
import uuid
import logging

logger = logging.getLogger(__name__)

JOB_STATUSES = ("queued", "processing", "completed", "failed")
ACTIVE_STATUSES = ("queued", "processing")

# SQLite needs cross-thread access for the FastAPI threadpool
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

# Create engine with connection pooling
engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    pool_recycle=3600,
    connect_args=connect_args,
    echo=False
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

class Job(Base):
    __tablename__ = 'scrape_jobs'

    id = Column(String, primary_key=True, index=True)
    source_url = Column(Text, nullable=False)
    status = Column(String, default='queued', index=True)  # queued, processing, completed, failed
    error_message = Column(Text, nullable=True)
    result = Column(Text, nullable=True)  # JSON of the normalized listing
    provider = Column(String, nullable=True)
    client_ip = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    processing_time = Column(Integer, nullable=True)  # seconds

def get_db() -> Generator[Session, None, None]:
    """Database session dependency"""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database error: {e}")
        db.rollback()
        raise
    finally:
        db.close()

def create_tables():
    """Create all tables"""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise

def create_job(db: Session, source_url: str, client_ip: Optional[str] = None) -> Job:
    """Insert a new job in the queued state"""
    job = Job(
        id=uuid.uuid4().hex,
        source_url=source_url,
        status="queued",
        client_ip=client_ip,
        created_at=datetime.utcnow(),
        updated_at=datetime.utcnow()
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job

def update_job_status(db: Session, job_id: str, status: str,
                      expected_status: Union[str, Tuple[str, ...], None] = None, **kwargs) -> bool:
    """Update job status and other fields atomically.

    When ``expected_status`` is given (one status or a tuple of them) the row
    is only touched if it is currently in it. Returns False instead of
    raising on any failure.
    """
    try:
        job = db.query(Job).filter(Job.id == job_id).first()
        if not job:
            logger.warning(f"Job {job_id} not found for status update")
            return False

        if isinstance(expected_status, str):
            expected_status = (expected_status,)
        if expected_status and job.status not in expected_status:
            logger.info(f"Job {job_id} is {job.status}, not {expected_status}; leaving it alone")
            return False

        job.status = status
        job.updated_at = datetime.utcnow()

        for key, value in kwargs.items():
            if hasattr(job, key):
                setattr(job, key, value)

        db.commit()
        logger.info(f"Job {job_id} status updated to {status}")
        return True

    except SQLAlchemyError as e:
        logger.error(f"Error updating job {job_id}: {e}")
        db.rollback()
        return False

def get_job_by_id(db: Session, job_id: str) -> Optional[Job]:
    """Get job by ID"""
    return db.query(Job).filter(Job.id == job_id).first()

def get_active_jobs_count(db: Session, client_ip: str) -> int:
    """Get count of active jobs for an IP"""
    return db.query(Job).filter(
        Job.client_ip == client_ip,
        Job.status.in_(ACTIVE_STATUSES)
    ).count()
