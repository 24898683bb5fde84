from fastapi import FastAPI, HTTPException, Depends, Request, BackgroundTasks
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from pydantic import BaseModel, HttpUrl
from sqlalchemy.orm import Session
import uuid
import logging
from typing import Optional
import redis
from contextlib import asynccontextmanager

# Local imports
from config import settings
from database import get_db, create_tables, create_job, Job, update_job_status, get_active_jobs_count
from security import security_manager
from queue_index import QueueIndex, get_queue_index
import queue_index as queue_index_module
from queue_api import queue_router
from trigger import get_worker_trigger
from rate_limiter import SUBMIT_LIMIT, limiter, setup_rate_limiting
from health import health_router
from monitoring import setup_monitoring

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(settings.log_file),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    # Startup
    try:
        create_tables()
        logger.info("Application started successfully")

        queue_index_module.redis_conn.ping()
        logger.info("Redis connection established")

    except Exception as e:
        logger.error(f"Startup error: {e}")
        raise

    yield

    # Shutdown
    logger.info("Application shutting down")

# Create FastAPI app
app = FastAPI(
    title="Listing Scrape Queue API",
    description="Queues listing URLs for scraping and drains them with a self-triggering worker",
    version="1.0.0",
    lifespan=lifespan
)

# Security middleware
app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=["*"]  # Configure properly for production
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure properly for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Setup rate limiting
setup_rate_limiting(app)

# Setup monitoring
setup_monitoring(app)

app.include_router(health_router, prefix="/health", tags=["health"])
app.include_router(queue_router, prefix="/queue", tags=["queue"])

# Request/Response models
class EnqueueRequest(BaseModel):
    url: HttpUrl

    class Config:
        json_schema_extra = {
            "example": {
                "url": "https://www.example.com/listing/1"
            }
        }

class EnqueueResponse(BaseModel):
    jobId: str
    status: str
    queuePosition: Optional[int] = None
    message: str

@app.exception_handler(redis.RedisError)
async def redis_exception_handler(request: Request, exc: redis.RedisError):
    logger.error(f"Queue store error on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "message": f"Queue store unavailable: {exc}"}
    )

# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception on {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "error_id": str(uuid.uuid4())}
    )

@app.post("/queue/jobs", response_model=EnqueueResponse)
@limiter.limit(SUBMIT_LIMIT)
def submit_listing(
    request: Request,
    payload: EnqueueRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    queue_index: QueueIndex = Depends(get_queue_index),
    api_key: str = Depends(security_manager.get_api_key)
):
    """Queue a listing URL for scraping"""

    client_ip = security_manager.get_client_ip(request)
    url = str(payload.url)

    active_jobs = get_active_jobs_count(db, client_ip)
    if active_jobs >= settings.max_active_jobs_per_client:
        raise HTTPException(
            status_code=429,
            detail=f"Too many active jobs. Limit: {settings.max_active_jobs_per_client}"
        )

    job = create_job(db, url, client_ip=client_ip)

    try:
        queue_index.enqueue(job.id)
        position = queue_index.position(job.id)
    except redis.RedisError as e:
        logger.error(f"Error enqueueing job {job.id}: {e}")
        try:
            queue_index.remove(job.id)
        except redis.RedisError as remove_error:
            # worker refuses rows that are no longer queued
            logger.error(f"Job {job.id}: could not remove from pending list: {remove_error}")
        update_job_status(db, job.id, "failed", error_message="Failed to queue job")
        raise HTTPException(status_code=500, detail="Failed to submit job")

    # Start (or keep) the worker chain running
    background_tasks.add_task(get_worker_trigger().dispatch)

    logger.info(f"Job {job.id} queued for URL: {url}")
    return EnqueueResponse(
        jobId=job.id,
        status="queued",
        queuePosition=position,
        message="Job queued successfully"
    )

@app.get("/jobs")
def list_jobs(
    skip: int = 0,
    limit: int = 100,
    status: str = None,
    db: Session = Depends(get_db),
    api_key: str = Depends(security_manager.get_api_key)
):
    """List jobs (admin endpoint)"""

    query = db.query(Job)

    if status:
        query = query.filter(Job.status == status)

    jobs = query.order_by(Job.created_at.desc()).offset(skip).limit(limit).all()

    return {
        "jobs": [
            {
                "id": job.id,
                "url": job.source_url,
                "status": job.status,
                "error_message": job.error_message,
                "created_at": job.created_at,
                "updated_at": job.updated_at
            }
            for job in jobs
        ]
    }

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
