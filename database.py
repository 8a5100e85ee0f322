from sqlalchemy import create_engine, Column, String, DateTime, Text, Integer, JSON, text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.orm.exc import StaleDataError
from datetime import datetime
from typing import Generator, List, Optional
from config import settings
from errors import JobAlreadyExistsError, JobRecordError
from job_store import JobStore, UpdateResult, ChangeListener
from models import JobRecord, JobStatus, JobUpdate, can_transition, resolve_update
import logging

logger = logging.getLogger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Endpoints run in FastAPI's threadpool
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


# Create engine with connection pooling
engine = create_engine(
    settings.database_url,
    echo=False,
    **_engine_kwargs(settings.database_url)
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

class Job(Base):
    __tablename__ = 'jobs'

    request_id = Column(String, primary_key=True, index=True)
    status = Column(String, default=JobStatus.PENDING.value, nullable=False, index=True)
    prompt = Column(Text, nullable=True)
    result_url = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    logs = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
    updated_at = Column(DateTime, default=datetime.utcnow)
    version = Column(Integer, nullable=False)

    # Optimistic compare-and-swap: UPDATE ... WHERE version = <read version>
    __mapper_args__ = {"version_id_col": version}

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

def create_tables(bind=None):
    """Create all tables"""
    try:
        Base.metadata.create_all(bind=bind or engine)
        logger.info("Database tables created successfully")
    except Exception as e:
        logger.error(f"Error creating tables: {e}")
        raise

def check_connection(db: Session):
    db.execute(text("SELECT 1"))

def get_job_by_id(db: Session, request_id: str) -> Optional[Job]:
    """Get job by request ID"""
    return db.query(Job).filter(Job.request_id == request_id).first()

def to_record(job: Job) -> JobRecord:
    return JobRecord(
        request_id=job.request_id,
        status=job.status,
        prompt=job.prompt,
        result_url=job.result_url,
        error=job.error,
        logs=list(job.logs or []),
        created_at=job.created_at,
        updated_at=job.updated_at,
        version=job.version,
    )


class SqlJobStore(JobStore):
    """Job record store backed by SQLAlchemy"""

    def __init__(self, session_factory=SessionLocal, listener: Optional[ChangeListener] = None, max_attempts: int = 5):
        super().__init__(listener)
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    def get(self, request_id: str) -> Optional[JobRecord]:
        with self.session_factory() as db:
            job = get_job_by_id(db, request_id)
            return to_record(job) if job else None

    def create(self, request_id: str, prompt: Optional[str]) -> JobRecord:
        with self.session_factory() as db:
            if get_job_by_id(db, request_id) is not None:
                raise JobAlreadyExistsError(request_id)

            now = datetime.utcnow()
            job = Job(
                request_id=request_id,
                status=JobStatus.PENDING.value,
                prompt=prompt,
                logs=[],
                created_at=now,
                updated_at=now,
            )
            db.add(job)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise JobAlreadyExistsError(request_id)

            record = to_record(job)
        logger.info(f"Job {request_id} created")
        self._notify(record)
        return record

    def update_if_not_terminal(self, request_id: str, update: JobUpdate) -> UpdateResult:
        for attempt in range(1, self.max_attempts + 1):
            with self.session_factory() as db:
                job = get_job_by_id(db, request_id)
                if job is None:
                    logger.warning(f"Job {request_id} not found for status update")
                    return UpdateResult(job=None, applied=False)

                current = to_record(job)
                if not can_transition(current.status, update.status):
                    logger.debug(
                        f"Ignoring {update.status.value} for job {request_id} in {current.status.value}"
                    )
                    return UpdateResult(job=current, applied=False)

                values = resolve_update(current, update)
                # version_id_col bumps the version itself
                values.pop("version")
                values["status"] = values["status"].value
                for key, value in values.items():
                    setattr(job, key, value)

                try:
                    db.commit()
                except StaleDataError:
                    db.rollback()
                    logger.info(f"Concurrent update on job {request_id}, retrying (attempt {attempt})")
                    continue

                record = to_record(job)

            logger.info(f"Job {request_id} status updated to {record.status.value}")
            self._notify(record)
            return UpdateResult(job=record, applied=True)

        raise JobRecordError(request_id, f"Gave up updating job {request_id} after {self.max_attempts} conflicts")

    def list(self, status: Optional[JobStatus] = None, skip: int = 0, limit: int = 100) -> List[JobRecord]:
        with self.session_factory() as db:
            query = db.query(Job)
            if status:
                query = query.filter(Job.status == status.value)
            jobs = query.order_by(Job.created_at.desc()).offset(skip).limit(limit).all()
            return [to_record(job) for job in jobs]

    def delete_older_than(self, cutoff: datetime) -> int:
        with self.session_factory() as db:
            deleted = db.query(Job).filter(Job.created_at < cutoff).delete(synchronize_session=False)
            db.commit()
        return deleted
