from fastapi import APIRouter, HTTPException, Depends
from sqlalchemy.orm import Session
from database import get_db, check_connection
import redis
from config import settings
import psutil
from datetime import datetime

health_router = APIRouter()

SERVICE_NAME = "AI Makeup Job Service"
SERVICE_VERSION = "1.0.0"

def _check_redis() -> dict:
    if not settings.redis_url:
        return {"status": "disabled"}
    redis_conn = redis.from_url(settings.redis_url)
    redis_conn.ping()
    info = redis_conn.info()
    return {
        "status": "healthy",
        "connected_clients": info.get("connected_clients", 0)
    }

@health_router.get("/")
def health_check():
    """Basic health check"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION
    }

@health_router.get("/detailed")
def detailed_health_check(db: Session = Depends(get_db)):
    """Detailed health check with dependencies"""
    health_status = {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "checks": {}
    }
    
    # Database check
    try:
        check_connection(db)
        health_status["checks"]["database"] = {"status": "healthy"}
    except Exception as e:
        health_status["checks"]["database"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"
    
    # Redis check (events + background reconcile)
    try:
        health_status["checks"]["redis"] = _check_redis()
    except Exception as e:
        health_status["checks"]["redis"] = {
            "status": "unhealthy",
            "error": str(e)
        }
        health_status["status"] = "unhealthy"

    # Provider credential; without it submissions are mocked
    health_status["checks"]["provider"] = {
        "status": "configured" if settings.provider_configured else "mock",
        "model": settings.fal_model,
        "webhook": settings.webhook_enabled
    }
    
    # System resources
    try:
        cpu_percent = psutil.cpu_percent(interval=0.1)
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage('/')
        
        health_status["checks"]["system"] = {
            "status": "healthy",
            "cpu_percent": cpu_percent,
            "memory_percent": memory.percent,
            "disk_percent": disk.percent
        }
        
        # Mark as warning if resources are critically low
        if cpu_percent > 90 or memory.percent > 90 or disk.percent > 90:
            health_status["checks"]["system"]["status"] = "warning"
            
    except Exception as e:
        health_status["checks"]["system"] = {
            "status": "unhealthy",
            "error": str(e)
        }
    
    # Return appropriate HTTP status
    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)
    
    return health_status

@health_router.get("/ready")
def readiness_check(db: Session = Depends(get_db)):
    """Kubernetes readiness probe"""
    try:
        check_connection(db)
        _check_redis()
        return {"status": "ready"}
        
    except Exception as e:
        raise HTTPException(
            status_code=503, 
            detail={"status": "not ready", "error": str(e)}
        )

@health_router.get("/live")
def liveness_check():
    """Kubernetes liveness probe"""
    return {"status": "alive"}
