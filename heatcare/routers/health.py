import os
from fastapi import APIRouter

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "HeatCare Monitoring Server is Running",
        "features": ["daily_checkins", "symptom_monitoring", "weather_alerts"],
        "endpoints": {
            "start": "/api/monitoring/checkups",
            "cancel": "/api/monitoring/checkups/{patient_id}",
            "escalate": "/api/monitoring/escalate",
            "deescalate": "/api/monitoring/deescalate",
            "responses": "/api/monitoring/responses",
            "classify_response": "/api/monitoring/classify-response",
            "status": "/api/monitoring/status/{patient_id}",
        }
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from heatcare.monitoring.setup import get_controller, get_job_store

    store = get_job_store()
    return {
        "status": "healthy",
        "service": "heatcare-monitoring",
        "port": os.environ.get("PORT", 8080),
        "monitoring": "ok" if get_controller() is not None else "not_initialized",
        "pending_jobs": getattr(store, "pending_count", 0),
    }
