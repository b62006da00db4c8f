from datetime import datetime, timezone

from fastapi import APIRouter, Depends

from clinicflow import __version__
from clinicflow.dependencies import Services, get_services
from clinicflow.resilience import get_all_circuit_statuses

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "Clinic Intake & Notification Service",
        "version": __version__,
        "status": "operational",
        "endpoints": {
            "health": "/health",
            "intake": "/webhook/intake",
            "booking": "/webhook/booking",
            "dashboard": "/dashboard",
            "triggers": "/trigger/*",
        },
        "documentation": "/docs",
    }


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    now = datetime.now(timezone.utc)
    circuits = get_all_circuit_statuses()
    degraded = any(c["state"] != "closed" for c in circuits.values())

    return {
        "status": "degraded" if degraded else "healthy",
        "service": "clinicflow",
        "version": __version__,
        "environment": services.settings.env,
        "timestamp": now.isoformat(),
        "uptime_seconds": round((now - services.started_at).total_seconds(), 1),
        "store": services.store.backend_name,
        "model": services.llm.name if services.llm is not None else None,
        "circuits": circuits,
        "scheduler": services.scheduler.status(),
        "triage": services.classifier.get_stats(),
    }
