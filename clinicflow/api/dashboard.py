from fastapi import APIRouter, Depends

from clinicflow.dependencies import Services, get_services
from clinicflow.exceptions import NotFoundError

router = APIRouter()


@router.get("/dashboard")
async def dashboard(services: Services = Depends(get_services)):
    stats = await services.reports.dashboard_stats()
    return {"success": True, "stats": stats, "scheduler": services.scheduler.status()}


@router.get("/intakes/{form_id}")
async def get_intake(form_id: str, services: Services = Depends(get_services)):
    """Intake status plus its triage outcome, for staff follow-up."""
    intake = await services.repo.find_intake(form_id)
    if intake is None:
        raise NotFoundError(f"Intake {form_id} not found")
    triage = await services.repo.find_triage(form_id)

    return {
        "formId": intake.form_id,
        "patientName": intake.patient_name,
        "status": intake.status.value,
        "appointmentDate": intake.appointment_date,
        "appointmentTime": intake.appointment_time,
        "createdAt": intake.created_at.isoformat() if intake.created_at else None,
        "triage": None if triage is None else {
            "urgency": triage.urgency.value,
            "processedBy": triage.processed_by.value,
            "riskKeywords": triage.risk_keywords,
            "summary": triage.summary,
        },
    }
