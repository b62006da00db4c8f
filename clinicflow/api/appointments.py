from fastapi import APIRouter, Depends

from clinicflow.dependencies import Services, get_services
from clinicflow.schemas import StatusUpdateRequest

router = APIRouter()


@router.post("/{external_event_id}/status")
async def update_appointment_status(
    external_event_id: str,
    body: StatusUpdateRequest,
    services: Services = Depends(get_services),
):
    appointment = await services.booking.update_status(external_event_id, body.status)
    return {
        "success": True,
        "externalEventId": appointment.external_event_id,
        "status": appointment.status.value,
    }
