"""Manual triggers for the periodic jobs and ad-hoc reports."""

from fastapi import APIRouter, Depends

from clinicflow.dependencies import Services, get_services
from clinicflow.schemas import CustomReminderRequest, CustomReportRequest

router = APIRouter()


@router.post("/reminders")
async def trigger_reminders(services: Services = Depends(get_services)):
    result = await services.scheduler.run_now("reminders")
    return {"success": True, **result.to_dict()}


@router.post("/follow-ups")
async def trigger_follow_ups(services: Services = Depends(get_services)):
    result = await services.scheduler.run_now("follow_ups")
    return {"success": True, **result.to_dict()}


@router.post("/weekly-report")
async def trigger_weekly_report(services: Services = Depends(get_services)):
    report = await services.scheduler.run_now("weekly_report")
    return {"success": True, "report": report}


@router.post("/custom-report")
async def trigger_custom_report(body: CustomReportRequest, services: Services = Depends(get_services)):
    report = await services.reports.generate_custom(body.start_date, body.end_date)
    return {"success": True, "report": report}


@router.post("/custom-reminder")
async def trigger_custom_reminder(body: CustomReminderRequest, services: Services = Depends(get_services)):
    return await services.reminders.schedule_custom_reminder(body.external_event_id, body.hours_before)
