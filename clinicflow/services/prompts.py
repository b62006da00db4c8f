from datetime import date, datetime
from typing import Any, Dict, Optional

from jinja2 import BaseLoader, Environment, Template
from loguru import logger

TRIAGE_TEMPLATE = """You are a medical AI assistant helping to triage patient intake forms for {{ clinic_name }}.

Please analyze the following patient information and provide a structured summary:

PATIENT INFORMATION:
- Name: {{ patient_name or 'Not provided' }}
- Age: {{ age if age is not none else 'Not provided' }}
- Reason for Visit: {{ reason_for_visit or 'Not specified' }}
- Current Medications: {{ current_medications or 'None listed' }}
- Allergies: {{ allergies or 'None listed' }}
- Past Medical Conditions: {{ past_conditions or 'None listed' }}
{% if additional_notes %}
- Additional Notes: {{ additional_notes }}
{% endif %}

Please provide your analysis in the following JSON format:
{
  "summary": "Brief 2-3 sentence summary of the patient's chief complaint and relevant medical history",
  "urgencyLevel": "Low/Moderate/High",
  "riskKeywords": ["list", "of", "concerning", "keywords", "found"],
  "recommendations": "Specific recommendations for the physician",
  "followUpNotes": "Any additional notes for the clinical team"
}

URGENCY GUIDELINES:
- HIGH: Acute or life-threatening symptoms (chest pain, difficulty breathing, severe pain, signs of infection, medication reactions) or a mental health crisis
- MODERATE: Chronic condition management, routine follow-up, mild symptoms
- LOW: Preventive care, routine check-ups, minor concerns

Focus on patient safety and clinical relevance. Be concise but thorough. Respond with the JSON object only."""

WEEKLY_REPORT_TEMPLATE = """You are an AI assistant generating a clinic performance report for {{ clinic_name }}.

CLINIC STATISTICS FOR {{ period_start }} TO {{ period_end }}:
- Total Bookings: {{ stats.totalBookings }}
- Completed Appointments: {{ stats.completedAppointments }}
- No Shows: {{ stats.noShows }}
- Cancelled Appointments: {{ stats.cancelledAppointments }}
- High Risk Triage Cases: {{ stats.highRiskTriage }}
- Reminders Sent: {{ stats.remindersSent }}
- Follow-ups Sent: {{ stats.followUpsSent }}
- No-Show Rate: {{ stats.noShowRate }}%
- Completion Rate: {{ stats.completionRate }}%
- High Risk Percentage: {{ stats.highRiskPercentage }}%
{% if trends %}

OBSERVED TRENDS:
{% for trend in trends %}
- {{ trend }}
{% endfor %}
{% endif %}

Please generate a professional summary report in the following JSON format:
{
  "executiveSummary": "2-3 sentence overview of the period's performance",
  "keyMetrics": {
    "totalVisits": {{ stats.totalBookings }},
    "noShowRate": "{{ stats.noShowRate }}%",
    "highRiskCases": {{ stats.highRiskTriage }},
    "completionRate": "{{ stats.completionRate }}%"
  },
  "trends": "Analysis of the trends above",
  "recommendations": ["List", "of", "actionable", "recommendations"],
  "alerts": ["Any", "concerning", "patterns", "or", "issues"],
  "nextWeekFocus": "Priorities for the upcoming week"
}

Make the report professional, actionable, and focused on improving patient care and clinic operations."""


def calculate_age(dob: str, today: Optional[date] = None) -> Optional[int]:
    if not dob:
        return None
    try:
        birth = datetime.fromisoformat(dob.strip()).date()
    except ValueError:
        return None
    today = today or date.today()
    age = today.year - birth.year - ((today.month, today.day) < (birth.month, birth.day))
    return age if age >= 0 else None


class PromptRenderer:
    """Pre-compiled jinja2 prompt templates for the triage and report calls."""

    def __init__(self, clinic_name: str):
        self.clinic_name = clinic_name
        self.env = Environment(
            loader=BaseLoader(),
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self._triage: Template = self.env.from_string(TRIAGE_TEMPLATE)
        self._weekly_report: Template = self.env.from_string(WEEKLY_REPORT_TEMPLATE)
        logger.debug("Prompt templates compiled")

    def triage_prompt(self, intake: Any, today: Optional[date] = None) -> str:
        return self._triage.render(
            clinic_name=self.clinic_name,
            patient_name=intake.patient_name,
            age=calculate_age(intake.dob, today),
            reason_for_visit=intake.reason_for_visit,
            current_medications=intake.current_medications,
            allergies=intake.allergies,
            past_conditions=intake.past_conditions,
            additional_notes=intake.additional_notes,
        )

    def weekly_report_prompt(self, stats: Dict[str, Any], trends: list, period_start: str, period_end: str) -> str:
        return self._weekly_report.render(
            clinic_name=self.clinic_name,
            stats=stats,
            trends=trends,
            period_start=period_start,
            period_end=period_end,
        )
