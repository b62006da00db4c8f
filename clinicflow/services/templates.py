"""
Message templates. Each render_* function is a pure function of its payload
and the clinic identity and returns both an HTML and a plain-text rendering.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from jinja2 import DictLoader, Environment, StrictUndefined

from clinicflow.config import ClinicIdentity
from clinicflow.constants import Urgency

URGENCY_COLORS = {
    Urgency.HIGH: "#dc3545",
    Urgency.MODERATE: "#ffc107",
    Urgency.LOW: "#28a745",
}
BRAND_HEADER = "linear-gradient(135deg, #3CB6AD 0%, #2E8C83 100%)"
ERROR_HEADER = "#dc3545"
NOT_SCHEDULED = "To be scheduled"


@dataclass
class AppointmentDetails:
    patient_name: str
    email: str
    date: str = ""
    time: str = ""
    visit_type: str = ""
    phone: str = ""


@dataclass
class ConfirmationPayload:
    appointment: AppointmentDetails
    urgency: Optional[Urgency] = None


@dataclass
class TriageAlertPayload:
    form_id: str
    patient_name: str
    urgency: Urgency
    summary: str
    risk_keywords: List[str]
    recommendations: str
    follow_up_notes: str = ""
    reason_for_visit: str = ""
    appointment_date: str = ""
    degraded: bool = False


@dataclass
class ReportPayload:
    stats: Dict[str, Any]
    narrative: Dict[str, Any]
    trends: List[str]
    recommendations: List[str]
    period_start: str
    period_end: str
    title: str = "Weekly Clinic Report"


@dataclass
class ErrorPayload:
    error_type: str
    message: str
    stack: str = ""
    context: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class RenderedMessage:
    subject: str
    html: str
    text: str


_HTML_TEMPLATES = {
    "layout.html": """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{% block title %}{% endblock %}</title>
<style>
  body { font-family: Arial, sans-serif; line-height: 1.6; color: #333; }
  .container { max-width: 600px; margin: 0 auto; padding: 20px; }
  .header { background: {{ header_background }}; color: white; padding: 20px; text-align: center; }
  .content { padding: 20px; background-color: #f9f9f9; }
  .box { background-color: white; padding: 15px; border-radius: 5px; margin: 15px 0; }
  .urgent-notice { background-color: #fff3cd; border: 1px solid #ffeaa7; padding: 15px; border-radius: 5px; margin: 15px 0; }
  .error-details { background-color: #f8d7da; padding: 15px; border-radius: 5px; margin: 15px 0; }
  .footer { text-align: center; padding: 20px; font-size: 12px; color: #666; }
</style>
</head>
<body>
<div class="container">
  <div class="header">{% block header %}{% endblock %}</div>
  <div class="content">{% block content %}{% endblock %}</div>
  <div class="footer">{% block footer %}<p>This is an automated message. Please do not reply to this email.</p>{% endblock %}</div>
</div>
</body>
</html>""",
    "appointment_box.html": """<div class="box">
  <h3>Appointment Details</h3>
  <p><strong>Date:</strong> {{ appt.date or not_scheduled }}</p>
  <p><strong>Time:</strong> {{ appt.time or not_scheduled }}</p>
  {% if appt.visit_type %}<p><strong>Visit Type:</strong> {{ appt.visit_type }}</p>{% endif %}
  <p><strong>Location:</strong> {{ clinic.address }}</p>
  <p><strong>Phone:</strong> {{ clinic.phone }}</p>
  <p><strong>Email:</strong> {{ clinic.email }}</p>
</div>""",
    "confirmation.html": """{% extends "layout.html" %}
{% block title %}Appointment Confirmation{% endblock %}
{% block header %}<h1>{{ clinic.name }}</h1><p>Appointment Confirmation</p>{% endblock %}
{% block content %}
<h2>Dear {{ appt.patient_name }},</h2>
<p>{{ intro }}</p>
{% include "appointment_box.html" %}
{% if urgent %}
<div class="urgent-notice">
  <h3>Important Notice</h3>
  <p>Based on your intake form, we recommend that you contact us immediately if your symptoms worsen before your appointment, or seek emergency care if needed.</p>
</div>
{% endif %}
<h3>What to Bring</h3>
<ul><li>Photo ID</li><li>Insurance card</li><li>List of current medications</li><li>Any relevant medical records</li></ul>
<h3>Important Reminders</h3>
<ul>
  <li>Please arrive 15 minutes early for check-in</li>
  <li>If you need to reschedule, please call us at least 24 hours in advance</li>
  <li>If you have any urgent symptoms, please contact us immediately</li>
</ul>
<p>Best regards,<br>{{ clinic.name }}<br>{{ clinic.phone }}<br>{{ clinic.email }}</p>
{% endblock %}
{% block footer %}<p>This is an automated message. Please do not reply to this email.</p><p>&copy; {{ year }} {{ clinic.name }}. All rights reserved.</p>{% endblock %}""",
    "reminder.html": """{% extends "layout.html" %}
{% block title %}Appointment Reminder{% endblock %}
{% block header %}<h1>{{ clinic.name }}</h1><p>Appointment Reminder</p>{% endblock %}
{% block content %}
<h2>Dear {{ appt.patient_name }},</h2>
<p>This is a friendly reminder about your upcoming appointment.</p>
{% include "appointment_box.html" %}
<p>Please arrive 15 minutes early for check-in. If you need to reschedule, please call us as soon as possible.</p>
<p>We look forward to seeing you!</p>
<p>Best regards,<br>{{ clinic.name }}</p>
{% endblock %}""",
    "follow_up.html": """{% extends "layout.html" %}
{% block title %}Thank You{% endblock %}
{% block header %}<h1>Thank You!</h1><p>{{ clinic.name }}</p>{% endblock %}
{% block content %}
<h2>Dear {{ appt.patient_name }},</h2>
<p>Thank you for choosing {{ clinic.name }} for your healthcare needs. We hope your visit was helpful and that you're feeling better.</p>
<h3>Next Steps</h3>
<ul>
  <li>Please follow any instructions provided during your visit</li>
  <li>Take medications as prescribed</li>
  <li>Schedule any recommended follow-up appointments</li>
  <li>Contact us if you have any questions or concerns</li>
</ul>
{% if feedback_url %}
<h3>How We're Doing</h3>
<p>We value your feedback! <a href="{{ feedback_url }}">Leave Feedback</a></p>
{% endif %}
<h3>Need Help?</h3>
<p>Phone: {{ clinic.phone }}<br>Email: {{ clinic.email }}</p>
<p>Best regards,<br>{{ clinic.name }}</p>
{% endblock %}""",
    "triage_alert.html": """{% extends "layout.html" %}
{% block title %}Triage Summary{% endblock %}
{% block header %}<h1>Triage Summary</h1><p>{{ alert.urgency.value }} Priority</p>{% endblock %}
{% block content %}
<div class="box">
  <h3>Patient Information</h3>
  <p><strong>Name:</strong> {{ alert.patient_name }}</p>
  <p><strong>Form ID:</strong> {{ alert.form_id }}</p>
  <p><strong>Appointment Date:</strong> {{ alert.appointment_date or not_scheduled }}</p>
  <p><strong>Reason for Visit:</strong> {{ alert.reason_for_visit }}</p>
</div>
<div class="box">
  <h3>AI Analysis Summary</h3>
  <p><strong>Urgency Level:</strong> {{ alert.urgency.value }}</p>
  <p><strong>Summary:</strong> {{ alert.summary }}</p>
  <p><strong>Risk Keywords:</strong> {{ alert.risk_keywords | join(", ") if alert.risk_keywords else "None identified" }}</p>
  <p><strong>Recommendations:</strong> {{ alert.recommendations }}</p>
  {% if alert.follow_up_notes %}<p><strong>Follow-up Notes:</strong> {{ alert.follow_up_notes }}</p>{% endif %}
  {% if alert.degraded %}<p><em>Automated analysis was degraded; please verify manually.</em></p>{% endif %}
</div>
<p>Please review this information before the patient's appointment.</p>
{% endblock %}
{% block footer %}<p>Generated by {{ clinic.name }} Clinic Automation</p>{% endblock %}""",
    "weekly_report.html": """{% extends "layout.html" %}
{% block title %}{{ report.title }}{% endblock %}
{% block header %}<h1>{{ report.title }}</h1><p>{{ clinic.name }} &middot; {{ report.period_start }} to {{ report.period_end }}</p>{% endblock %}
{% block content %}
<div class="box">
  <h3>Key Metrics</h3>
  <p><strong>Total Bookings:</strong> {{ report.stats.totalBookings }}</p>
  <p><strong>Completed Appointments:</strong> {{ report.stats.completedAppointments }}</p>
  <p><strong>No Shows:</strong> {{ report.stats.noShows }}</p>
  <p><strong>Cancelled:</strong> {{ report.stats.cancelledAppointments }}</p>
  <p><strong>High Risk Triage Cases:</strong> {{ report.stats.highRiskTriage }}</p>
  <p><strong>No-Show Rate:</strong> {{ report.stats.noShowRate }}%</p>
  <p><strong>Completion Rate:</strong> {{ report.stats.completionRate }}%</p>
</div>
<h3>Executive Summary</h3>
<p>{{ report.narrative.executiveSummary }}</p>
<h3>Trends</h3>
<p>{{ report.narrative.trends }}</p>
<h3>Recommendations</h3>
<ul>{% for rec in report.narrative.recommendations %}<li>{{ rec }}</li>{% endfor %}</ul>
{% if report.narrative.alerts %}
<h3>Alerts</h3>
<ul>{% for alert in report.narrative.alerts %}<li>{{ alert }}</li>{% endfor %}</ul>
{% endif %}
<h3>Next Week Focus</h3>
<p>{{ report.narrative.nextWeekFocus }}</p>
{% endblock %}
{% block footer %}<p>Generated by {{ clinic.name }} Clinic Automation</p>{% endblock %}""",
    "error_alert.html": """{% extends "layout.html" %}
{% block title %}System Error Alert{% endblock %}
{% block header %}<h1>System Error Alert</h1><p>{{ clinic.name }} Automation System</p>{% endblock %}
{% block content %}
<div class="error-details">
  <h3>Error Details</h3>
  <p><strong>Type:</strong> {{ error.error_type }}</p>
  <p><strong>Time:</strong> {{ error.timestamp.isoformat() }}</p>
  <p><strong>Message:</strong> {{ error.message }}</p>
  {% for key, value in error.context.items() %}<p><strong>{{ key }}:</strong> {{ value }}</p>{% endfor %}
  {% if error.stack %}<p><strong>Stack Trace:</strong></p><pre>{{ error.stack }}</pre>{% endif %}
</div>
<p>Please investigate this error and take appropriate action.</p>
{% endblock %}
{% block footer %}<p>Generated by {{ clinic.name }} Clinic Automation</p>{% endblock %}""",
}

_TEXT_TEMPLATES = {
    "appointment_box.txt": """APPOINTMENT DETAILS:
Date: {{ appt.date or not_scheduled }}
Time: {{ appt.time or not_scheduled }}
{% if appt.visit_type %}
Visit Type: {{ appt.visit_type }}
{% endif %}
Location: {{ clinic.address }}
Phone: {{ clinic.phone }}
Email: {{ clinic.email }}
""",
    "confirmation.txt": """Dear {{ appt.patient_name }},

{{ intro }}

{% include "appointment_box.txt" %}

{% if urgent %}
IMPORTANT: Based on your intake form, please contact us immediately if your symptoms worsen before your appointment, or seek emergency care if needed.

{% endif %}
WHAT TO BRING:
- Photo ID
- Insurance card
- List of current medications
- Any relevant medical records

IMPORTANT REMINDERS:
- Please arrive 15 minutes early for check-in
- If you need to reschedule, please call us at least 24 hours in advance
- If you have any urgent symptoms, please contact us immediately

Best regards,
{{ clinic.name }}
{{ clinic.phone }}
{{ clinic.email }}

This is an automated message. Please do not reply to this email.
""",
    "reminder.txt": """Dear {{ appt.patient_name }},

This is a friendly reminder about your upcoming appointment.

{% include "appointment_box.txt" %}

Please arrive 15 minutes early for check-in. If you need to reschedule, please call us as soon as possible.

We look forward to seeing you!

Best regards,
{{ clinic.name }}

This is an automated reminder. Please do not reply to this email.
""",
    "follow_up.txt": """Dear {{ appt.patient_name }},

Thank you for choosing {{ clinic.name }} for your healthcare needs. We hope your visit was helpful and that you're feeling better.

NEXT STEPS:
- Please follow any instructions provided during your visit
- Take medications as prescribed
- Schedule any recommended follow-up appointments
- Contact us if you have any questions or concerns

{% if feedback_url %}
HOW WE'RE DOING:
We value your feedback! Please let us know about your experience: {{ feedback_url }}

{% endif %}
NEED HELP?
Phone: {{ clinic.phone }}
Email: {{ clinic.email }}

Best regards,
{{ clinic.name }}

This is an automated message. Please do not reply to this email.
""",
    "triage_alert.txt": """TRIAGE SUMMARY - {{ alert.urgency.value | upper }} PRIORITY

Patient Information:
Name: {{ alert.patient_name }}
Form ID: {{ alert.form_id }}
Appointment Date: {{ alert.appointment_date or not_scheduled }}
Reason for Visit: {{ alert.reason_for_visit }}

AI Analysis Summary:
Urgency Level: {{ alert.urgency.value }}
Summary: {{ alert.summary }}
Risk Keywords: {{ alert.risk_keywords | join(", ") if alert.risk_keywords else "None identified" }}
Recommendations: {{ alert.recommendations }}
{% if alert.follow_up_notes %}
Follow-up Notes: {{ alert.follow_up_notes }}
{% endif %}
{% if alert.degraded %}
Note: automated analysis was degraded; please verify manually.
{% endif %}

Please review this information before the patient's appointment.
""",
    "weekly_report.txt": """{{ report.title | upper }} - {{ clinic.name }}
Period: {{ report.period_start }} to {{ report.period_end }}

Key Metrics:
- Total Bookings: {{ report.stats.totalBookings }}
- Completed Appointments: {{ report.stats.completedAppointments }}
- No Shows: {{ report.stats.noShows }}
- Cancelled: {{ report.stats.cancelledAppointments }}
- High Risk Triage Cases: {{ report.stats.highRiskTriage }}
- No-Show Rate: {{ report.stats.noShowRate }}%
- Completion Rate: {{ report.stats.completionRate }}%

Executive Summary:
{{ report.narrative.executiveSummary }}

Trends:
{{ report.narrative.trends }}

Recommendations:
{% for rec in report.narrative.recommendations %}
- {{ rec }}
{% endfor %}
{% if report.narrative.alerts %}

Alerts:
{% for alert in report.narrative.alerts %}
- {{ alert }}
{% endfor %}
{% endif %}

Next Week Focus:
{{ report.narrative.nextWeekFocus }}
""",
    "error_alert.txt": """SYSTEM ERROR ALERT - {{ clinic.name | upper }} AUTOMATION SYSTEM

Error Details:
Type: {{ error.error_type }}
Time: {{ error.timestamp.isoformat() }}
Message: {{ error.message }}
{% for key, value in error.context.items() %}
{{ key }}: {{ value }}
{% endfor %}
{% if error.stack %}

Stack Trace:
{{ error.stack }}
{% endif %}

Please investigate this error and take appropriate action.
""",
}

_html_env = Environment(loader=DictLoader(_HTML_TEMPLATES), autoescape=True, undefined=StrictUndefined)
_text_env = Environment(
    loader=DictLoader(_TEXT_TEMPLATES),
    autoescape=False,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)


def _render(name: str, subject: str, **context) -> RenderedMessage:
    context.setdefault("not_scheduled", NOT_SCHEDULED)
    context.setdefault("header_background", BRAND_HEADER)
    return RenderedMessage(
        subject=subject,
        html=_html_env.get_template(f"{name}.html").render(**context),
        text=_text_env.get_template(f"{name}.txt").render(**context),
    )


def render_confirmation(payload: ConfirmationPayload, clinic: ClinicIdentity, booking: bool = False) -> RenderedMessage:
    appt = payload.appointment
    intro = (
        "Thank you for booking with us. Your appointment is confirmed."
        if booking
        else "Thank you for scheduling your appointment with us. We have received your intake form and look forward to seeing you."
    )
    return _render(
        "confirmation",
        f"Appointment Confirmation - {appt.patient_name}",
        clinic=clinic,
        appt=appt,
        intro=intro,
        urgent=payload.urgency is Urgency.HIGH,
        year=datetime.now(timezone.utc).year,
    )


def render_reminder(appt: AppointmentDetails, clinic: ClinicIdentity) -> RenderedMessage:
    return _render(
        "reminder",
        f"Appointment Reminder - {appt.date} at {appt.time}",
        clinic=clinic,
        appt=appt,
    )


def render_follow_up(appt: AppointmentDetails, clinic: ClinicIdentity) -> RenderedMessage:
    return _render(
        "follow_up",
        f"Thank you for visiting {clinic.name}",
        clinic=clinic,
        appt=appt,
        feedback_url=f"{clinic.website}/feedback" if clinic.website else "",
    )


def render_triage_alert(alert: TriageAlertPayload, clinic: ClinicIdentity) -> RenderedMessage:
    return _render(
        "triage_alert",
        f"Triage Alert - {alert.urgency.value} Priority - {alert.patient_name}",
        clinic=clinic,
        alert=alert,
        header_background=URGENCY_COLORS[alert.urgency],
    )


def render_weekly_report(report: ReportPayload, clinic: ClinicIdentity) -> RenderedMessage:
    return _render(
        "weekly_report",
        f"{report.title} - {report.period_start} to {report.period_end}",
        clinic=clinic,
        report=report,
    )


def render_error_alert(error: ErrorPayload, clinic: ClinicIdentity) -> RenderedMessage:
    return _render(
        "error_alert",
        f"System Error Alert - {error.error_type}",
        clinic=clinic,
        error=error,
        header_background=ERROR_HEADER,
    )
