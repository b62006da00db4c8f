import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from loguru import logger

from clinicflow.constants import DuplicateIntakePolicy


def validate_env_vars(required_vars: List[str]) -> Tuple[bool, List[str]]:
    missing = [var for var in required_vars if not os.getenv(var)]
    return len(missing) == 0, missing


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_optional(name: str) -> Optional[str]:
    value = os.getenv(name, "").strip()
    return value or None


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("true", "1", "yes")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}")


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


@dataclass(frozen=True)
class ClinicIdentity:
    """Clinic details rendered into every outbound message."""
    name: str = "Clinic"
    email: str = "clinic@example.com"
    phone: str = ""
    address: str = ""
    website: str = ""
    staff_email: str = ""
    admin_email: str = ""

    @property
    def staff_recipient(self) -> str:
        return self.staff_email or self.email

    @property
    def admin_recipient(self) -> str:
        return self.admin_email or self.email


@dataclass(frozen=True)
class ModelSettings:
    use_local: bool = False
    local_endpoint: str = "http://localhost:1234/v1/chat/completions"
    api_key: Optional[str] = None
    model_name: str = "gpt-4o-mini"
    temperature: float = 0.3
    max_tokens: int = 1000
    timeout_ms: int = 30000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000

    @property
    def is_configured(self) -> bool:
        return self.use_local or bool(self.api_key)


@dataclass(frozen=True)
class SMTPSettings:
    host: str = "smtp.gmail.com"
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.username and self.password)


@dataclass(frozen=True)
class Settings:
    """Process-wide configuration, immutable after startup."""
    env: str = "local"
    clinic: ClinicIdentity = field(default_factory=ClinicIdentity)
    model: ModelSettings = field(default_factory=ModelSettings)
    smtp: SMTPSettings = field(default_factory=SMTPSettings)
    timezone: str = "America/New_York"
    reminder_hours_before: int = 48
    max_pipeline_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    webhook_timeout_seconds: float = 60.0
    duplicate_intake_policy: DuplicateIntakePolicy = DuplicateIntakePolicy.IGNORE
    store_backend: str = "workbook"
    store_path: str = "data/clinic.xlsx"
    calendar_id: Optional[str] = None
    calendar_token: Optional[str] = None
    calendly_api_token: Optional[str] = None
    calendly_webhook_secret: Optional[str] = None
    scheduler_enabled: bool = True
    follow_up_schedule: str = "daily"
    follow_up_hour: int = 10
    weekly_report_weekday: int = 0
    weekly_report_hour: int = 9
    allowed_origins: Tuple[str, ...] = ()
    webhook_rate_limit: str = "60/minute"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @property
    def calendar_enabled(self) -> bool:
        return bool(self.calendar_id and self.calendar_token)


def load_settings() -> Settings:
    """Assemble Settings from the environment (and a local .env file if present)."""
    load_dotenv()

    clinic_email = _env_str("CLINIC_EMAIL", "clinic@example.com")
    clinic = ClinicIdentity(
        name=_env_str("CLINIC_NAME", "Clinic"),
        email=clinic_email,
        phone=_env_str("CLINIC_PHONE"),
        address=_env_str("CLINIC_ADDRESS"),
        website=_env_str("CLINIC_WEBSITE").rstrip("/"),
        staff_email=_env_str("CLINIC_STAFF_EMAIL"),
        admin_email=_env_str("ADMIN_EMAIL"),
    )
    model = ModelSettings(
        use_local=_env_bool("USE_LOCAL_AI", False),
        local_endpoint=_env_str("LOCAL_AI_URL", ModelSettings.local_endpoint),
        api_key=_env_optional("OPENAI_API_KEY"),
        model_name=_env_str("AI_MODEL", ModelSettings.model_name),
        timeout_ms=_env_int("MODEL_TIMEOUT_MS", 30000),
    )
    smtp = SMTPSettings(
        host=_env_str("SMTP_HOST", "smtp.gmail.com"),
        port=_env_int("SMTP_PORT", 587),
        username=_env_optional("SMTP_USERNAME"),
        password=_env_optional("SMTP_PASSWORD"),
    )

    policy_raw = _env_str("DUPLICATE_INTAKE_POLICY", "ignore").lower()
    try:
        policy = DuplicateIntakePolicy(policy_raw)
    except ValueError:
        raise RuntimeError(f"DUPLICATE_INTAKE_POLICY must be 'ignore' or 'reject', got {policy_raw!r}")

    store_backend = _env_str("STORE_BACKEND", "workbook").lower()
    if store_backend not in ("workbook", "memory"):
        raise RuntimeError(f"STORE_BACKEND must be 'workbook' or 'memory', got {store_backend!r}")

    follow_up_schedule = _env_str("FOLLOW_UP_SCHEDULE", "daily").lower()
    if follow_up_schedule not in ("hourly", "daily"):
        raise RuntimeError(f"FOLLOW_UP_SCHEDULE must be 'hourly' or 'daily', got {follow_up_schedule!r}")

    timezone_name = _env_str("CLINIC_TIMEZONE", "America/New_York")
    try:
        ZoneInfo(timezone_name)
    except ZoneInfoNotFoundError:
        raise RuntimeError(f"CLINIC_TIMEZONE is not a known time zone: {timezone_name!r}")

    origins = tuple(o.strip() for o in _env_str("ALLOWED_ORIGINS").split(",") if o.strip())

    return Settings(
        env=_env_str("ENV", "local"),
        clinic=clinic,
        model=model,
        smtp=smtp,
        timezone=timezone_name,
        reminder_hours_before=_env_int("REMINDER_HOURS_BEFORE", 48),
        max_pipeline_retries=_env_int("MAX_PIPELINE_RETRIES", 3),
        retry_base_delay_seconds=_env_float("RETRY_BASE_DELAY_SECONDS", 1.0),
        webhook_timeout_seconds=_env_float("WEBHOOK_TIMEOUT_SECONDS", 60.0),
        duplicate_intake_policy=policy,
        store_backend=store_backend,
        store_path=_env_str("STORE_PATH", "data/clinic.xlsx"),
        calendar_id=_env_optional("GOOGLE_CALENDAR_ID"),
        calendar_token=_env_optional("GOOGLE_CALENDAR_TOKEN"),
        calendly_api_token=_env_optional("CALENDLY_API_TOKEN"),
        calendly_webhook_secret=_env_optional("CALENDLY_WEBHOOK_SECRET"),
        scheduler_enabled=_env_bool("SCHEDULER_ENABLED", True),
        follow_up_schedule=follow_up_schedule,
        follow_up_hour=_env_int("FOLLOW_UP_HOUR", 10),
        weekly_report_weekday=_env_int("WEEKLY_REPORT_WEEKDAY", 0),
        weekly_report_hour=_env_int("WEEKLY_REPORT_HOUR", 9),
        allowed_origins=origins,
        webhook_rate_limit=_env_str("WEBHOOK_RATE_LIMIT", "60/minute"),
    )


def validate_startup(settings: Settings) -> None:
    logger.info("Validating clinicflow configuration...")

    if settings.env == "production" and not settings.smtp.is_configured:
        raise RuntimeError("SMTP_USERNAME and SMTP_PASSWORD are required in production")

    if settings.reminder_hours_before <= 0:
        raise RuntimeError("REMINDER_HOURS_BEFORE must be positive")
    if settings.max_pipeline_retries < 1:
        raise RuntimeError("MAX_PIPELINE_RETRIES must be at least 1")

    logger.info(f"✓ Store backend: {settings.store_backend}")
    logger.info(f"✓ Clinic time zone: {settings.timezone}")

    if settings.model.is_configured:
        target = settings.model.local_endpoint if settings.model.use_local else settings.model.model_name
        logger.info(f"✓ Triage model: {target}")
    else:
        logger.warning("No model configured (set OPENAI_API_KEY or USE_LOCAL_AI) - keyword triage only")

    if not settings.smtp.is_configured:
        logger.warning("SMTP not configured - messages go to the in-memory outbox")
    if not settings.calendar_enabled:
        logger.warning("Google Calendar not configured - calendar entries are skipped")
    if not settings.calendly_webhook_secret:
        logger.warning("CALENDLY_WEBHOOK_SECRET not set - booking webhooks are not signature checked")

    logger.info("Configuration validation complete")
