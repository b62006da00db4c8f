"""
Triage classification of intake forms.

The model's JSON answer is preferred. When it is unavailable or malformed the
classifier degrades step by step:

    ai_model          full JSON object from the model (urgency coerced to the enum)
    ai_partial        incomplete object or fields salvaged from broken JSON,
                      gaps filled by keywords
    keyword_heuristic risk-phrase scan over the patient's free-text answers
    manual_review     fixed Moderate record asking staff to review by hand

classify() never raises.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from loguru import logger

from clinicflow.constants import ClassificationPath, Urgency
from clinicflow.exceptions import ClassifierDegraded, ModelError
from clinicflow.models import IntakeRecord, TriageRecord
from clinicflow.services.llm import CompletionClient
from clinicflow.services.prompts import PromptRenderer
from clinicflow.services.structured_output import (
    coerce_list,
    coerce_text,
    coerce_urgency,
    extract_json_object,
    salvage_fields,
)

RISK_PHRASES = (
    "chest pain",
    "difficulty breathing",
    "shortness of breath",
    "severe pain",
    "emergency",
    "urgent",
    "critical",
    "life threatening",
    "suicide",
    "self harm",
    "medication reaction",
    "allergic reaction",
    "anaphylaxis",
    "stroke",
    "heart attack",
    "severe bleeding",
    "unconscious",
    "high fever",
    "infection",
    "mental health",
)

# Any one of these forces High on the keyword path
CRITICAL_PHRASES = frozenset({
    "chest pain",
    "shortness of breath",
    "difficulty breathing",
    "suicide",
    "self harm",
    "anaphylaxis",
    "stroke",
    "heart attack",
    "severe bleeding",
    "unconscious",
})

HIGH_MATCH_THRESHOLD = 3

MANUAL_REVIEW_SUMMARY = "manual review recommended"
MANUAL_REVIEW_RECOMMENDATIONS = "Review patient information manually"

STRING_FIELDS = ("summary", "urgencyLevel", "recommendations", "followUpNotes")
LIST_FIELDS = ("riskKeywords",)


@dataclass
class TriageAssessment:
    urgency: Urgency
    summary: str
    risk_keywords: List[str]
    recommendations: str
    follow_up_notes: str
    path: ClassificationPath

    @property
    def is_degraded(self) -> bool:
        return self.path.is_degraded

    @property
    def degradation(self) -> Optional[ClassifierDegraded]:
        if not self.is_degraded:
            return None
        return ClassifierDegraded(
            f"Triage fell back to {self.path.value}", details={"urgency": self.urgency.value}
        )

    def to_record(self, intake: IntakeRecord, created_at: Optional[datetime] = None) -> TriageRecord:
        return TriageRecord(
            form_id=intake.form_id,
            urgency=self.urgency,
            processed_by=self.path,
            patient_name=intake.patient_name,
            appointment_date=intake.appointment_date,
            reason_for_visit=intake.reason_for_visit,
            summary=self.summary,
            risk_keywords=list(self.risk_keywords),
            recommendations=self.recommendations,
            follow_up_notes=self.follow_up_notes,
            created_at=created_at or datetime.now(timezone.utc),
        )

    @classmethod
    def from_record(cls, record: TriageRecord) -> "TriageAssessment":
        return cls(
            urgency=record.urgency,
            summary=record.summary,
            risk_keywords=list(record.risk_keywords),
            recommendations=record.recommendations,
            follow_up_notes=record.follow_up_notes,
            path=record.processed_by,
        )


def find_risk_phrases(texts: List[str]) -> List[str]:
    """Risk phrases present in texts, in dictionary order."""
    haystack = " ".join(t for t in texts if t).lower()
    return [phrase for phrase in RISK_PHRASES if phrase in haystack]


def urgency_for_matches(matches: List[str]) -> Urgency:
    if len(matches) >= HIGH_MATCH_THRESHOLD or CRITICAL_PHRASES.intersection(matches):
        return Urgency.HIGH
    if matches:
        return Urgency.MODERATE
    return Urgency.LOW


@dataclass
class _Stats:
    model_answers: int = 0
    partial_answers: int = 0
    heuristic_answers: int = 0
    manual_reviews: int = 0
    model_errors: int = 0

    def as_dict(self) -> Dict[str, int]:
        return dict(self.__dict__)


class TriageClassifier:
    def __init__(
        self,
        llm: Optional[CompletionClient],
        prompts: PromptRenderer,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.llm = llm
        self.prompts = prompts
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.stats = _Stats()

    async def classify(self, intake: IntakeRecord) -> TriageAssessment:
        log = logger.bind(form_id=intake.form_id)
        try:
            response = await self._ask_model(intake)
            assessment = self.parse_response(response, intake)
        except Exception as e:
            log.error(f"Triage classification failed unexpectedly, using manual review: {e}")
            assessment = self.manual_review()

        self._count(assessment.path)
        signal = assessment.degradation
        if signal is not None:
            log.bind(error_type=type(signal).__name__).warning(f"{signal.message} (urgency={assessment.urgency.value})")
        else:
            log.info(f"Triage complete (urgency={assessment.urgency.value})")
        return assessment

    async def _ask_model(self, intake: IntakeRecord) -> Optional[str]:
        if self.llm is None:
            return None
        prompt = self.prompts.triage_prompt(intake, today=self._clock().date())
        try:
            return await self.llm.complete(prompt)
        except ModelError as e:
            self.stats.model_errors += 1
            logger.bind(form_id=intake.form_id).warning(f"Triage model unavailable: {e}")
            return None

    def parse_response(self, response: Optional[str], intake: IntakeRecord) -> TriageAssessment:
        """Apply the parsing policy to a raw model response (None means no response)."""
        if response:
            data = extract_json_object(response)
            if data is not None and all(k in data for k in STRING_FIELDS + LIST_FIELDS):
                return TriageAssessment(
                    urgency=coerce_urgency(data.get("urgencyLevel")),
                    summary=coerce_text(data.get("summary")),
                    risk_keywords=coerce_list(data.get("riskKeywords")),
                    recommendations=coerce_text(data.get("recommendations")),
                    follow_up_notes=coerce_text(data.get("followUpNotes")),
                    path=ClassificationPath.MODEL,
                )
            if data is not None and any(k in data for k in STRING_FIELDS + LIST_FIELDS):
                present = {k: coerce_text(data[k]) for k in STRING_FIELDS if k in data}
                present.update({k: coerce_list(data[k]) for k in LIST_FIELDS if k in data})
                return self._fill_from_heuristic(present, intake)

            salvaged = salvage_fields(response, STRING_FIELDS, LIST_FIELDS)
            if salvaged:
                return self._fill_from_heuristic(salvaged, intake)

        try:
            return self.heuristic(intake)
        except Exception as e:
            logger.error(f"Keyword triage failed: {e}")
            return self.manual_review()

    def _fill_from_heuristic(self, salvaged: Dict, intake: IntakeRecord) -> TriageAssessment:
        fallback = self.heuristic(intake)
        return TriageAssessment(
            urgency=(
                coerce_urgency(salvaged["urgencyLevel"]) if "urgencyLevel" in salvaged else fallback.urgency
            ),
            summary=salvaged.get("summary") or fallback.summary,
            risk_keywords=salvaged["riskKeywords"] if "riskKeywords" in salvaged else fallback.risk_keywords,
            recommendations=salvaged.get("recommendations") or fallback.recommendations,
            follow_up_notes=salvaged.get("followUpNotes") or "Partial AI analysis - verify before the visit",
            path=ClassificationPath.PARTIAL,
        )

    def heuristic(self, intake: IntakeRecord) -> TriageAssessment:
        matches = find_risk_phrases(intake.free_text_fields())
        urgency = urgency_for_matches(matches)

        reason = intake.reason_for_visit.strip() or "reason not specified"
        summary = f"{intake.patient_name} requests a visit for: {reason}."
        if matches:
            summary += f" Risk indicators found: {', '.join(matches)}."
            recommendations = (
                "Review risk indicators promptly and contact the patient before the visit"
                if urgency is Urgency.HIGH
                else "Review risk indicators before the visit"
            )
        else:
            recommendations = "Routine review before the visit"

        return TriageAssessment(
            urgency=urgency,
            summary=summary,
            risk_keywords=matches,
            recommendations=recommendations,
            follow_up_notes="Keyword-based triage - AI analysis unavailable",
            path=ClassificationPath.HEURISTIC,
        )

    @staticmethod
    def manual_review() -> TriageAssessment:
        return TriageAssessment(
            urgency=Urgency.MODERATE,
            summary=MANUAL_REVIEW_SUMMARY,
            risk_keywords=[],
            recommendations=MANUAL_REVIEW_RECOMMENDATIONS,
            follow_up_notes="Automated triage failed - manual review required",
            path=ClassificationPath.MANUAL_REVIEW,
        )

    def _count(self, path: ClassificationPath) -> None:
        if path is ClassificationPath.MODEL:
            self.stats.model_answers += 1
        elif path is ClassificationPath.PARTIAL:
            self.stats.partial_answers += 1
        elif path is ClassificationPath.HEURISTIC:
            self.stats.heuristic_answers += 1
        else:
            self.stats.manual_reviews += 1

    def get_stats(self) -> Dict[str, int]:
        return self.stats.as_dict()
