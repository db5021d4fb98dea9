# evidence.py
import logging
from dataclasses import replace
from typing import Iterable, List, Optional, Protocol, Sequence, Tuple

from constants import EVIDENCE_KEYWORDS, PK_CONSTANTS, StudyStatus, EngineSettings, DEFAULT_SETTINGS
from models import ApprovedStudy, DrugProfile, EvidenceAssessment, EvidenceEffect, PKParameters

logger = logging.getLogger("crrtdose-evidence")

class EvidenceEffectExtractor(Protocol):
    """Turns one study into numeric nudges. Swap the implementation to change the evidence model."""

    def extract(self, study: ApprovedStudy) -> List[EvidenceEffect]:
        ...

class KeywordEvidenceExtractor:
    """
    Keyword rules over title + notes.
    These rules are heuristics, not findings read from the study.
    """

    def extract(self, study: ApprovedStudy) -> List[EvidenceEffect]:
        text = f"{study.title} {study.notes or ''}".lower()
        effects = []
        if "clearance" in text and "increase" in text:
            effects.append(EvidenceEffect(
                description=f"{study.authors} ({study.year}): increased CRRT clearance (+10%)",
                crrt_clearance_factor=1.1,
            ))
        if "protein binding" in text and "decrease" in text:
            effects.append(EvidenceEffect(
                description=f"{study.authors} ({study.year}): decreased protein binding (-10%)",
                protein_binding_factor=0.9,
            ))
        if "extended infusion" in text or "continuous infusion" in text:
            effects.append(EvidenceEffect(
                description=f"{study.authors} ({study.year}): supports extended/continuous infusion",
                extended_infusion=True,
            ))
        return effects

def drug_tokens(profile: DrugProfile) -> Tuple[str, ...]:
    """'Piperacillin-Tazobactam' -> ('piperacillin-tazobactam', 'piperacillin', 'tazobactam')"""
    name = profile.name.lower()
    parts = [p for p in name.replace("/", "-").replace(" ", "-").split("-") if len(p) >= 4]
    return tuple(dict.fromkeys([name] + parts))

def find_relevant_studies(studies: Iterable[ApprovedStudy], profile: DrugProfile) -> Tuple[ApprovedStudy, ...]:
    """Approved studies that mention the drug AND a CRRT term (case-insensitive substring match)."""
    tokens = drug_tokens(profile)
    relevant = []
    for study in studies:
        if study.status != StudyStatus.APPROVED:
            continue
        text = study.searchable_text
        drug_match = any(token in text for token in tokens)
        crrt_match = any(term in text for term in EVIDENCE_KEYWORDS.CRRT_TERMS)
        if drug_match and crrt_match:
            relevant.append(study)
    return tuple(relevant)

def citation_text(studies: Sequence[ApprovedStudy]) -> str:
    if not studies:
        return "No platform studies available for this combination"
    return "Based on platform studies: " + "; ".join(f"{s.authors} ({s.year})" for s in studies)

def mic_alerts(relevant_studies: Sequence[ApprovedStudy], mic: Optional[float],
               percent_time_above_mic: float) -> List[str]:
    """Post-calculation alert: low %T>MIC and the catalog holds MIC-specific studies."""
    if mic is None or percent_time_above_mic >= PK_CONSTANTS.LOW_TIME_ABOVE_MIC_ALERT_PCT:
        return []
    mic_studies = [
        s for s in relevant_studies
        if EVIDENCE_KEYWORDS.MIC_TERM in s.title.lower() or EVIDENCE_KEYWORDS.MIC_TERM in (s.notes or "").lower()
    ]
    if mic_studies:
        return ["MIC-specific studies available - optimize dosing based on platform research"]
    return []

def check_for_study_updates(studies: Iterable[ApprovedStudy], profile: DrugProfile,
                            settings: EngineSettings = DEFAULT_SETTINGS) -> List[str]:
    """Catalog maintenance hints for one drug."""
    relevant = find_relevant_studies(studies, profile)
    year = settings.resolved_reference_year()
    recommendations = []

    old = [s for s in relevant if s.year < year - EVIDENCE_KEYWORDS.STALE_STUDY_YEARS]
    if old:
        recommendations.append(f"Consider updating {len(old)} studies older than {EVIDENCE_KEYWORDS.STALE_STUDY_YEARS} years")

    if relevant and not any(s.year >= year - 1 for s in relevant):
        recommendations.append("No studies from the last year - search for recent publications")

    if not relevant:
        recommendations.append("No platform studies available - prioritize finding and uploading relevant research")
    return recommendations

class EvidenceAdjustmentStage:
    """
    Pre-pass over the baseline parameters: the returned PKParameters is a new
    object; the catalog entry and the study snapshot are left untouched.
    """

    def __init__(self, extractor: Optional[EvidenceEffectExtractor] = None):
        self.extractor = extractor or KeywordEvidenceExtractor()

    def assess(self, profile: DrugProfile, studies: Sequence[ApprovedStudy],
               settings: EngineSettings = DEFAULT_SETTINGS) -> EvidenceAssessment:
        relevant = find_relevant_studies(studies, profile)
        pk: PKParameters = profile.pk
        alerts = []
        effects = []

        if not relevant:
            alerts.append("No platform studies found for this drug/CRRT combination - consider standard guidelines")
            logger.info(f"No platform evidence for {profile.name}")
            return EvidenceAssessment(
                pk=pk,
                relevant_studies=(),
                alerts=tuple(alerts),
                citation_text=citation_text(()),
            )

        for study in relevant:
            for effect in self.extractor.extract(study):
                effects.append(effect)
                pk = replace(
                    pk,
                    crrt_clearance_l_h=pk.crrt_clearance_l_h * effect.crrt_clearance_factor,
                    protein_binding=min(max(pk.protein_binding * effect.protein_binding_factor, 0.0), 1.0),
                )

        year = settings.resolved_reference_year()
        recent = [s for s in relevant if s.year >= year - settings.evidence_recency_years]
        if not recent:
            alerts.append(f"Available studies are >{settings.evidence_recency_years} years old - "
                          f"consider searching for newer evidence")
        else:
            alerts.append(f"{len(recent)} recent study(ies) support current recommendations")

        if len(relevant) > 1:
            alerts.append(f"{len(relevant)} studies available - review for consistency")

        logger.debug(f"{profile.name}: {len(relevant)} studies, {len(effects)} effects applied")

        return EvidenceAssessment(
            pk=pk,
            relevant_studies=relevant,
            alerts=tuple(alerts),
            citation_text=citation_text(relevant),
            applied_effects=tuple(effects),
            extended_infusion_supported=any(e.extended_infusion for e in effects),
        )
