# app.py
"""
CRRTDose: Orchestrator
======================
Runs one dose calculation end to end:

    evidence pre-pass -> renal + machine clearance -> comorbidities
    -> aggregation -> curve / %T>MIC / AUC -> dose solver -> PKResult

Each call builds its own working copies; the drug catalog and the study
snapshot are only ever read.
"""

import hashlib
import logging
import threading
from dataclasses import asdict
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Optional, Sequence, Tuple

from constants import PK_CONSTANTS, DosingMethod, EngineSettings, DEFAULT_SETTINGS, VERSION
from core_pk import CRRTPharmacokineticEngine
from drug_library import DRUG_LIBRARY
from evidence import EvidenceAdjustmentStage, mic_alerts
from models import (
    PatientInput,
    DrugProfile,
    ApprovedStudy,
    AdministrationSpec,
    CalculationTrace,
    AuditLog,
    PKResult,
    CalculationCancelledError,
)
from protocols import DoseSolver
from research import ResearchRepository, fetch_study_snapshot
from safety import SafetySupervisor

logger = logging.getLogger("crrtdose-engine")

def _check_cancelled(cancel_event: Optional[threading.Event], stage: str) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info(f"Calculation cancelled before {stage}")
        raise CalculationCancelledError(f"Calculation cancelled before {stage}")

def resolve_mic(patient: PatientInput, profile: DrugProfile) -> Tuple[Optional[float], Optional[str]]:
    """
    Patient MIC first; otherwise the catalog breakpoint for the cultured organism.
    Returns (mic, source).
    """
    if patient.mic is not None:
        return float(patient.mic), "patient"

    culture = (patient.microbiological_culture or "").strip().lower()
    if culture:
        for organism, breakpoint in profile.mic_breakpoints.items():
            if organism.lower() == culture or organism.lower() in culture:
                return float(breakpoint), f"breakpoint ({organism})"
    return None, None

def build_administration(patient: PatientInput, profile: DrugProfile, defaults: List[str]) -> AdministrationSpec:
    """
    ka and F only shape the extravascular curve; their fallbacks are recorded
    only when that route is used.
    """
    pk = profile.pk
    ka = pk.absorption_rate_ka
    bioavailability = pk.bioavailability
    extravascular = patient.dosing_method == DosingMethod.EXTRAVASCULAR

    if ka is None:
        ka = PK_CONSTANTS.DEFAULT_KA_PER_H
        if extravascular:
            defaults.append(f"ka={ka:g} /h (no reference value)")
    if bioavailability is None:
        bioavailability = PK_CONSTANTS.DEFAULT_BIOAVAILABILITY
        if extravascular:
            defaults.append(f"bioavailability={bioavailability:g} (no reference value)")

    return AdministrationSpec(
        method=patient.dosing_method,
        infusion_duration_h=patient.infusion_duration_h,
        infusion_rate_mg_h=patient.infusion_rate_mg_h,
        ka_per_h=ka,
        bioavailability=bioavailability,
    )

def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value

def inputs_hash(patient: PatientInput, studies: Sequence[ApprovedStudy]) -> str:
    """Stable fingerprint of everything the result depends on."""
    payload = repr((
        sorted(_jsonable(asdict(patient)).items()),
        sorted((s.id, s.year, s.title, s.notes or "") for s in studies),
        VERSION,
    ))
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()

def compute_dosing(patient: PatientInput, drug_library=DRUG_LIBRARY,
                   approved_studies: Sequence[ApprovedStudy] = (),
                   settings: Optional[EngineSettings] = None,
                   cancel_event: Optional[threading.Event] = None) -> PKResult:
    """
    The single entry point of the engine.
    Raises DrugNotFoundError before any computation if the drug is unknown.
    """
    settings = settings or DEFAULT_SETTINGS
    profile = drug_library.lookup(patient.antibiotic_name)
    studies = tuple(approved_studies)
    defaults = []
    actions = []

    logger.debug(f"Calculating {profile.name} for {len(studies)} catalog studies")

    # 1. Evidence pre-pass (works on a copy of the PK parameters)
    evidence = EvidenceAdjustmentStage().assess(profile, studies, settings)
    pk = evidence.pk

    # 2. Clearance streams
    weight = CRRTPharmacokineticEngine.resolve_weight(patient, defaults)
    renal = CRRTPharmacokineticEngine.assess_renal_function(patient)
    if renal.floor_applied:
        defaults.append(f"residual_renal_clearance={PK_CONSTANTS.RESIDUAL_RENAL_FLOOR_L_H:g} L/h "
                        f"(age, sex or creatinine missing)")

    machine = CRRTPharmacokineticEngine.calculate_extracorporeal_clearance(patient, profile, pk, weight, defaults)

    baseline_non_renal = CRRTPharmacokineticEngine.baseline_non_renal_clearance(pk, defaults)
    vd_baseline = pk.vd_l_per_kg * weight
    body = CRRTPharmacokineticEngine.apply_comorbidity_adjustments(
        patient, profile, pk, vd_baseline, baseline_non_renal
    )
    vd = SafetySupervisor.guard_divisor(body.vd_l, settings.clearance_epsilon_l_h, "volume_of_distribution", actions)

    clearance = CRRTPharmacokineticEngine.aggregate_clearance(
        body.non_renal_clearance_l_h,
        renal.residual_clearance_l_h,
        machine.clearance_l_h,
        renal.egfr_ml_min_173,
        settings.clearance_epsilon_l_h,
        actions,
    )
    total_cl = clearance.total_l_h
    ke = total_cl / vd

    _check_cancelled(cancel_event, "concentration curve")

    # 3. Exposure of the standard regimen
    mic, mic_source = resolve_mic(patient, profile)
    admin = build_administration(patient, profile, defaults)
    standard_dose = profile.pk.standard_dose_mg
    interval = profile.pk.interval_h

    curve = CRRTPharmacokineticEngine.simulate_concentration_profile(
        standard_dose, vd, ke, interval, admin, settings.curve_step_h, settings.curve_window_h
    )

    percent_above = 0.0
    time_to_mic = None
    if mic is not None:
        percent_above, _, time_to_mic = CRRTPharmacokineticEngine.percent_time_above_mic(
            standard_dose, vd, ke, mic, interval, admin, settings.mic_search_step_h
        )

    daily_dose = standard_dose * profile.pk.doses_per_day
    auc = CRRTPharmacokineticEngine.calculate_auc_0_24(daily_dose, total_cl)

    _check_cancelled(cancel_event, "dose solving")

    # 4. Dose recommendation
    recommendation = DoseSolver.recommend(
        profile, total_cl, vd, ke, admin, mic, patient.preferred_target,
        extended_infusion_supported=evidence.extended_infusion_supported,
        settings=settings,
    )

    rationale_parts = []
    if profile.dosing_suggestions:
        rationale_parts.append(profile.dosing_suggestions[0] + ".")
    rationale_parts.append(recommendation.rationale)
    rationale_parts.extend(SafetySupervisor.clinical_notes(patient, profile))
    if mic is not None and percent_above < PK_CONSTANTS.LOW_TIME_ABOVE_MIC_ALERT_PCT:
        rationale_parts.append(
            f"Low %T>MIC ({percent_above:.0f}%) - consider extended infusion or dose increase."
        )
    if recommendation.extended_infusion_suggestion:
        rationale_parts.append(recommendation.extended_infusion_suggestion)
    rationale = " ".join(part for part in rationale_parts if part)

    alerts = list(evidence.alerts) + list(clearance.alerts)
    alerts += mic_alerts(evidence.relevant_studies, mic, percent_above)

    from_evidence = "platform studies + literature" if evidence.applied_effects else "literature"
    reference = profile.references[0] if profile.references else "catalog"
    evidence_sources = MappingProxyType({
        "volume_of_distribution": f"{profile.name} reference Vd {profile.pk.vd_l_per_kg:g} L/kg ({reference})",
        "clearance": f"CRRT clearance: {from_evidence}",
        "sieving_coefficient": (
            "drug-specific literature value" if profile.sieving_coefficient_override is not None
            else "filter/protein-binding table" if machine.sieving_coefficient is not None
            else "not applied (modality unspecified)"
        ),
        "protein_binding": f"{pk.protein_binding:.0%} bound ({from_evidence})",
    })

    auc = SafetySupervisor.finite_or_default(auc, 0.0, "auc_0_24", actions)
    percent_above = min(max(percent_above, 0.0), 100.0)

    trace = CalculationTrace(
        patient_weight=weight,
        crrt_clearance=clearance.extracorporeal_l_h,
        hepatic_clearance=clearance.non_renal_l_h,
        residual_renal_clearance=clearance.residual_renal_l_h,
        egfr=renal.egfr_ml_min_173,
        flow_multiplier=machine.flow_multiplier,
        protein_binding_adjustment=machine.fraction_unbound,
        sieving_coefficient=machine.sieving_coefficient,
        filter_efficiency=machine.filter_efficiency,
        volume_of_distribution=vd,
        elimination_rate=ke,
        initial_concentration=curve[0].concentration if curve else 0.0,
        daily_dose=daily_dose,
        doses_per_day=profile.pk.doses_per_day,
        time_to_reach_mic=time_to_mic,
        mic_used=mic,
        mic_source=mic_source,
        normalized_flows=machine.flows,
        comorbidity_steps=body.steps,
        defaults_applied=tuple(defaults),
        safety_actions=tuple(actions),
        absorption_rate_ka=admin.ka_per_h if admin.method == DosingMethod.EXTRAVASCULAR else None,
        bioavailability=admin.bioavailability if admin.method == DosingMethod.EXTRAVASCULAR else None,
    )

    if defaults:
        logger.warning(f"{profile.name}: defaults applied: {'; '.join(defaults)}")

    return PKResult(
        total_clearance=total_cl,
        auc_0_24=auc,
        percent_time_above_mic=percent_above,
        dose_recommendation=recommendation.text,
        rationale=rationale,
        recommendation=recommendation,
        concentration_curve=curve,
        evidence_alerts=tuple(alerts),
        supporting_studies=evidence.relevant_studies,
        citation_text=evidence.citation_text,
        evidence_sources=evidence_sources,
        calculation_details=trace,
        audit_log=AuditLog(inputs_hash=inputs_hash(patient, studies)),
    )

class DosingService:
    """
    Binds the engine to a catalog and a research repository.
    Safe to share across threads: every call works on its own snapshot.
    """

    def __init__(self, drug_library=DRUG_LIBRARY, research_repository: Optional[ResearchRepository] = None,
                 settings: Optional[EngineSettings] = None):
        self.drug_library = drug_library
        self.research_repository = research_repository
        self.settings = settings or DEFAULT_SETTINGS

    def snapshot(self, drug_name: str) -> Tuple[ApprovedStudy, ...]:
        return fetch_study_snapshot(self.research_repository, drug_name, self.settings.research_timeout_s)

    def calculate(self, patient: PatientInput, cancel_event: Optional[threading.Event] = None) -> PKResult:
        # Unknown drug fails before the research read
        self.drug_library.lookup(patient.antibiotic_name)
        studies = self.snapshot(patient.antibiotic_name)
        return compute_dosing(patient, self.drug_library, studies, self.settings, cancel_event)

def build_narrative_context(patient: PatientInput, result: PKResult) -> Dict[str, Any]:
    """
    Structured, JSON-safe context for the external narrative generator.
    Numbers are passed through as computed; no recomputation happens here.
    """
    details = result.calculation_details
    return {
        "patient": _jsonable(asdict(patient)),
        "pk_summary": {
            "total_clearance_l_h": round(result.total_clearance, 3),
            "auc_0_24": round(result.auc_0_24, 1),
            "percent_time_above_mic": round(result.percent_time_above_mic, 1),
            "volume_of_distribution_l": round(details.volume_of_distribution, 2),
            "elimination_rate_per_h": round(details.elimination_rate, 4),
            "mic_used": details.mic_used,
            "mic_source": details.mic_source,
        },
        "recommendation": {
            "text": result.dose_recommendation,
            "dose_mg": result.recommendation.dose_mg,
            "interval_h": result.recommendation.interval_h,
            "target": result.recommendation.target.value if result.recommendation.target else None,
            "clamped": result.recommendation.clamped,
            "extended_infusion_suggestion": result.recommendation.extended_infusion_suggestion,
            "rationale": result.rationale,
        },
        "evidence": {
            "alerts": list(result.evidence_alerts),
            "citation_text": result.citation_text,
            "studies": [
                {"title": s.title, "authors": s.authors, "year": s.year} for s in result.supporting_studies
            ],
        },
        "defaults_applied": list(details.defaults_applied),
        "safety_actions": list(details.safety_actions),
        "model_version": result.audit_log.model_version,
    }
