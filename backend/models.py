"""
CRRTDose: Data Dictionary & Variable Definitions
================================================
This module defines the state space of the dosing engine.
It includes Inputs (Bedside), Reference Data (Drug Catalog, Evidence),
per-stage Assessments (Engine) and Outputs (Recommendation + Trace).

NO LOGIC is implemented here beyond input validation. Every object is
frozen: stages hand new values to each other instead of editing shared ones.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional, Tuple

from constants import (
    VERSION,
    Sex,
    CRRTModality,
    DilutionMode,
    FlowUnit,
    DosingMethod,
    ExposureTarget,
    CircuitAge,
    StudyStatus,
)

class DrugNotFoundError(LookupError):
    """Raised when the requested antibiotic has no reference profile. No dose is produced."""

    def __init__(self, drug_name: str):
        super().__init__(f"Drug profile not found for {drug_name}")
        self.drug_name = drug_name

class DataTypeError(TypeError):
    """Raised when inputs are wrong python types (str instead of float)."""
    pass

class CalculationCancelledError(RuntimeError):
    """Raised when the caller cancelled before the curve/dose stages. Nothing partial is returned."""
    pass

def _coerce_enum(enum_cls, value):
    if value is None or isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.lower() == value.strip().lower():
                return member
    raise ValueError(f"Invalid {enum_cls.__name__}: {value!r}")

# --- 1. INPUT LAYER (What the Clinician Enters) ---

@dataclass(frozen=True)
class PatientInput:
    """
    The bedside data for one calculation.
    Every numeric field is optional; the engine substitutes documented defaults
    and records each substitution in the calculation trace.
    """
    antibiotic_name: str

    # Demographics
    age_years: Optional[float] = None
    sex: Optional[Sex] = None
    weight_kg: Optional[float] = None          # Engine default: 70 kg
    serum_creatinine_mg_dl: Optional[float] = None

    # CRRT circuit
    crrt_modality: Optional[CRRTModality] = None
    blood_flow_ml_min: Optional[float] = None
    dialysate_flow: Optional[float] = None
    dialysate_flow_unit: FlowUnit = FlowUnit.ML_KG_HR
    ultrafiltration_ml_hr: Optional[float] = None
    pre_filter_replacement_ml_hr: Optional[float] = None
    post_filter_replacement_ml_hr: Optional[float] = None
    filter_type: Optional[str] = None
    dilution_mode: DilutionMode = DilutionMode.POST

    # Comorbidities
    liver_disease: bool = False
    heart_disease: bool = False
    heart_failure: bool = False
    sepsis: bool = False
    acute_kidney_injury: bool = False
    ecmo: bool = False
    circuit_age: CircuitAge = CircuitAge.NEW
    tpe: bool = False  # Therapeutic plasma exchange

    # Microbiology
    mic: Optional[float] = None
    microbiological_culture: Optional[str] = None
    infection_type: Optional[str] = None
    source_of_infection: Optional[str] = None

    # Dosing preferences
    preferred_target: Optional[ExposureTarget] = None
    dosing_method: DosingMethod = DosingMethod.BOLUS
    infusion_duration_h: Optional[float] = None
    infusion_rate_mg_h: Optional[float] = None

    def __post_init__(self):
        """
        Coerces enum strings and validates types and physiological ranges.
        """
        if not isinstance(self.antibiotic_name, str) or not self.antibiotic_name.strip():
            raise ValueError("antibiotic_name is required")

        enum_fields = {
            'sex': Sex, 'crrt_modality': CRRTModality, 'dialysate_flow_unit': FlowUnit,
            'dilution_mode': DilutionMode, 'circuit_age': CircuitAge,
            'preferred_target': ExposureTarget, 'dosing_method': DosingMethod,
        }
        for name, enum_cls in enum_fields.items():
            object.__setattr__(self, name, _coerce_enum(enum_cls, getattr(self, name)))

        # 1. Type Safety (prevent string math crashes)
        numeric_fields = [
            'age_years', 'weight_kg', 'serum_creatinine_mg_dl', 'blood_flow_ml_min',
            'dialysate_flow', 'ultrafiltration_ml_hr', 'pre_filter_replacement_ml_hr',
            'post_filter_replacement_ml_hr', 'mic', 'infusion_duration_h', 'infusion_rate_mg_h',
        ]
        for name in numeric_fields:
            val = getattr(self, name)
            if val is None:
                continue
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                raise DataTypeError(f"Field '{name}' must be numeric, got {type(val)}")
            if val != val or val in (float("inf"), float("-inf")):
                raise ValueError(f"Field '{name}' must be finite")

        # 2. Range Checks (physiological impossibility only)
        if self.age_years is not None and not (0 <= self.age_years <= 120):
            raise ValueError(f"Invalid age: {self.age_years}")
        if self.weight_kg is not None and not (1.0 <= self.weight_kg <= 400.0):
            raise ValueError(f"Invalid weight: {self.weight_kg}")
        if self.serum_creatinine_mg_dl is not None and not (0 < self.serum_creatinine_mg_dl <= 30.0):
            raise ValueError(f"Invalid serum creatinine: {self.serum_creatinine_mg_dl}")
        if self.mic is not None and self.mic <= 0:
            raise ValueError(f"MIC must be positive, got {self.mic}")

        for name in ['blood_flow_ml_min', 'dialysate_flow', 'ultrafiltration_ml_hr',
                     'pre_filter_replacement_ml_hr', 'post_filter_replacement_ml_hr']:
            val = getattr(self, name)
            if val is not None and val < 0:
                raise ValueError(f"Flow '{name}' cannot be negative: {val}")

        if self.infusion_duration_h is not None and not (0 < self.infusion_duration_h <= 24):
            raise ValueError(f"Invalid infusion duration: {self.infusion_duration_h}")
        if self.infusion_rate_mg_h is not None and self.infusion_rate_mg_h <= 0:
            raise ValueError(f"Invalid infusion rate: {self.infusion_rate_mg_h}")

# --- 2. REFERENCE DATA (Catalog + Evidence) ---

@dataclass(frozen=True)
class PKParameters:
    """Population reference values for one drug. Never edited; stages use dataclasses.replace."""
    standard_dose_mg: float
    interval_h: float
    vd_l_per_kg: float
    protein_binding: float
    crrt_clearance_l_h: float       # Baseline extracorporeal clearance (literature)
    half_life_h: float
    non_renal_clearance_l_h: Optional[float] = None
    hepatic_clearance_l_h: Optional[float] = None
    molecular_weight: Optional[float] = None
    log_p: Optional[float] = None
    absorption_rate_ka: Optional[float] = None
    bioavailability: Optional[float] = None
    salt_factor: float = 1.0

    def __post_init__(self):
        if not (0.0 <= self.protein_binding <= 1.0):
            raise ValueError(f"Protein binding must be within [0, 1], got {self.protein_binding}")
        if self.standard_dose_mg <= 0 or self.interval_h <= 0 or self.vd_l_per_kg <= 0:
            raise ValueError("Standard dose, interval and Vd must be positive")

    @property
    def fraction_unbound(self) -> float:
        return 1.0 - self.protein_binding

    @property
    def doses_per_day(self) -> float:
        return 24.0 / self.interval_h

@dataclass(frozen=True)
class TargetRange:
    min: float
    max: float
    unit: str = ""

    @property
    def midpoint(self) -> float:
        return (self.min + self.max) / 2.0

@dataclass(frozen=True)
class TDMTargets:
    trough: Optional[TargetRange] = None
    peak: Optional[TargetRange] = None
    auc: Optional[TargetRange] = None
    percent_time_above_mic: Optional[TargetRange] = None

@dataclass(frozen=True)
class DrugProfile:
    name: str
    pk: PKParameters
    references: Tuple[str, ...] = ()
    mic_breakpoints: Mapping[str, float] = field(default_factory=dict)
    dosing_suggestions: Tuple[str, ...] = ()
    tdm_targets: TDMTargets = TDMTargets()
    # Literature values that take precedence over the generic tables
    sieving_coefficient_override: Optional[float] = None
    ecmo_clearance_override: Optional[float] = None

@dataclass(frozen=True)
class ApprovedStudy:
    """A curated study from the research catalog (read-only to the engine)."""
    id: str
    title: str
    authors: str
    year: int
    tags: Tuple[str, ...] = ()
    notes: Optional[str] = None
    status: StudyStatus = StudyStatus.APPROVED
    url: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, 'status', _coerce_enum(StudyStatus, self.status))
        object.__setattr__(self, 'tags', tuple(self.tags))

    @property
    def searchable_text(self) -> str:
        return f"{self.title} {' '.join(self.tags)} {self.notes or ''}".lower()

# --- 3. STAGE OUTPUTS (What Each Engine Stage Produces) ---

@dataclass(frozen=True)
class RenalAssessment:
    egfr_ml_min_173: Optional[float]
    residual_clearance_l_h: float
    floor_applied: bool = False
    aki_multiplier_applied: bool = False

@dataclass(frozen=True)
class NormalizedFlows:
    """All circuit flows in L/h."""
    blood_l_h: float
    dialysate_l_h: float
    ultrafiltration_l_h: float
    pre_replacement_l_h: float
    post_replacement_l_h: float

@dataclass(frozen=True)
class ExtracorporealAssessment:
    clearance_l_h: float
    modality: Optional[CRRTModality]
    flows: Optional[NormalizedFlows]
    fraction_unbound: float
    sieving_coefficient: Optional[float]
    high_binding_cap_applied: bool
    used_baseline_fallback: bool
    evidence_factor: float = 1.0
    # Display only
    flow_multiplier: float = 1.0
    filter_efficiency: str = "Standard"

@dataclass(frozen=True)
class AdjustmentStep:
    label: str
    non_renal_factor: float
    vd_factor: float
    non_renal_after_l_h: float
    vd_after_l: float

@dataclass(frozen=True)
class ComorbidityAssessment:
    vd_l: float
    non_renal_clearance_l_h: float
    steps: Tuple[AdjustmentStep, ...] = ()

@dataclass(frozen=True)
class EvidenceEffect:
    description: str
    crrt_clearance_factor: float = 1.0
    protein_binding_factor: float = 1.0
    extended_infusion: bool = False

@dataclass(frozen=True)
class EvidenceAssessment:
    pk: PKParameters
    relevant_studies: Tuple[ApprovedStudy, ...]
    alerts: Tuple[str, ...]
    citation_text: str
    applied_effects: Tuple[EvidenceEffect, ...] = ()
    extended_infusion_supported: bool = False

@dataclass(frozen=True)
class ClearanceSummary:
    non_renal_l_h: float
    residual_renal_l_h: float
    extracorporeal_l_h: float
    total_l_h: float
    augmented: bool = False
    alerts: Tuple[str, ...] = ()

@dataclass(frozen=True)
class AdministrationSpec:
    """How the dose enters the body. Infusion duration None = derive from rate or default."""
    method: DosingMethod = DosingMethod.BOLUS
    infusion_duration_h: Optional[float] = None
    infusion_rate_mg_h: Optional[float] = None
    ka_per_h: float = 1.0
    bioavailability: float = 1.0

@dataclass(frozen=True)
class ConcentrationPoint:
    time: float
    concentration: float

@dataclass(frozen=True)
class DoseRecommendation:
    dose_mg: float
    interval_h: float
    route: str
    text: str
    rationale: str
    target: Optional[ExposureTarget] = None
    clamped: bool = False
    iterations: int = 0
    extended_infusion_suggestion: Optional[str] = None

# --- 4. OUTPUT LAYER (The Auditable Result) ---

@dataclass(frozen=True)
class CalculationTrace:
    """Every intermediate scalar. Audit and testing only; no control flow reads it."""
    patient_weight: float
    crrt_clearance: float
    hepatic_clearance: float           # Non-renal clearance after comorbidities
    residual_renal_clearance: float
    egfr: Optional[float]
    flow_multiplier: float
    protein_binding_adjustment: float  # Fraction unbound used
    sieving_coefficient: Optional[float]
    filter_efficiency: str
    volume_of_distribution: float
    elimination_rate: float
    initial_concentration: float
    daily_dose: float
    doses_per_day: float
    time_to_reach_mic: Optional[float]
    mic_used: Optional[float]
    mic_source: Optional[str]
    normalized_flows: Optional[NormalizedFlows]
    comorbidity_steps: Tuple[AdjustmentStep, ...] = ()
    defaults_applied: Tuple[str, ...] = ()
    safety_actions: Tuple[str, ...] = ()
    absorption_rate_ka: Optional[float] = None   # Extravascular route only
    bioavailability: Optional[float] = None

@dataclass(frozen=True)
class AuditLog:
    action: str = "dose_calculation"
    inputs_hash: str = ""
    model_version: str = VERSION

@dataclass(frozen=True)
class PKResult:
    total_clearance: float
    auc_0_24: float
    percent_time_above_mic: float
    dose_recommendation: str
    rationale: str
    recommendation: DoseRecommendation
    concentration_curve: Tuple[ConcentrationPoint, ...]
    evidence_alerts: Tuple[str, ...]
    supporting_studies: Tuple[ApprovedStudy, ...]
    citation_text: str
    evidence_sources: Mapping[str, str]
    calculation_details: CalculationTrace
    audit_log: AuditLog = AuditLog()
