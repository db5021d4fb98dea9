import os
from dataclasses import dataclass
from datetime import date
from enum import Enum
from types import MappingProxyType
from typing import Optional

VERSION = "1.0.0"

class Sex(Enum):
    MALE = "male"
    FEMALE = "female"

class CRRTModality(Enum):
    CVVH = "CVVH"       # Convection
    CVVHD = "CVVHD"     # Diffusion
    CVVHDF = "CVVHDF"   # Convection + Diffusion
    PIRRT = "PIRRT"     # Prolonged intermittent
    SLED = "SLED"       # Sustained low-efficiency

class DilutionMode(Enum):
    PRE = "pre"
    POST = "post"

class FlowUnit(Enum):
    ML_HR = "ml/hr"
    ML_KG_HR = "ml/kg/hr"

class DosingMethod(Enum):
    BOLUS = "bolus"
    INFUSION = "infusion"
    EXTRAVASCULAR = "extravascular"

class ExposureTarget(Enum):
    AUC = "auc"
    TIME_ABOVE_MIC = "time_above_mic"
    PEAK_TROUGH = "peak_trough"

class CircuitAge(Enum):
    NEW = "new"
    USED = "used"

class StudyStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVOKED = "revoked"

class PK_CONSTANTS:
    DEFAULT_WEIGHT_KG = 70.0
    DEFAULT_NON_RENAL_CLEARANCE_L_H = 0.3

    # Flow defaults when the bedside settings are blank
    DEFAULT_BLOOD_FLOW_ML_MIN = 150.0
    DEFAULT_EFFLUENT_ML_KG_HR = 25.0  # KDIGO delivered dose
    PIRRT_DIALYSATE_CAP_L_H = 0.3
    INTERMITTENT_EFFICIENCY = 0.8     # PIRRT / SLED time-averaged efficiency

    # Residual native kidney function (L/h)
    RESIDUAL_RENAL_FLOOR_L_H = 0.1
    RESIDUAL_RENAL_CAP_L_H = 0.3
    AKI_RESIDUAL_MULTIPLIER = 1.2

    # Augmented renal clearance
    ARC_EGFR_THRESHOLD = 130.0
    ARC_MULTIPLIER = 1.5

    # Highly bound drugs barely cross the membrane
    HIGH_BINDING_THRESHOLD = 0.8
    HIGH_BINDING_CAP = 0.8
    LOW_BINDING_THRESHOLD = 0.3

    # Reporting only (never fed back into clearance)
    FLOW_MULTIPLIER_BLOOD_BASELINE_ML_MIN = 150.0
    FLOW_MULTIPLIER_BLOOD_CAP = 1.5
    FLOW_MULTIPLIER_DIALYSATE_BASELINE_ML_KG_HR = 25.0
    FLOW_MULTIPLIER_DIALYSATE_CAP = 1.3

    # Administration defaults
    DEFAULT_INFUSION_DURATION_H = 1.0
    DEFAULT_KA_PER_H = 1.0
    DEFAULT_BIOAVAILABILITY = 1.0

    # Dose solver
    DOSE_ROUNDING_MG = 250.0
    MIN_DOSE_FRACTION = 0.5
    MAX_DOSE_FRACTION = 3.0
    AUC_TOXICITY_REDUCTION = 0.75
    MIC_OVERDOSE_REDUCTION = 0.8
    MIC_ESCALATION_STEP = 1.25
    MIC_MAX_ITERATIONS = 10
    LOW_TIME_ABOVE_MIC_ALERT_PCT = 40.0

class COMORBIDITY_FACTORS:
    """
    Multiplicative adjustments, applied in the order listed.
    (non_renal_factor, vd_factor)
    """
    ELDERLY_AGE = 65
    VERY_ELDERLY_AGE = 80
    ELDERLY = (0.85, 0.95)
    VERY_ELDERLY = (0.85, 0.9)
    FEMALE = (1.0, 0.9)
    LIVER_DISEASE = (0.7, 1.0)
    SEPSIS = (0.7, 1.0)
    HEART_DISEASE = (0.8, 1.1)
    HEART_FAILURE = (0.6, 1.2)

class ECMO_FACTORS:
    LIPOPHILIC_VD_MULTIPLIER = 1.5
    LIPOPHILIC_LOG_P = 0.0      # logP above this is lipophilic (Vd step and sequestration tier)
    HIGH_SEQUESTRATION = 0.3    # Highly bound AND lipophilic
    MODERATE_SEQUESTRATION = 0.9
    NO_SEQUESTRATION = 1.0
    USED_CIRCUIT = 0.9

class SIEVING_TABLE:
    """
    Sieving coefficient by filter class and protein binding class.
    """
    HIGH_FLUX = "high-flux"
    LOW_FLUX = "low-flux"
    STANDARD = "standard"

    SPECS = MappingProxyType({
        HIGH_FLUX: MappingProxyType({"low": 0.9, "moderate": 0.7, "high": 0.3}),
        LOW_FLUX: MappingProxyType({"low": 0.7, "moderate": 0.5, "high": 0.2}),
        STANDARD: MappingProxyType({"low": 0.85, "moderate": 0.6, "high": 0.25}),
    })

    # Membrane names seen at the bedside -> filter class
    ALIASES = MappingProxyType({
        "high-flux": HIGH_FLUX, "high flux": HIGH_FLUX, "highflux": HIGH_FLUX,
        "an69": HIGH_FLUX, "polysulfone": HIGH_FLUX, "pes": HIGH_FLUX,
        "oxiris": HIGH_FLUX, "prismaflex m100": HIGH_FLUX,
        "low-flux": LOW_FLUX, "low flux": LOW_FLUX, "lowflux": LOW_FLUX,
        "cellulose": LOW_FLUX,
    })

    @staticmethod
    def filter_class(filter_type: Optional[str]) -> str:
        if not filter_type:
            return SIEVING_TABLE.STANDARD
        return SIEVING_TABLE.ALIASES.get(filter_type.strip().lower(), SIEVING_TABLE.STANDARD)

    @staticmethod
    def binding_class(protein_binding: float) -> str:
        if protein_binding > PK_CONSTANTS.HIGH_BINDING_THRESHOLD:
            return "high"
        if protein_binding < PK_CONSTANTS.LOW_BINDING_THRESHOLD:
            return "low"
        return "moderate"

    @staticmethod
    def get(filter_type: Optional[str], protein_binding: float) -> float:
        table = SIEVING_TABLE.SPECS[SIEVING_TABLE.filter_class(filter_type)]
        return table[SIEVING_TABLE.binding_class(protein_binding)]

class EVIDENCE_KEYWORDS:
    CRRT_TERMS = ("crrt", "continuous renal replacement", "dialysis", "hemofiltration", "cvvh")
    MIC_TERM = "mic"
    STALE_STUDY_YEARS = 3

@dataclass(frozen=True)
class EngineSettings:
    """Runtime knobs. Clinical constants stay in the classes above."""
    research_timeout_s: float = 2.0
    evidence_recency_years: int = 2
    # Pin for reproducible evidence alerts; None means "this year"
    reference_year: Optional[int] = None
    curve_step_h: float = 0.5
    curve_window_h: float = 24.0
    clearance_epsilon_l_h: float = 1e-3
    mic_search_step_h: float = 0.05
    # JSON list of approved studies loaded by the API at startup
    studies_file: Optional[str] = None

    def resolved_reference_year(self) -> int:
        return self.reference_year if self.reference_year is not None else date.today().year

    @classmethod
    def from_env(cls) -> "EngineSettings":
        ref = os.getenv("CRRTDOSE_REFERENCE_YEAR")
        return cls(
            research_timeout_s=float(os.getenv("CRRTDOSE_RESEARCH_TIMEOUT_S", "2.0")),
            evidence_recency_years=int(os.getenv("CRRTDOSE_EVIDENCE_RECENCY_YEARS", "2")),
            reference_year=int(ref) if ref else None,
            studies_file=os.getenv("CRRTDOSE_STUDIES_FILE") or None,
        )

DEFAULT_SETTINGS = EngineSettings()
