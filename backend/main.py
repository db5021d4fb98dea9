# main.py

import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict, Field

# Import Data Models & Logic
from constants import (
    VERSION,
    Sex,
    CRRTModality,
    DilutionMode,
    FlowUnit,
    DosingMethod,
    ExposureTarget,
    CircuitAge,
    EngineSettings,
)
from models import PatientInput, PKResult, DrugNotFoundError, DataTypeError, CalculationCancelledError
from drug_library import DRUG_LIBRARY
from evidence import check_for_study_updates
from research import InMemoryResearchRepository
from app import DosingService, build_narrative_context

# --- 1. CONFIGURATION & LOGGING ---
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("crrtdose-api")

settings = EngineSettings.from_env()
# Approved studies come from CRRTDOSE_STUDIES_FILE; without it the catalog starts empty
if settings.studies_file:
    research_repository = InMemoryResearchRepository.from_json(settings.studies_file)
else:
    research_repository = InMemoryResearchRepository()
service = DosingService(DRUG_LIBRARY, research_repository, settings)

app = FastAPI(
    title="CRRTDose API",
    version=VERSION,
    description="Antibiotic dosing for critically ill adults on continuous renal replacement therapy. \n\n"
                "**WARNING**: Decision Support Tool Only. Confirm every dose with TDM and clinical judgment.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.get("/")
def read_root():
    return {"status": "active", "message": "CRRTDose API is running successfully!"}

@app.get("/health")
def health_check():
    """K8s/AWS health check"""
    return {"status": "active", "version": VERSION, "module": "crrtdose-pk-engine"}

# --- 2. STRICT INPUT SCHEMA (The Guardrails) ---
class PatientRequest(BaseModel):
    antibiotic_name: str = Field(..., min_length=1, description="e.g. 'vancomycin', 'Piperacillin-Tazobactam'")

    # Demographics with hard physiological limits
    age_years: Optional[float] = Field(None, ge=0, le=120)
    sex: Optional[Sex] = None
    weight_kg: Optional[float] = Field(None, ge=1.0, le=400.0, description="Defaults to 70 kg")
    serum_creatinine_mg_dl: Optional[float] = Field(None, gt=0, le=30.0)

    # CRRT circuit
    crrt_modality: Optional[CRRTModality] = None
    blood_flow_ml_min: Optional[float] = Field(None, ge=0, le=600)
    dialysate_flow: Optional[float] = Field(None, ge=0)
    dialysate_flow_unit: FlowUnit = FlowUnit.ML_KG_HR
    ultrafiltration_ml_hr: Optional[float] = Field(None, ge=0)
    pre_filter_replacement_ml_hr: Optional[float] = Field(None, ge=0)
    post_filter_replacement_ml_hr: Optional[float] = Field(None, ge=0)
    filter_type: Optional[str] = Field(None, description="'high-flux', 'low-flux', 'standard' or a membrane name")
    dilution_mode: DilutionMode = DilutionMode.POST

    # Comorbidities
    liver_disease: bool = False
    heart_disease: bool = False
    heart_failure: bool = False
    sepsis: bool = False
    acute_kidney_injury: bool = False
    ecmo: bool = False
    circuit_age: CircuitAge = CircuitAge.NEW
    tpe: bool = False

    # Microbiology
    mic: Optional[float] = Field(None, gt=0, le=512, description="mg/L")
    microbiological_culture: Optional[str] = None
    infection_type: Optional[str] = None
    source_of_infection: Optional[str] = None

    # Dosing preferences
    preferred_target: Optional[ExposureTarget] = None
    dosing_method: DosingMethod = DosingMethod.BOLUS
    infusion_duration_h: Optional[float] = Field(None, gt=0, le=24)
    infusion_rate_mg_h: Optional[float] = Field(None, gt=0)

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "antibiotic_name": "vancomycin", "weight_kg": 70.0, "crrt_modality": "CVVHD",
            "dialysate_flow": 25, "dialysate_flow_unit": "ml/kg/hr", "filter_type": "high-flux",
            "mic": 1.0,
        }
    })

    def to_patient(self) -> PatientInput:
        return PatientInput(**self.model_dump())

# --- 3. EXPLICIT RESPONSE SCHEMA (The Contract) ---
class ConcentrationPointSchema(BaseModel):
    time: float
    concentration: float

class StudySchema(BaseModel):
    id: str
    title: str
    authors: str
    year: int
    url: Optional[str] = None

class DoseRecommendationSchema(BaseModel):
    dose_mg: float
    interval_h: float
    route: str
    text: str
    target: Optional[ExposureTarget] = None
    clamped: bool
    iterations: int
    extended_infusion_suggestion: Optional[str] = None

class AdjustmentStepSchema(BaseModel):
    label: str
    non_renal_factor: float
    vd_factor: float

class CalculationDetailsSchema(BaseModel):
    patient_weight: float
    crrt_clearance: float
    hepatic_clearance: float
    residual_renal_clearance: float
    egfr: Optional[float] = None
    flow_multiplier: float
    protein_binding_adjustment: float
    sieving_coefficient: Optional[float] = None
    filter_efficiency: str
    volume_of_distribution: float
    elimination_rate: float
    initial_concentration: float
    daily_dose: float
    doses_per_day: float
    time_to_reach_mic: Optional[float] = None
    mic_used: Optional[float] = None
    mic_source: Optional[str] = None
    comorbidity_steps: List[AdjustmentStepSchema]
    defaults_applied: List[str]
    safety_actions: List[str]
    absorption_rate_ka: Optional[float] = None
    bioavailability: Optional[float] = None

class PKResultResponse(BaseModel):
    antibiotic: str
    total_clearance: float
    auc_0_24: float
    percent_time_above_mic: float = Field(..., ge=0, le=100)
    dose_recommendation: str
    rationale: str
    recommendation: DoseRecommendationSchema
    concentration_curve: List[ConcentrationPointSchema]
    evidence_alerts: List[str]
    supporting_studies: List[StudySchema]
    citation_text: str
    evidence_sources: Dict[str, str]
    calculation_details: CalculationDetailsSchema
    inputs_hash: str
    model_version: str

def to_response(antibiotic: str, result: PKResult) -> PKResultResponse:
    """Maps the frozen engine result onto the API contract. No recomputation."""
    rec = result.recommendation
    d = result.calculation_details
    return PKResultResponse(
        antibiotic=antibiotic,
        total_clearance=result.total_clearance,
        auc_0_24=result.auc_0_24,
        percent_time_above_mic=result.percent_time_above_mic,
        dose_recommendation=result.dose_recommendation,
        rationale=result.rationale,
        recommendation=DoseRecommendationSchema(
            dose_mg=rec.dose_mg, interval_h=rec.interval_h, route=rec.route, text=rec.text,
            target=rec.target, clamped=rec.clamped, iterations=rec.iterations,
            extended_infusion_suggestion=rec.extended_infusion_suggestion,
        ),
        concentration_curve=[
            ConcentrationPointSchema(time=p.time, concentration=p.concentration) for p in result.concentration_curve
        ],
        evidence_alerts=list(result.evidence_alerts),
        supporting_studies=[
            StudySchema(id=s.id, title=s.title, authors=s.authors, year=s.year, url=s.url)
            for s in result.supporting_studies
        ],
        citation_text=result.citation_text,
        evidence_sources=dict(result.evidence_sources),
        calculation_details=CalculationDetailsSchema(
            patient_weight=d.patient_weight,
            crrt_clearance=d.crrt_clearance,
            hepatic_clearance=d.hepatic_clearance,
            residual_renal_clearance=d.residual_renal_clearance,
            egfr=d.egfr,
            flow_multiplier=d.flow_multiplier,
            protein_binding_adjustment=d.protein_binding_adjustment,
            sieving_coefficient=d.sieving_coefficient,
            filter_efficiency=d.filter_efficiency,
            volume_of_distribution=d.volume_of_distribution,
            elimination_rate=d.elimination_rate,
            initial_concentration=d.initial_concentration,
            daily_dose=d.daily_dose,
            doses_per_day=d.doses_per_day,
            time_to_reach_mic=d.time_to_reach_mic,
            mic_used=d.mic_used,
            mic_source=d.mic_source,
            comorbidity_steps=[
                AdjustmentStepSchema(label=s.label, non_renal_factor=s.non_renal_factor, vd_factor=s.vd_factor)
                for s in d.comorbidity_steps
            ],
            defaults_applied=list(d.defaults_applied),
            safety_actions=list(d.safety_actions),
            absorption_rate_ka=d.absorption_rate_ka,
            bioavailability=d.bioavailability,
        ),
        inputs_hash=result.audit_log.inputs_hash,
        model_version=result.audit_log.model_version,
    )

def _run(request: PatientRequest):
    """Shared error mapping for every endpoint that runs the engine."""
    try:
        patient = request.to_patient()
        logger.info(f"Calculating {patient.antibiotic_name} | modality={patient.crrt_modality} "
                    f"| wt={patient.weight_kg}")
        return patient, service.calculate(patient)

    except DrugNotFoundError as e:
        logger.warning(f"Unknown drug: {e.drug_name}")
        raise HTTPException(status_code=404, detail=str(e))

    except (ValueError, DataTypeError) as e:
        logger.warning(f"Clinical Validation Error: {str(e)}")
        raise HTTPException(status_code=422, detail=f"Clinical Validation Error: {str(e)}")

    except CalculationCancelledError as e:
        logger.info(f"Calculation cancelled: {str(e)}")
        raise HTTPException(status_code=409, detail=str(e))

    except Exception as e:
        logger.error(f"Internal Engine Failure: {str(e)}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal Pharmacokinetic Engine Error")

# --- 4. ENDPOINTS ---

@app.post("/calculate", response_model=PKResultResponse)
def calculate_dose(request: PatientRequest):
    """
    Runs the CRRT pharmacokinetic engine for one patient/antibiotic pair and
    returns the dose recommendation with its full calculation trace.
    """
    patient, result = _run(request)
    profile = DRUG_LIBRARY.lookup(patient.antibiotic_name)
    return to_response(profile.name, result)

@app.post("/narrative-context")
def narrative_context(request: PatientRequest):
    """
    Structured context for the external narrative-summary generator.
    """
    patient, result = _run(request)
    return build_narrative_context(patient, result)

@app.get("/drugs")
def list_drugs():
    return {"drugs": list(DRUG_LIBRARY.names())}

@app.get("/drugs/{name}")
def get_drug(name: str):
    try:
        profile = DRUG_LIBRARY.lookup(name)
    except DrugNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    pk = profile.pk
    targets = profile.tdm_targets
    return {
        "name": profile.name,
        "standard_dose_mg": pk.standard_dose_mg,
        "interval_h": pk.interval_h,
        "vd_l_per_kg": pk.vd_l_per_kg,
        "protein_binding": pk.protein_binding,
        "crrt_clearance_l_h": pk.crrt_clearance_l_h,
        "half_life_h": pk.half_life_h,
        "mic_breakpoints": dict(profile.mic_breakpoints),
        "dosing_suggestions": list(profile.dosing_suggestions),
        "references": list(profile.references),
        "tdm_targets": {
            key: {"min": rng.min, "max": rng.max, "unit": rng.unit}
            for key, rng in (("trough", targets.trough), ("peak", targets.peak), ("auc", targets.auc),
                             ("percent_time_above_mic", targets.percent_time_above_mic))
            if rng is not None
        },
    }

@app.get("/drugs/{name}/evidence-status")
def evidence_status(name: str):
    """Catalog maintenance hints: stale or missing studies for this drug."""
    try:
        profile = DRUG_LIBRARY.lookup(name)
    except DrugNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return {
        "drug": profile.name,
        "recommendations": check_for_study_updates(research_repository.all(), profile, settings),
    }
