"""
CRRTDose: Core Pharmacokinetic Engine
=====================================
The mathematical core that translates bedside inputs into clearance streams,
exposure metrics and a concentration-time profile.

One compartment, first-order elimination. Every method is a pure function of
its arguments; corrections are reported through the 'defaults'/'actions'
lists the caller owns.
"""

import logging
import math
from typing import List, Optional, Tuple

from models import (
    PatientInput,
    DrugProfile,
    PKParameters,
    RenalAssessment,
    NormalizedFlows,
    ExtracorporealAssessment,
    AdjustmentStep,
    ComorbidityAssessment,
    ClearanceSummary,
    AdministrationSpec,
    ConcentrationPoint,
)
from constants import (
    PK_CONSTANTS,
    COMORBIDITY_FACTORS,
    ECMO_FACTORS,
    SIEVING_TABLE,
    Sex,
    CRRTModality,
    DilutionMode,
    FlowUnit,
    DosingMethod,
    CircuitAge,
)
from safety import SafetySupervisor

logger = logging.getLogger("crrtdose-engine")

class CRRTPharmacokineticEngine:
    """
    The Mathematical Core.
    Patient + Drug + Circuit -> Clearance Streams -> Exposure -> Curve.
    """

    @staticmethod
    def resolve_weight(patient: PatientInput, defaults: List[str]) -> float:
        if patient.weight_kg is None:
            defaults.append(f"weight_kg={PK_CONSTANTS.DEFAULT_WEIGHT_KG:g} (not provided)")
            return PK_CONSTANTS.DEFAULT_WEIGHT_KG
        return float(patient.weight_kg)

    # --- 1. NATIVE KIDNEY ---

    @staticmethod
    def estimate_egfr(age_years: Optional[float], sex: Optional[Sex],
                      serum_creatinine_mg_dl: Optional[float]) -> Optional[float]:
        """
        eGFR (mL/min/1.73m²) by the 2021 race-free CKD-EPI creatinine equation.
        Returns None if any input is missing.
        """
        if age_years is None or sex is None or serum_creatinine_mg_dl is None:
            return None

        is_female = sex == Sex.FEMALE
        kappa = 0.7 if is_female else 0.9
        alpha = -0.241 if is_female else -0.302
        ratio = serum_creatinine_mg_dl / kappa

        egfr = (142.0
                * min(ratio, 1.0) ** alpha
                * max(ratio, 1.0) ** -1.200
                * 0.9938 ** age_years)
        if is_female:
            egfr *= 1.012
        return egfr

    @staticmethod
    def assess_renal_function(patient: PatientInput) -> RenalAssessment:
        """
        Residual native clearance (L/h). CRRT patients keep very little.
        Missing labs -> conservative floor, never an error.
        """
        egfr = CRRTPharmacokineticEngine.estimate_egfr(
            patient.age_years, patient.sex, patient.serum_creatinine_mg_dl
        )
        if egfr is None:
            return RenalAssessment(
                egfr_ml_min_173=None,
                residual_clearance_l_h=PK_CONSTANTS.RESIDUAL_RENAL_FLOOR_L_H,
                floor_applied=True,
            )

        residual = min(egfr / 100.0, PK_CONSTANTS.RESIDUAL_RENAL_CAP_L_H)
        if patient.acute_kidney_injury:
            residual *= PK_CONSTANTS.AKI_RESIDUAL_MULTIPLIER

        return RenalAssessment(
            egfr_ml_min_173=egfr,
            residual_clearance_l_h=residual,
            aki_multiplier_applied=patient.acute_kidney_injury,
        )

    # --- 2. THE MACHINE ---

    @staticmethod
    def normalize_flows(patient: PatientInput, weight_kg: float) -> Tuple[NormalizedFlows, Tuple[str, ...]]:
        """
        Converts every circuit flow to L/h.
        Returns the flows and the names of the ones that fell back to defaults.
        """
        defaulted = []

        if patient.blood_flow_ml_min is None:
            blood_ml_min = PK_CONSTANTS.DEFAULT_BLOOD_FLOW_ML_MIN
            defaulted.append("blood_flow")
        else:
            blood_ml_min = patient.blood_flow_ml_min
        blood_l_h = blood_ml_min * 60.0 / 1000.0

        effluent_default_l_h = PK_CONSTANTS.DEFAULT_EFFLUENT_ML_KG_HR * weight_kg / 1000.0

        if patient.dialysate_flow is None:
            dialysate_l_h = effluent_default_l_h
            defaulted.append("dialysate_flow")
        elif patient.dialysate_flow_unit == FlowUnit.ML_KG_HR:
            dialysate_l_h = patient.dialysate_flow * weight_kg / 1000.0
        else:
            dialysate_l_h = patient.dialysate_flow / 1000.0

        pre_l_h = (patient.pre_filter_replacement_ml_hr or 0.0) / 1000.0
        post_l_h = (patient.post_filter_replacement_ml_hr or 0.0) / 1000.0

        # In CVVH the effluent equals replacement when no net removal is charted
        if patient.ultrafiltration_ml_hr is not None:
            uf_l_h = patient.ultrafiltration_ml_hr / 1000.0
        elif pre_l_h + post_l_h > 0:
            uf_l_h = pre_l_h + post_l_h
        else:
            uf_l_h = effluent_default_l_h
            defaulted.append("ultrafiltration")

        flows = NormalizedFlows(
            blood_l_h=blood_l_h,
            dialysate_l_h=dialysate_l_h,
            ultrafiltration_l_h=uf_l_h,
            pre_replacement_l_h=pre_l_h,
            post_replacement_l_h=post_l_h,
        )
        return flows, tuple(defaulted)

    @staticmethod
    def _predilution_factor(flows: NormalizedFlows) -> float:
        """Q_blood / (Q_blood + Q_replacement). Pre-filter fluid dilutes what reaches the membrane."""
        replacement = flows.pre_replacement_l_h if flows.pre_replacement_l_h > 0 else flows.ultrafiltration_l_h
        denom = flows.blood_l_h + replacement
        if denom <= 0:
            return 1.0
        return flows.blood_l_h / denom

    @staticmethod
    def _flow_report(flows: NormalizedFlows, weight_kg: float, filter_type: Optional[str]) -> Tuple[float, str]:
        """
        Display-only circuit intensity. Never fed back into clearance.
        """
        blood_ml_min = flows.blood_l_h * 1000.0 / 60.0
        dialysate_ml_kg_hr = flows.dialysate_l_h * 1000.0 / weight_kg

        multiplier = min(blood_ml_min / PK_CONSTANTS.FLOW_MULTIPLIER_BLOOD_BASELINE_ML_MIN,
                         PK_CONSTANTS.FLOW_MULTIPLIER_BLOOD_CAP)
        multiplier *= min(dialysate_ml_kg_hr / PK_CONSTANTS.FLOW_MULTIPLIER_DIALYSATE_BASELINE_ML_KG_HR,
                          PK_CONSTANTS.FLOW_MULTIPLIER_DIALYSATE_CAP)

        if multiplier >= 1.2:
            level = "High"
        elif multiplier >= 0.9:
            level = "Standard"
        else:
            level = "Reduced"
        return multiplier, f"{level} efficiency ({SIEVING_TABLE.filter_class(filter_type)} filter)"

    @staticmethod
    def calculate_extracorporeal_clearance(patient: PatientInput, profile: DrugProfile, pk: PKParameters,
                                           weight_kg: float, defaults: List[str]) -> ExtracorporealAssessment:
        """
        Machine clearance (L/h) by modality.
        'pk' is the evidence-adjusted copy; 'profile' supplies literature overrides.
        """
        fub = pk.fraction_unbound
        modality = patient.crrt_modality

        if modality is None:
            defaults.append(f"crrt_modality unspecified: baseline CRRT clearance {pk.crrt_clearance_l_h:g} L/h")
            return ExtracorporealAssessment(
                clearance_l_h=pk.crrt_clearance_l_h,
                modality=None,
                flows=None,
                fraction_unbound=fub,
                sieving_coefficient=None,
                high_binding_cap_applied=False,
                used_baseline_fallback=True,
            )

        flows, defaulted = CRRTPharmacokineticEngine.normalize_flows(patient, weight_kg)
        pre_dilution = patient.dilution_mode == DilutionMode.PRE

        needs = {
            CRRTModality.CVVHD: ("dialysate_flow",),
            CRRTModality.CVVH: ("ultrafiltration", "blood_flow") if pre_dilution else ("ultrafiltration",),
            CRRTModality.CVVHDF: ("dialysate_flow", "ultrafiltration", "blood_flow") if pre_dilution
                                 else ("dialysate_flow", "ultrafiltration"),
            CRRTModality.PIRRT: ("dialysate_flow",),
            CRRTModality.SLED: ("dialysate_flow",),
        }[modality]
        for name in defaulted:
            if name == "blood_flow" and name in needs:
                defaults.append(f"blood_flow={PK_CONSTANTS.DEFAULT_BLOOD_FLOW_ML_MIN:g} mL/min (not provided)")
            elif name in needs:
                defaults.append(f"{name}={PK_CONSTANTS.DEFAULT_EFFLUENT_ML_KG_HR:g} mL/kg/h (not provided)")

        diffusive = fub * flows.dialysate_l_h
        convective = fub * flows.ultrafiltration_l_h
        if pre_dilution:
            convective *= CRRTPharmacokineticEngine._predilution_factor(flows)

        if modality == CRRTModality.CVVHD:
            clearance = diffusive
        elif modality == CRRTModality.CVVH:
            clearance = convective
        elif modality == CRRTModality.CVVHDF:
            clearance = diffusive + convective
        elif modality == CRRTModality.PIRRT:
            clearance = (fub * min(flows.dialysate_l_h, PK_CONSTANTS.PIRRT_DIALYSATE_CAP_L_H)
                         * PK_CONSTANTS.INTERMITTENT_EFFICIENCY)
        else:  # SLED
            clearance = fub * flows.dialysate_l_h * PK_CONSTANTS.INTERMITTENT_EFFICIENCY

        # Sieving: literature value first, generic table otherwise
        if profile.sieving_coefficient_override is not None:
            sieving = profile.sieving_coefficient_override
        else:
            sieving = SIEVING_TABLE.get(patient.filter_type, pk.protein_binding)
        clearance *= sieving

        capped = pk.protein_binding > PK_CONSTANTS.HIGH_BINDING_THRESHOLD
        if capped:
            clearance *= PK_CONSTANTS.HIGH_BINDING_CAP

        # Platform evidence scales the machine stream by the same ratio it moved the baseline
        evidence_factor = 1.0
        if profile.pk.crrt_clearance_l_h > 0:
            evidence_factor = pk.crrt_clearance_l_h / profile.pk.crrt_clearance_l_h
        clearance *= evidence_factor

        multiplier, label = CRRTPharmacokineticEngine._flow_report(flows, weight_kg, patient.filter_type)

        logger.debug(f"{modality.value}: fub={fub:.2f} SC={sieving:.2f} -> CL_ec={clearance:.3f} L/h")

        return ExtracorporealAssessment(
            clearance_l_h=clearance,
            modality=modality,
            flows=flows,
            fraction_unbound=fub,
            sieving_coefficient=sieving,
            high_binding_cap_applied=capped,
            used_baseline_fallback=False,
            evidence_factor=evidence_factor,
            flow_multiplier=multiplier,
            filter_efficiency=label,
        )

    # --- 3. THE PATIENT'S BODY ---

    @staticmethod
    def baseline_non_renal_clearance(pk: PKParameters, defaults: List[str]) -> float:
        if pk.non_renal_clearance_l_h is not None:
            return pk.non_renal_clearance_l_h
        if pk.hepatic_clearance_l_h is not None:
            return pk.hepatic_clearance_l_h
        defaults.append(f"non_renal_clearance={PK_CONSTANTS.DEFAULT_NON_RENAL_CLEARANCE_L_H:g} L/h (no reference value)")
        return PK_CONSTANTS.DEFAULT_NON_RENAL_CLEARANCE_L_H

    @staticmethod
    def _ecmo_sequestration_factor(profile: DrugProfile, pk: PKParameters) -> Tuple[float, str]:
        if profile.ecmo_clearance_override is not None:
            return profile.ecmo_clearance_override, "literature"

        log_p = pk.log_p if pk.log_p is not None else 0.0
        if pk.protein_binding > PK_CONSTANTS.HIGH_BINDING_THRESHOLD and log_p > ECMO_FACTORS.LIPOPHILIC_LOG_P:
            return ECMO_FACTORS.HIGH_SEQUESTRATION, "high binding + lipophilic"
        if pk.protein_binding >= PK_CONSTANTS.LOW_BINDING_THRESHOLD or log_p > ECMO_FACTORS.LIPOPHILIC_LOG_P:
            return ECMO_FACTORS.MODERATE_SEQUESTRATION, "moderate"
        return ECMO_FACTORS.NO_SEQUESTRATION, "hydrophilic, low binding"

    @staticmethod
    def apply_comorbidity_adjustments(patient: PatientInput, profile: DrugProfile, pk: PKParameters,
                                      vd_l: float, non_renal_l_h: float) -> ComorbidityAssessment:
        """
        Fixed-order multiplicative adjustments of Vd and non-renal clearance.
        Order: age, sex, liver, sepsis, heart disease, heart failure, ECMO.
        """
        steps = []
        vd = vd_l
        non_renal = non_renal_l_h

        def apply(label: str, factors: Tuple[float, float]):
            nonlocal vd, non_renal
            nr_factor, vd_factor = factors
            non_renal *= nr_factor
            vd *= vd_factor
            steps.append(AdjustmentStep(label, nr_factor, vd_factor, non_renal, vd))

        if patient.age_years is not None:
            if patient.age_years >= COMORBIDITY_FACTORS.VERY_ELDERLY_AGE:
                apply("age>=80", COMORBIDITY_FACTORS.VERY_ELDERLY)
            elif patient.age_years >= COMORBIDITY_FACTORS.ELDERLY_AGE:
                apply("age>=65", COMORBIDITY_FACTORS.ELDERLY)

        if patient.sex == Sex.FEMALE:
            apply("female", COMORBIDITY_FACTORS.FEMALE)
        if patient.liver_disease:
            apply("liver_disease", COMORBIDITY_FACTORS.LIVER_DISEASE)
        if patient.sepsis:
            apply("sepsis", COMORBIDITY_FACTORS.SEPSIS)
        if patient.heart_disease:
            apply("heart_disease", COMORBIDITY_FACTORS.HEART_DISEASE)
        if patient.heart_failure:
            apply("heart_failure", COMORBIDITY_FACTORS.HEART_FAILURE)

        # ECMO sub-stage
        if patient.ecmo:
            if pk.log_p is not None and pk.log_p > ECMO_FACTORS.LIPOPHILIC_LOG_P:
                apply("ecmo_lipophilic_vd", (1.0, ECMO_FACTORS.LIPOPHILIC_VD_MULTIPLIER))
            factor, tier = CRRTPharmacokineticEngine._ecmo_sequestration_factor(profile, pk)
            apply(f"ecmo_sequestration ({tier})", (factor, 1.0))
            if patient.circuit_age == CircuitAge.USED:
                apply("ecmo_used_circuit", (ECMO_FACTORS.USED_CIRCUIT, 1.0))

        return ComorbidityAssessment(vd_l=vd, non_renal_clearance_l_h=non_renal, steps=tuple(steps))

    # --- 4. SUMMATION ---

    @staticmethod
    def aggregate_clearance(non_renal_l_h: float, residual_l_h: float, extracorporeal_l_h: float,
                            egfr: Optional[float], epsilon: float, actions: List[str]) -> ClearanceSummary:
        non_renal = SafetySupervisor.non_negative(non_renal_l_h, "non_renal_clearance", actions)
        residual = SafetySupervisor.non_negative(residual_l_h, "residual_renal_clearance", actions)
        extracorporeal = SafetySupervisor.non_negative(extracorporeal_l_h, "extracorporeal_clearance", actions)

        total = non_renal + residual + extracorporeal
        alerts = []
        augmented = egfr is not None and egfr > PK_CONSTANTS.ARC_EGFR_THRESHOLD
        if augmented:
            total *= PK_CONSTANTS.ARC_MULTIPLIER
            alerts.append(
                f"Augmented renal clearance suspected (eGFR {egfr:.0f} mL/min/1.73m²): "
                f"total clearance increased x{PK_CONSTANTS.ARC_MULTIPLIER:g}"
            )
            logger.info(f"ARC branch: eGFR={egfr:.0f}")

        total = SafetySupervisor.guard_divisor(total, epsilon, "total_clearance", actions)
        return ClearanceSummary(
            non_renal_l_h=non_renal,
            residual_renal_l_h=residual,
            extracorporeal_l_h=extracorporeal,
            total_l_h=total,
            augmented=augmented,
            alerts=tuple(alerts),
        )

    # --- 5. EXPOSURE ---

    @staticmethod
    def resolve_infusion_duration(dose_mg: float, admin: AdministrationSpec) -> float:
        if admin.infusion_duration_h is not None:
            return admin.infusion_duration_h
        if admin.infusion_rate_mg_h:
            return dose_mg / admin.infusion_rate_mg_h
        return PK_CONSTANTS.DEFAULT_INFUSION_DURATION_H

    @staticmethod
    def concentration_at(t: float, dose_mg: float, vd_l: float, ke: float, admin: AdministrationSpec) -> float:
        """
        C(t) in mg/L for one dose given at t=0. Floored at zero.
        """
        if t < 0:
            return 0.0

        if admin.method == DosingMethod.INFUSION:
            duration = CRRTPharmacokineticEngine.resolve_infusion_duration(dose_mg, admin)
            ko = admin.infusion_rate_mg_h if admin.infusion_rate_mg_h else dose_mg / duration
            plateau = ko / (ke * vd_l)
            if t <= duration:
                conc = plateau * (1.0 - math.exp(-ke * t))
            else:
                end_of_infusion = plateau * (1.0 - math.exp(-ke * duration))
                conc = end_of_infusion * math.exp(-ke * (t - duration))

        elif admin.method == DosingMethod.EXTRAVASCULAR:
            ka = admin.ka_per_h
            absorbed = admin.bioavailability * dose_mg
            if math.isclose(ka, ke, rel_tol=1e-9, abs_tol=1e-12):
                # Degenerate limit ka -> ke
                conc = absorbed * ka * t / vd_l * math.exp(-ke * t)
            else:
                conc = (absorbed * ka / (vd_l * (ka - ke))) * (math.exp(-ke * t) - math.exp(-ka * t))

        else:
            conc = (dose_mg / vd_l) * math.exp(-ke * t)

        return max(0.0, conc)

    @staticmethod
    def simulate_concentration_profile(dose_mg: float, vd_l: float, ke: float, interval_h: float,
                                       admin: AdministrationSpec, step_h: float = 0.5,
                                       window_h: float = 24.0) -> Tuple[ConcentrationPoint, ...]:
        """
        Samples one representative dosing interval, repeated across the window
        (time wrapped modulo the interval, no accumulation between doses).
        """
        n_steps = int(round(window_h / step_h))
        points = []
        for i in range(n_steps + 1):
            t = i * step_h
            cycle_time = t % interval_h
            conc = CRRTPharmacokineticEngine.concentration_at(cycle_time, dose_mg, vd_l, ke, admin)
            points.append(ConcentrationPoint(time=round(t, 6), concentration=conc))
        return tuple(points)

    @staticmethod
    def calculate_auc_0_24(daily_dose_mg: float, clearance_l_h: float) -> float:
        return daily_dose_mg / clearance_l_h

    @staticmethod
    def percent_time_above_mic(dose_mg: float, vd_l: float, ke: float, mic: float, interval_h: float,
                               admin: AdministrationSpec,
                               search_step_h: float = 0.05) -> Tuple[float, float, Optional[float]]:
        """
        Returns (reported %T>MIC clamped to [0, 100], raw %T>MIC, time to fall to MIC or None).
        Raw exceeds 100 when the trough is still above the MIC (over-dosing signal).
        """
        if admin.method == DosingMethod.BOLUS:
            c0 = dose_mg / vd_l
            if c0 <= mic:
                # Never reaches the MIC
                return 0.0, 0.0, None
            time_to_mic = math.log(c0 / mic) / ke
            raw = time_to_mic / interval_h * 100.0
            return min(raw, 100.0), raw, time_to_mic

        trough = CRRTPharmacokineticEngine.concentration_at(interval_h, dose_mg, vd_l, ke, admin)
        if trough > mic:
            time_to_mic = interval_h + math.log(trough / mic) / ke
            raw = time_to_mic / interval_h * 100.0
            return 100.0, raw, time_to_mic

        # Midpoint sampling across one interval
        n = max(1, int(math.ceil(interval_h / search_step_h)))
        step = interval_h / n
        time_above = 0.0
        last_above = None
        for i in range(n):
            t = (i + 0.5) * step
            if CRRTPharmacokineticEngine.concentration_at(t, dose_mg, vd_l, ke, admin) > mic:
                time_above += step
                last_above = t
        raw = time_above / interval_h * 100.0
        return min(max(raw, 0.0), 100.0), raw, last_above
