# protocols.py
import logging
import math
from typing import List, Optional

from constants import PK_CONSTANTS, DosingMethod, ExposureTarget, EngineSettings, DEFAULT_SETTINGS
from core_pk import CRRTPharmacokineticEngine
from models import AdministrationSpec, DoseRecommendation, DrugProfile
from safety import SafetySupervisor

logger = logging.getLogger("crrtdose-engine")

class TargetSelector:
    @staticmethod
    def select(profile: DrugProfile, preferred: Optional[ExposureTarget], mic: Optional[float]) -> Optional[ExposureTarget]:
        """
        Preferred target if the drug carries a range for it, else AUC -> %T>MIC -> Peak/Trough.
        %T>MIC is only usable with a MIC.
        """
        targets = profile.tdm_targets
        available = []
        if targets.auc is not None:
            available.append(ExposureTarget.AUC)
        if targets.percent_time_above_mic is not None and mic is not None:
            available.append(ExposureTarget.TIME_ABOVE_MIC)
        if targets.trough is not None or targets.peak is not None:
            available.append(ExposureTarget.PEAK_TROUGH)

        if preferred in available:
            return preferred
        return available[0] if available else None

class DoseSolver:
    """
    Inverts the forward model to hit the chosen exposure target.
    Every branch ends in SafetySupervisor.clamp_dose.
    """

    @staticmethod
    def round_to_increment(dose_mg: float, increment: float = PK_CONSTANTS.DOSE_ROUNDING_MG) -> float:
        # Half-up so 1125 -> 1250 regardless of float banker's rounding
        return math.floor(dose_mg / increment + 0.5) * increment

    @staticmethod
    def route_text(admin: AdministrationSpec, dose_mg: float) -> str:
        if admin.method == DosingMethod.INFUSION:
            duration = CRRTPharmacokineticEngine.resolve_infusion_duration(dose_mg, admin)
            return f"IV infusion over {duration:g} h"
        if admin.method == DosingMethod.EXTRAVASCULAR:
            return "extravascular (PO/IM)"
        return "IV bolus"

    @staticmethod
    def _solve_auc(profile: DrugProfile, clearance: float, notes: List[str]) -> float:
        pk = profile.pk
        target = profile.tdm_targets.auc
        standard_auc = CRRTPharmacokineticEngine.calculate_auc_0_24(pk.standard_dose_mg * pk.doses_per_day, clearance)
        target_dose = DoseSolver.round_to_increment(target.midpoint * clearance / pk.doses_per_day)

        if standard_auc > target.max:
            # Toxicity avoidance: step down, recheck levels
            dose = DoseSolver.round_to_increment(pk.standard_dose_mg * PK_CONSTANTS.AUC_TOXICITY_REDUCTION)
            notes.append(
                f"Standard dose AUC0-24 {standard_auc:.0f} exceeds the {target.max:g} {target.unit} ceiling: "
                f"dose reduced 25% to limit toxicity (AUC-guided estimate {target_dose:g} mg)."
            )
        elif standard_auc < target.min:
            dose = target_dose
            notes.append(
                f"Standard dose AUC0-24 {standard_auc:.0f} is below the {target.min:g} {target.unit} floor: "
                f"dose increased to reach AUC {target.midpoint:g} for efficacy."
            )
        else:
            dose = pk.standard_dose_mg
            notes.append(f"Standard dose AUC0-24 {standard_auc:.0f} is within {target.min:g}-{target.max:g} {target.unit}.")
        return dose

    @staticmethod
    def _solve_time_above_mic(profile: DrugProfile, vd: float, ke: float, mic: float, admin: AdministrationSpec,
                              settings: EngineSettings, notes: List[str]):
        """
        Beta-lactam pattern: bounded x1.25 escalation, at most 10 steps.
        Returns (dose, iterations, target_met).
        """
        pk = profile.pk
        target = profile.tdm_targets.percent_time_above_mic.min

        def pct(dose):
            return CRRTPharmacokineticEngine.percent_time_above_mic(
                dose, vd, ke, mic, pk.interval_h, admin, settings.mic_search_step_h
            )

        reported, raw, _ = pct(pk.standard_dose_mg)
        if raw > 100.0:
            dose = pk.standard_dose_mg * PK_CONSTANTS.MIC_OVERDOSE_REDUCTION
            notes.append(
                f"Concentration stays above MIC {mic:g} mg/L for the whole interval (raw %T>MIC {raw:.0f}%): "
                f"dose reduced 20%."
            )
            return dose, 0, True

        if reported >= target:
            notes.append(f"Standard dose achieves {reported:.0f}% T>MIC (target >= {target:g}%).")
            return pk.standard_dose_mg, 0, True

        dose = pk.standard_dose_mg
        iterations = 0
        met = False
        while iterations < PK_CONSTANTS.MIC_MAX_ITERATIONS:
            iterations += 1
            dose *= PK_CONSTANTS.MIC_ESCALATION_STEP
            reported, _, _ = pct(dose)
            if reported >= target:
                met = True
                break

        if met:
            notes.append(f"Escalated x{PK_CONSTANTS.MIC_ESCALATION_STEP:g} over {iterations} step(s) to reach "
                         f"{reported:.0f}% T>MIC (target >= {target:g}%).")
        else:
            notes.append(f"Target {target:g}% T>MIC not reached after {iterations} escalation steps "
                         f"({reported:.0f}% achieved).")
        return float(round(dose)), iterations, met

    @staticmethod
    def _solve_peak_trough(profile: DrugProfile, clearance: float, vd: float, ke: float, notes: List[str]) -> float:
        pk = profile.pk
        targets = profile.tdm_targets
        if targets.trough is not None:
            trough = targets.trough.midpoint
            tau = pk.interval_h
            dose = trough * clearance * tau * (1.0 - math.exp(-ke * tau))
            notes.append(f"Dose solved for steady-state trough {trough:g} {targets.trough.unit}.")
        else:
            peak = targets.peak.midpoint
            dose = peak * vd
            notes.append(f"Dose solved for peak {peak:g} {targets.peak.unit} (Cpeak = dose/Vd).")
        return float(round(dose))

    @staticmethod
    def recommend(profile: DrugProfile, clearance: float, vd: float, ke: float, admin: AdministrationSpec,
                  mic: Optional[float], preferred: Optional[ExposureTarget],
                  extended_infusion_supported: bool = False,
                  settings: EngineSettings = DEFAULT_SETTINGS) -> DoseRecommendation:
        pk = profile.pk
        notes: List[str] = []
        iterations = 0
        suggestion = None

        target = TargetSelector.select(profile, preferred, mic)
        if preferred is not None and target != preferred:
            notes.append(f"Preferred target '{preferred.value}' unavailable for {profile.name}; "
                         f"using {target.value if target else 'standard dosing'}.")

        if target == ExposureTarget.AUC:
            dose = DoseSolver._solve_auc(profile, clearance, notes)
        elif target == ExposureTarget.TIME_ABOVE_MIC:
            dose, iterations, met = DoseSolver._solve_time_above_mic(profile, vd, ke, mic, admin, settings, notes)
            if not met:
                suggestion = (f"Switch to extended (3-4 h) or continuous infusion of {profile.name} "
                              f"instead of further dose escalation.")
        elif target == ExposureTarget.PEAK_TROUGH:
            dose = DoseSolver._solve_peak_trough(profile, clearance, vd, ke, notes)
        else:
            dose = pk.standard_dose_mg
            notes.append("No exposure target defined for this drug: standard dose.")

        if suggestion is None and extended_infusion_supported and admin.method != DosingMethod.INFUSION:
            suggestion = "Platform studies support extended/continuous infusion for this drug."

        dose, clamp_note = SafetySupervisor.clamp_dose(dose, pk.standard_dose_mg)
        if clamp_note:
            notes.append(clamp_note)

        route = DoseSolver.route_text(admin, dose)
        text = f"{dose:g} mg {route} every {pk.interval_h:g} hours"
        logger.debug(f"{profile.name}: target={target} dose={dose:g} iterations={iterations}")

        return DoseRecommendation(
            dose_mg=dose,
            interval_h=pk.interval_h,
            route=route,
            text=text,
            rationale=" ".join(notes),
            target=target,
            clamped=clamp_note is not None,
            iterations=iterations,
            extended_infusion_suggestion=suggestion,
        )
