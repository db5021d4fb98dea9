# safety.py
import logging
import math
from typing import List, Optional, Tuple

from constants import PK_CONSTANTS, CircuitAge
from models import PatientInput, DrugProfile

logger = logging.getLogger("crrtdose-engine")

class SafetySupervisor:
    """
    Numeric and clinical guard rails used by the engine and the dose solver.
    Every correction is appended to the caller's 'actions' list so it shows
    up in the calculation trace or the rationale.
    """

    @staticmethod
    def dose_bounds(standard_dose_mg: float) -> Tuple[float, float]:
        return (standard_dose_mg * PK_CONSTANTS.MIN_DOSE_FRACTION,
                standard_dose_mg * PK_CONSTANTS.MAX_DOSE_FRACTION)

    @staticmethod
    def clamp_dose(dose_mg: float, standard_dose_mg: float) -> Tuple[float, Optional[str]]:
        """
        Keeps every recommendation within [0.5x, 3x] the standard dose.
        Returns the safe dose and the rationale sentence (None if untouched).
        """
        low, high = SafetySupervisor.dose_bounds(standard_dose_mg)
        if not math.isfinite(dose_mg):
            logger.warning(f"Non-finite dose {dose_mg} replaced by standard dose")
            return standard_dose_mg, (
                f"Safety limit: computed dose was not a finite number; "
                f"standard dose {standard_dose_mg:g} mg used."
            )
        if dose_mg < low:
            logger.warning(f"Dose {dose_mg:.0f} mg raised to floor {low:.0f} mg")
            return low, (
                f"Safety limit: computed dose {dose_mg:.0f} mg is below 0.5x the standard dose; "
                f"raised to {low:g} mg. Confirm with TDM."
            )
        if dose_mg > high:
            logger.warning(f"Dose {dose_mg:.0f} mg capped at ceiling {high:.0f} mg")
            return high, (
                f"Safety limit: computed dose {dose_mg:.0f} mg exceeds 3x the standard dose; "
                f"capped at {high:g} mg. Confirm with TDM."
            )
        return dose_mg, None

    @staticmethod
    def guard_divisor(value: float, epsilon: float, label: str, actions: List[str]) -> float:
        """Clamps a clearance/volume that will be used as a divisor."""
        if not math.isfinite(value) or value < epsilon:
            actions.append(f"{label} {value!r} clamped to {epsilon:g}")
            logger.warning(f"{label} {value!r} clamped to {epsilon:g}")
            return epsilon
        return value

    @staticmethod
    def non_negative(value: float, label: str, actions: List[str]) -> float:
        if not math.isfinite(value) or value < 0:
            actions.append(f"{label} {value!r} clamped to 0")
            return 0.0
        return value

    @staticmethod
    def finite_or_default(value: float, default: float, label: str, actions: List[str]) -> float:
        if value is None or not math.isfinite(value):
            actions.append(f"{label} {value!r} replaced by {default:g}")
            logger.warning(f"{label} {value!r} replaced by {default:g}")
            return default
        return value

    @staticmethod
    def clinical_notes(patient: PatientInput, profile: DrugProfile) -> List[str]:
        """
        Static Check: bedside context the clinician must weigh beyond the numbers.
        """
        notes = []
        if patient.liver_disease:
            notes.append("Liver disease present - monitor closely for accumulation.")
        if patient.ecmo:
            notes.append("ECMO therapy may increase volume of distribution - consider loading dose.")
            if patient.circuit_age == CircuitAge.USED:
                notes.append("Used ECMO circuit: sequestration partly saturated, recheck levels after circuit change.")
        if patient.heart_failure:
            notes.append("Heart failure: expanded Vd and reduced hepatic flow, reassess after fluid shifts.")
        if patient.tpe:
            if profile.pk.protein_binding > PK_CONSTANTS.LOW_BINDING_THRESHOLD:
                notes.append("Therapeutic plasma exchange removes bound drug - give the dose after the TPE session.")
            else:
                notes.append("Therapeutic plasma exchange: schedule the dose after the session when possible.")
        return notes
