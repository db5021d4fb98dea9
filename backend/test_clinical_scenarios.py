import math
import unittest

from app import compute_dosing, build_narrative_context
from drug_library import DRUG_LIBRARY
from models import PatientInput, ApprovedStudy, DrugNotFoundError
from constants import CRRTModality, DosingMethod, ExposureTarget, EngineSettings, FlowUnit

class TestClinicalScenarios(unittest.TestCase):
    """
    Bedside cases run through the full pipeline.
    Run with: python -m unittest test_clinical_scenarios.py
    """

    def setUp(self):
        self.settings = EngineSettings(reference_year=2024)
        self.base_patient = {
            'antibiotic_name': 'vancomycin',
            'weight_kg': 70.0,
            'crrt_modality': CRRTModality.CVVHD,
            'dialysate_flow': 25.0,
            'dialysate_flow_unit': FlowUnit.ML_KG_HR,
            'filter_type': 'high-flux',
        }

    def run_case(self, studies=(), **overrides):
        data = self.base_patient.copy()
        data.update(overrides)
        return compute_dosing(PatientInput(**data), DRUG_LIBRARY, studies, self.settings)

    def test_scenario_1_cvvhd_vancomycin(self):
        print("\nSCENARIO 1: Vancomycin on CVVHD, no labs")
        res = self.run_case()
        d = res.calculation_details
        print(f"CL_ec={d.crrt_clearance:.3f} CL_nr={d.hepatic_clearance:.2f} "
              f"CL_res={d.residual_renal_clearance:.2f} CL_tot={res.total_clearance:.3f} AUC={res.auc_0_24:.0f}")

        self.assertAlmostEqual(d.crrt_clearance, 1.26, places=3)
        self.assertAlmostEqual(d.hepatic_clearance, 0.3, places=6)
        self.assertAlmostEqual(d.residual_renal_clearance, 0.1, places=6)
        self.assertAlmostEqual(res.total_clearance, 1.66, places=3)
        self.assertAlmostEqual(res.auc_0_24, 1205, delta=1.0)

        # AUC 1205 > 600 ceiling: standard dose cut 25%, rounded to 250 mg
        self.assertEqual(res.recommendation.target, ExposureTarget.AUC)
        self.assertEqual(res.recommendation.dose_mg, 750)
        self.assertEqual(res.dose_recommendation, "750 mg IV bolus every 12 hours")
        self.assertTrue(res.rationale.startswith("Load with 25-30 mg/kg"))

        # Every substituted value is on record
        self.assertTrue(any(s.startswith("residual_renal_clearance=0.1") for s in d.defaults_applied))
        self.assertTrue(any(s.startswith("non_renal_clearance=0.3") for s in d.defaults_applied))

    def test_scenario_2_mic_clamps_to_100(self):
        print("\nSCENARIO 2: same patient, MIC 10 mg/L")
        res = self.run_case(mic=10.0)
        d = res.calculation_details
        print(f"C0={d.initial_concentration:.1f} mg/L  t>MIC={d.time_to_reach_mic:.1f} h  %T>MIC={res.percent_time_above_mic}")

        self.assertAlmostEqual(d.initial_concentration, 20.4, delta=0.05)
        self.assertGreater(d.time_to_reach_mic, 12.0)
        self.assertEqual(res.percent_time_above_mic, 100.0)
        self.assertEqual(d.mic_source, "patient")

    def test_scenario_3_three_hour_infusion(self):
        print("\nSCENARIO 3: 1000 mg over 3 h")
        res = self.run_case(dosing_method=DosingMethod.INFUSION, infusion_duration_h=3.0)
        d = res.calculation_details
        end_of_infusion = next(p for p in res.concentration_curve if p.time == 3.0)
        print(f"Vd={d.volume_of_distribution:.1f} L ke={d.elimination_rate:.4f} C(3h)={end_of_infusion.concentration:.2f}")

        self.assertAlmostEqual(d.volume_of_distribution, 49.0)
        self.assertAlmostEqual(d.elimination_rate, 0.0339, delta=0.0002)
        self.assertAlmostEqual(end_of_infusion.concentration, 19.4, delta=0.1)
        self.assertEqual(res.concentration_curve[0].concentration, 0.0)
        self.assertIn("IV infusion over 3 h", res.dose_recommendation)

    def test_scenario_4_unknown_drug(self):
        with self.assertRaises(DrugNotFoundError):
            self.run_case(antibiotic_name='unobtainium')

    def test_aliases_resolve(self):
        res = self.run_case(antibiotic_name='Zosyn', mic=16.0)
        self.assertTrue(res.dose_recommendation.endswith("every 8 hours"))

    def test_meropenem_overexposure_reduced(self):
        """Trough above MIC 2 for the whole interval -> 20% reduction."""
        res = self.run_case(antibiotic_name='meropenem', mic=2.0)
        self.assertEqual(res.recommendation.target, ExposureTarget.TIME_ABOVE_MIC)
        self.assertEqual(res.recommendation.dose_mg, 800)
        self.assertEqual(res.percent_time_above_mic, 100.0)

    def test_meropenem_resistant_organism_escalates(self):
        res = self.run_case(antibiotic_name='meropenem', mic=50.0)
        rec = res.recommendation
        print(f"\nMeropenem MIC 50: {rec.text} after {rec.iterations} steps")
        self.assertEqual(rec.iterations, 2)
        self.assertAlmostEqual(rec.dose_mg, 1562.5, delta=1.0)
        self.assertIsNone(rec.extended_infusion_suggestion)

    def test_unreachable_mic_is_clamped_with_suggestion(self):
        res = self.run_case(antibiotic_name='meropenem', mic=500.0)
        rec = res.recommendation
        self.assertEqual(rec.iterations, 10)
        self.assertTrue(rec.clamped)
        self.assertEqual(rec.dose_mg, 3000)
        self.assertIn("Safety limit", res.rationale)
        self.assertIsNotNone(rec.extended_infusion_suggestion)
        self.assertIn("Low %T>MIC", res.rationale)

    def test_mic_from_culture_breakpoint(self):
        res = self.run_case(antibiotic_name='meropenem', microbiological_culture='P. aeruginosa')
        d = res.calculation_details
        self.assertEqual(d.mic_used, 2.0)
        self.assertEqual(d.mic_source, "breakpoint (P. aeruginosa)")

    def test_mic_never_reached_has_no_time_to_mic(self):
        res = self.run_case(mic=50.0)
        self.assertEqual(res.percent_time_above_mic, 0.0)
        self.assertIsNone(res.calculation_details.time_to_reach_mic)

    def test_extravascular_absorption_fallbacks_are_recorded(self):
        mero = self.run_case(antibiotic_name='meropenem', dosing_method=DosingMethod.EXTRAVASCULAR)
        d = mero.calculation_details
        self.assertIn("ka=1 /h (no reference value)", d.defaults_applied)
        self.assertIn("bioavailability=1 (no reference value)", d.defaults_applied)
        self.assertEqual(d.absorption_rate_ka, 1.0)
        self.assertEqual(d.bioavailability, 1.0)

        # Vancomycin carries F but no ka
        vanco = self.run_case(dosing_method=DosingMethod.EXTRAVASCULAR).calculation_details
        self.assertIn("ka=1 /h (no reference value)", vanco.defaults_applied)
        self.assertFalse(any(s.startswith("bioavailability=") for s in vanco.defaults_applied))

        linezolid = self.run_case(antibiotic_name='linezolid', dosing_method=DosingMethod.EXTRAVASCULAR)
        d = linezolid.calculation_details
        self.assertFalse(any(s.startswith(("ka=", "bioavailability=")) for s in d.defaults_applied))
        self.assertEqual(d.absorption_rate_ka, 1.8)
        self.assertEqual(d.bioavailability, 1.0)

        # Intravenous routes never use ka or F
        iv = self.run_case(antibiotic_name='meropenem').calculation_details
        self.assertFalse(any(s.startswith(("ka=", "bioavailability=")) for s in iv.defaults_applied))
        self.assertIsNone(iv.absorption_rate_ka)
        self.assertIsNone(iv.bioavailability)

    def test_minimal_input_uses_defaults(self):
        res = compute_dosing(PatientInput(antibiotic_name='vancomycin'), DRUG_LIBRARY, (), self.settings)
        d = res.calculation_details
        self.assertEqual(d.patient_weight, 70.0)
        self.assertAlmostEqual(res.total_clearance, 0.3 + 0.1 + 1.2)
        self.assertTrue(any(s.startswith("weight_kg=70") for s in d.defaults_applied))
        self.assertTrue(any(s.startswith("crrt_modality unspecified") for s in d.defaults_applied))
        self.assertIsNone(d.normalized_flows)

    def test_augmented_renal_clearance(self):
        res = self.run_case(age_years=30, sex='male', serum_creatinine_mg_dl=0.5)
        self.assertGreater(res.calculation_details.egfr, 130)
        self.assertTrue(any("Augmented renal clearance" in a for a in res.evidence_alerts))

    def test_clinical_notes_reach_rationale(self):
        res = self.run_case(liver_disease=True, ecmo=True, tpe=True)
        self.assertIn("Liver disease present", res.rationale)
        self.assertIn("consider loading dose", res.rationale)
        self.assertIn("plasma exchange", res.rationale)

    def test_invariants_across_catalog(self):
        """%T>MIC within [0, 100], dose within [0.5x, 3x], curve finite and non-negative."""
        cases = [
            {},
            {'crrt_modality': CRRTModality.CVVH, 'ultrafiltration_ml_hr': 3000},
            {'crrt_modality': CRRTModality.SLED, 'sepsis': True, 'heart_failure': True},
            {'crrt_modality': None, 'ecmo': True, 'age_years': 85, 'sex': 'female'},
            {'dosing_method': DosingMethod.INFUSION, 'infusion_rate_mg_h': 500},
            {'dosing_method': DosingMethod.EXTRAVASCULAR},
        ]
        for key, profile in DRUG_LIBRARY.SPECS.items():
            for mic in (None, 0.25, 2.0, 64.0):
                for extra in cases:
                    res = self.run_case(antibiotic_name=key, mic=mic, **extra)
                    standard = profile.pk.standard_dose_mg
                    self.assertGreaterEqual(res.percent_time_above_mic, 0.0)
                    self.assertLessEqual(res.percent_time_above_mic, 100.0)
                    self.assertGreaterEqual(res.recommendation.dose_mg, 0.5 * standard - 1e-9)
                    self.assertLessEqual(res.recommendation.dose_mg, 3.0 * standard + 1e-9)
                    self.assertTrue(math.isfinite(res.total_clearance))
                    self.assertTrue(math.isfinite(res.auc_0_24))
                    for point in res.concentration_curve:
                        self.assertTrue(math.isfinite(point.concentration))
                        self.assertGreaterEqual(point.concentration, 0.0)

    def test_determinism(self):
        studies = (ApprovedStudy(id="s1", title="Vancomycin clearance increase on CRRT",
                                 authors="Lee et al.", year=2023),)
        first = self.run_case(studies=studies, mic=1.0)
        second = self.run_case(studies=studies, mic=1.0)
        self.assertEqual(first.total_clearance, second.total_clearance)
        self.assertEqual(first.concentration_curve, second.concentration_curve)
        self.assertEqual(first.rationale, second.rationale)
        self.assertEqual(first.evidence_alerts, second.evidence_alerts)
        self.assertEqual(first.audit_log.inputs_hash, second.audit_log.inputs_hash)

        other = self.run_case(studies=studies, mic=2.0)
        self.assertNotEqual(first.audit_log.inputs_hash, other.audit_log.inputs_hash)

    def test_narrative_context_is_plain_data(self):
        patient = PatientInput(**self.base_patient)
        res = compute_dosing(patient, DRUG_LIBRARY, (), self.settings)
        context = build_narrative_context(patient, res)
        self.assertEqual(context["patient"]["crrt_modality"], "CVVHD")
        self.assertEqual(context["recommendation"]["text"], res.dose_recommendation)
        self.assertEqual(context["pk_summary"]["total_clearance_l_h"], round(res.total_clearance, 3))
        self.assertEqual(context["evidence"]["studies"], [])

if __name__ == '__main__':
    unittest.main()
