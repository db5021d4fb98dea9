import unittest

from evidence import (
    EvidenceAdjustmentStage,
    KeywordEvidenceExtractor,
    find_relevant_studies,
    citation_text,
    mic_alerts,
    check_for_study_updates,
    drug_tokens,
)
from drug_library import DRUG_LIBRARY
from models import ApprovedStudy, EvidenceEffect
from constants import EngineSettings, StudyStatus

class TestEvidenceStage(unittest.TestCase):

    def setUp(self):
        self.settings = EngineSettings(reference_year=2024, evidence_recency_years=2)
        self.vanco = DRUG_LIBRARY.lookup('vancomycin')
        self.piptazo = DRUG_LIBRARY.lookup('piperacillin-tazobactam')
        self.clearance_study = ApprovedStudy(
            id="v1", title="Vancomycin clearance increase during CRRT", authors="Lee et al.", year=2023,
        )
        self.binding_study = ApprovedStudy(
            id="v2", title="Vancomycin protein binding in hemofiltration", authors="Kim et al.", year=2015,
            notes="Protein binding decrease observed in septic patients",
        )

    def test_01_drug_tokens(self):
        self.assertEqual(drug_tokens(self.piptazo), ("piperacillin-tazobactam", "piperacillin", "tazobactam"))

    def test_02_relevance_needs_drug_and_crrt_term(self):
        studies = [
            self.clearance_study,
            ApprovedStudy(id="x1", title="Vancomycin in obesity", authors="A", year=2022),
            ApprovedStudy(id="x2", title="Dialysis outcomes", authors="B", year=2022),
            ApprovedStudy(id="x3", title="Vancomycin on CVVHDF", authors="C", year=2022,
                          status=StudyStatus.PENDING),
            ApprovedStudy(id="x4", title="Dosing study", authors="D", year=2022, tags=("vancomycin", "crrt")),
        ]
        relevant = find_relevant_studies(studies, self.vanco)
        self.assertEqual([s.id for s in relevant], ["v1", "x4"])

    def test_03_no_studies(self):
        assessment = EvidenceAdjustmentStage().assess(self.vanco, (), self.settings)
        self.assertIs(assessment.pk, self.vanco.pk)
        self.assertEqual(assessment.alerts,
                         ("No platform studies found for this drug/CRRT combination - consider standard guidelines",))
        self.assertEqual(assessment.citation_text, "No platform studies available for this combination")

    def test_04_effects_apply_to_a_copy(self):
        assessment = EvidenceAdjustmentStage().assess(
            self.vanco, (self.clearance_study, self.binding_study), self.settings
        )
        self.assertAlmostEqual(assessment.pk.crrt_clearance_l_h, 1.2 * 1.1)
        self.assertAlmostEqual(assessment.pk.protein_binding, 0.1 * 0.9)
        # Catalog untouched
        self.assertEqual(self.vanco.pk.crrt_clearance_l_h, 1.2)
        self.assertEqual(self.vanco.pk.protein_binding, 0.1)
        self.assertEqual(len(assessment.applied_effects), 2)

    def test_05_recency_and_consistency_alerts(self):
        assessment = EvidenceAdjustmentStage().assess(
            self.vanco, (self.clearance_study, self.binding_study), self.settings
        )
        self.assertIn("1 recent study(ies) support current recommendations", assessment.alerts)
        self.assertIn("2 studies available - review for consistency", assessment.alerts)
        self.assertEqual(assessment.citation_text, "Based on platform studies: Lee et al. (2023); Kim et al. (2015)")

        old_only = EvidenceAdjustmentStage().assess(self.vanco, (self.binding_study,), self.settings)
        self.assertIn("Available studies are >2 years old - consider searching for newer evidence", old_only.alerts)

    def test_06_extended_infusion_flag(self):
        study = ApprovedStudy(id="p1", title="Piperacillin extended infusion in CVVHDF",
                              authors="Roberts et al.", year=2024)
        assessment = EvidenceAdjustmentStage().assess(self.piptazo, (study,), self.settings)
        self.assertTrue(assessment.extended_infusion_supported)
        self.assertEqual(assessment.pk, self.piptazo.pk)

    def test_07_custom_extractor(self):
        class DoubleClearance:
            def extract(self, study):
                return [EvidenceEffect(description=study.id, crrt_clearance_factor=2.0)]

        assessment = EvidenceAdjustmentStage(DoubleClearance()).assess(
            self.vanco, (self.clearance_study,), self.settings
        )
        self.assertAlmostEqual(assessment.pk.crrt_clearance_l_h, 2.4)

    def test_08_keyword_rules(self):
        effects = KeywordEvidenceExtractor().extract(
            ApprovedStudy(id="k", title="Continuous infusion", authors="Z", year=2020)
        )
        self.assertEqual(len(effects), 1)
        self.assertTrue(effects[0].extended_infusion)

    def test_09_mic_alerts(self):
        mic_study = ApprovedStudy(id="m1", title="MIC-guided vancomycin dosing on CRRT", authors="Q", year=2022)
        self.assertEqual(mic_alerts((mic_study,), 4.0, 20.0),
                         ["MIC-specific studies available - optimize dosing based on platform research"])
        self.assertEqual(mic_alerts((mic_study,), 4.0, 60.0), [])
        self.assertEqual(mic_alerts((mic_study,), None, 0.0), [])
        self.assertEqual(mic_alerts((self.clearance_study,), 4.0, 20.0), [])

    def test_10_catalog_maintenance_hints(self):
        hints = check_for_study_updates((self.binding_study,), self.vanco, self.settings)
        self.assertIn("Consider updating 1 studies older than 3 years", hints)
        self.assertIn("No studies from the last year - search for recent publications", hints)

        self.assertEqual(check_for_study_updates((self.clearance_study,), self.vanco, self.settings), [])

        self.assertEqual(check_for_study_updates((), self.vanco, self.settings),
                         ["No platform studies available - prioritize finding and uploading relevant research"])

    def test_11_citation_text(self):
        self.assertEqual(citation_text(()), "No platform studies available for this combination")

if __name__ == '__main__':
    unittest.main()
