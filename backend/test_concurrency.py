import json
import os
import tempfile
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest import mock

from app import compute_dosing, DosingService
from research import InMemoryResearchRepository, fetch_study_snapshot
from drug_library import DRUG_LIBRARY
from models import PatientInput, ApprovedStudy, CalculationCancelledError, DrugNotFoundError
from constants import CRRTModality, EngineSettings, StudyStatus

class SlowRepository:
    def __init__(self, release: threading.Event):
        self.release = release

    def get_approved(self, drug_name):
        self.release.wait(timeout=5.0)
        return ()

class BrokenRepository:
    def get_approved(self, drug_name):
        raise RuntimeError("catalog offline")

class TestConcurrency(unittest.TestCase):

    def setUp(self):
        self.settings = EngineSettings(reference_year=2024, research_timeout_s=0.2)
        self.patient = PatientInput(
            antibiotic_name='vancomycin', weight_kg=70.0, crrt_modality=CRRTModality.CVVHD,
            dialysate_flow=25.0, filter_type='high-flux', mic=1.0,
        )
        self.study = ApprovedStudy(id="v1", title="Vancomycin clearance increase during CRRT",
                                   authors="Lee et al.", year=2023)

    def test_01_repository_timeout_yields_empty_snapshot(self):
        release = threading.Event()
        try:
            start = time.monotonic()
            snapshot = fetch_study_snapshot(SlowRepository(release), 'vancomycin', 0.05)
            elapsed = time.monotonic() - start
        finally:
            release.set()
        self.assertEqual(snapshot, ())
        self.assertLess(elapsed, 2.0)

    def test_02_repository_failure_yields_empty_snapshot(self):
        with self.assertLogs("crrtdose-research", level="WARNING"):
            snapshot = fetch_study_snapshot(BrokenRepository(), 'vancomycin', 1.0)
        self.assertEqual(snapshot, ())
        self.assertEqual(fetch_study_snapshot(None, 'vancomycin', 1.0), ())

    def test_03_snapshot_filters_unapproved(self):
        repo = InMemoryResearchRepository([
            self.study,
            ApprovedStudy(id="r1", title="Vancomycin on CRRT", authors="X", year=2020, status=StudyStatus.REVOKED),
        ])
        snapshot = fetch_study_snapshot(repo, 'vancomycin', 1.0)
        self.assertEqual([s.id for s in snapshot], ["v1"])

    def test_03b_hung_reads_do_not_starve_later_reads(self):
        release = threading.Event()
        try:
            for _ in range(6):
                self.assertEqual(fetch_study_snapshot(SlowRepository(release), 'vancomycin', 0.05), ())
            snapshot = fetch_study_snapshot(InMemoryResearchRepository([self.study]), 'vancomycin', 1.0)
        finally:
            release.set()
        self.assertEqual([s.id for s in snapshot], ["v1"])

    def test_03c_catalog_loads_from_json(self):
        records = [
            {"id": "v1", "title": "Vancomycin clearance increase during CRRT", "authors": "Lee et al.",
             "year": 2023, "tags": ["crrt"]},
            {"id": "p1", "title": "Meropenem on CVVHDF", "authors": "Park", "year": 2021, "status": "pending"},
        ]
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "studies.json")
            with open(path, "w", encoding="utf-8") as fh:
                json.dump(records, fh)
            repo = InMemoryResearchRepository.from_json(path)

        self.assertEqual(len(repo.all()), 2)
        self.assertEqual(repo.all()[0].tags, ("crrt",))
        snapshot = fetch_study_snapshot(repo, 'vancomycin', 1.0)
        self.assertEqual([s.id for s in snapshot], ["v1"])

    def test_03d_studies_file_setting_from_env(self):
        with mock.patch.dict(os.environ, {"CRRTDOSE_STUDIES_FILE": "/srv/crrtdose/studies.json"}):
            self.assertEqual(EngineSettings.from_env().studies_file, "/srv/crrtdose/studies.json")
        with mock.patch.dict(os.environ, {"CRRTDOSE_STUDIES_FILE": ""}):
            self.assertIsNone(EngineSettings.from_env().studies_file)

    def test_04_service_survives_broken_repository(self):
        service = DosingService(DRUG_LIBRARY, BrokenRepository(), self.settings)
        result = service.calculate(self.patient)
        self.assertEqual(result.supporting_studies, ())
        self.assertIn("No platform studies found for this drug/CRRT combination - consider standard guidelines",
                      result.evidence_alerts)

    def test_05_service_uses_repository_studies(self):
        service = DosingService(DRUG_LIBRARY, InMemoryResearchRepository([self.study]), self.settings)
        result = service.calculate(self.patient)
        self.assertEqual([s.id for s in result.supporting_studies], ["v1"])
        self.assertEqual(result.citation_text, "Based on platform studies: Lee et al. (2023)")

    def test_06_unknown_drug_fails_before_research_read(self):
        service = DosingService(DRUG_LIBRARY, BrokenRepository(), self.settings)
        with self.assertRaises(DrugNotFoundError):
            service.calculate(PatientInput(antibiotic_name='unobtainium'))

    def test_07_cancellation(self):
        cancel = threading.Event()
        cancel.set()
        with self.assertRaises(CalculationCancelledError):
            compute_dosing(self.patient, DRUG_LIBRARY, (), self.settings, cancel)

        # Unset token: normal result
        result = compute_dosing(self.patient, DRUG_LIBRARY, (), self.settings, threading.Event())
        self.assertGreater(result.total_clearance, 0)

    def test_08_parallel_calls_do_not_interfere(self):
        """Evidence-adjusted and plain calculations interleaved on a thread pool."""
        with_evidence = compute_dosing(self.patient, DRUG_LIBRARY, (self.study,), self.settings)
        without = compute_dosing(self.patient, DRUG_LIBRARY, (), self.settings)
        self.assertGreater(with_evidence.total_clearance, without.total_clearance)

        jobs = [(self.study,) if i % 2 else () for i in range(32)]
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(
                lambda studies: compute_dosing(self.patient, DRUG_LIBRARY, studies, self.settings), jobs
            ))

        for studies, result in zip(jobs, results):
            expected = with_evidence if studies else without
            self.assertEqual(result.total_clearance, expected.total_clearance)
            self.assertEqual(result.dose_recommendation, expected.dose_recommendation)
            self.assertEqual(result.audit_log.inputs_hash, expected.audit_log.inputs_hash)

        self.assertEqual(DRUG_LIBRARY.lookup('vancomycin').pk.crrt_clearance_l_h, 1.2)

if __name__ == '__main__':
    unittest.main()
