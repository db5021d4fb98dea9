# research.py
import json
import logging
import threading
from typing import Dict, Iterable, Protocol, Sequence, Tuple

from constants import StudyStatus
from models import ApprovedStudy

logger = logging.getLogger("crrtdose-research")

class ResearchRepository(Protocol):
    def get_approved(self, drug_name: str) -> Sequence[ApprovedStudy]:
        ...

class InMemoryResearchRepository:
    """
    Process-local study catalog. Stores frozen studies; hands out tuples.
    """

    def __init__(self, studies: Iterable[ApprovedStudy] = ()):
        self._lock = threading.Lock()
        self._studies: Dict[str, ApprovedStudy] = {s.id: s for s in studies}

    @classmethod
    def from_json(cls, path: str) -> "InMemoryResearchRepository":
        """
        Loads a curated catalog export: a JSON list of study objects
        (id, title, authors, year, optional tags/notes/status/url).
        """
        with open(path, encoding="utf-8") as fh:
            records = json.load(fh)
        studies = [ApprovedStudy(**record) for record in records]
        logger.info(f"Loaded {len(studies)} studies from {path}")
        return cls(studies)

    def add(self, study: ApprovedStudy) -> None:
        with self._lock:
            self._studies[study.id] = study

    def all(self) -> Tuple[ApprovedStudy, ...]:
        with self._lock:
            return tuple(self._studies.values())

    def get_approved(self, drug_name: str) -> Tuple[ApprovedStudy, ...]:
        # Drug relevance is decided by the evidence stage; the catalog only filters status
        with self._lock:
            return tuple(s for s in self._studies.values() if s.status == StudyStatus.APPROVED)

def fetch_study_snapshot(repository: ResearchRepository, drug_name: str,
                         timeout_s: float) -> Tuple[ApprovedStudy, ...]:
    """
    One bounded blocking read of the approved-studies catalog.
    Timeout or failure -> empty snapshot. Never raises.

    Each read runs on its own daemon thread, so a hung repository call
    only ever holds its own thread and cannot starve later reads.
    """
    if repository is None:
        return ()

    outcome = {}

    def read():
        try:
            outcome["studies"] = tuple(repository.get_approved(drug_name))
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=read, name=f"crrtdose_research_{drug_name}", daemon=True)
    worker.start()
    worker.join(timeout_s)

    if worker.is_alive():
        logger.warning(f"Research repository timed out after {timeout_s}s for {drug_name}; using no evidence")
        return ()
    if "error" in outcome:
        logger.warning(f"Research repository unavailable for {drug_name}: {outcome['error']}; using no evidence")
        return ()

    return tuple(s for s in outcome["studies"] if s.status == StudyStatus.APPROVED)
