"""Collaborators the core is given but does not implement.

The scoring engine and the storage layer live outside this package; the core
only talks to them through these protocols.
"""
from typing import Any, Dict, List, Optional, Protocol

from .models import AgentPattern, TestRun


class TestSuiteRunner(Protocol):
    async def run_test_suite(
        self, pattern: AgentPattern, suite_id: str, options: Optional[Dict[str, Any]] = None
    ) -> TestRun:
        ...


class ResultStore(Protocol):
    async def persist_batch_results(self, job: Any, results: Any) -> None:
        ...

    async def query_results(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        ...


class InMemoryResultStore:
    """Keeps persisted batch results in a list; filters match top-level keys."""

    def __init__(self):
        self._records: List[Dict[str, Any]] = []

    async def persist_batch_results(self, job, results) -> None:
        self._records.append(
            {
                "batch_job_id": job.id,
                "name": job.name,
                "status": job.status.value,
                "patterns": [p.value for p in job.patterns],
                "test_suite_ids": list(job.test_suite_ids),
                "summary": results.summary.model_dump(),
            }
        )

    async def query_results(self, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        filters = filters or {}
        return [r for r in self._records if all(r.get(k) == v for k, v in filters.items())]
