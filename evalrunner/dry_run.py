import asyncio
import hashlib
import random
import time
from typing import Any, Dict, Optional

from .config import DRY_RUN_FAILURE_RATE
from .models import AgentPattern, TestResultStatus, TestRun, TestRunResult


def _seed(*parts: str) -> int:
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return int(digest[:16], 16)


class DryRunTestRunner:
    """Synthetic evaluation engine for local development.

    Results are deterministic per (pattern, suite) so dashboards and workflows
    can be exercised without a scoring backend. Not a substitute for real
    evaluations.
    """

    def __init__(self, cases_per_suite: int = 5, failure_rate: float = DRY_RUN_FAILURE_RATE, latency: float = 0.0):
        self.cases_per_suite = max(1, int(cases_per_suite))
        self.failure_rate = failure_rate
        self.latency = latency

    async def run_test_suite(
        self, pattern: AgentPattern, suite_id: str, options: Optional[Dict[str, Any]] = None
    ) -> TestRun:
        started = time.time()
        if self.latency:
            await asyncio.sleep(self.latency)
        rng = random.Random(_seed(AgentPattern(pattern).value, suite_id))
        results = []
        for i in range(self.cases_per_suite):
            score = round(rng.uniform(0.5, 1.0), 3)
            failed = rng.random() < self.failure_rate
            results.append(
                TestRunResult(
                    test_case_id=f"{suite_id}-{i + 1}",
                    pattern=pattern,
                    status=TestResultStatus.FAILED if failed else TestResultStatus.PASSED,
                    score=score,
                    duration_ms=round(rng.uniform(50, 1500), 1),
                )
            )
        finished = time.time()
        return TestRun(
            suite_id=suite_id,
            results=results,
            started_at=started,
            completed_at=finished,
            duration_ms=(finished - started) * 1000,
            metadata={"dry_run": True, "pattern": AgentPattern(pattern).value},
        )
