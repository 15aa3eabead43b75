import logging
import time
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel

from .config import API_BASE_URL, API_TEST_TIMEOUT_SECONDS
from .models import AgentPattern

logger = logging.getLogger(__name__)


class ApiTestResult(BaseModel):
    pattern: AgentPattern
    url: str
    status_code: Optional[int] = None
    success: bool
    latency_ms: float
    response: Any = None
    error: Optional[str] = None


class ApiTester:
    """Calls the pattern API (``POST {base_url}/{pattern}``) and reports status and latency."""

    def __init__(
        self,
        base_url: str = API_BASE_URL,
        timeout: float = API_TEST_TIMEOUT_SECONDS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def test_pattern(self, pattern: AgentPattern, payload: Optional[Dict[str, Any]] = None) -> ApiTestResult:
        pattern = AgentPattern(pattern)
        url = f"{self.base_url}/{pattern.value}"
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                resp = await client.post(url, json=payload or {})
        except httpx.HTTPError as exc:
            latency = (time.perf_counter() - start) * 1000
            logger.warning("api test for %s failed: %s", pattern.value, exc)
            return ApiTestResult(pattern=pattern, url=url, success=False, latency_ms=latency, error=str(exc))

        latency = (time.perf_counter() - start) * 1000
        try:
            body = resp.json()
        except ValueError:
            body = resp.text
        ok = resp.is_success
        if not ok:
            logger.warning("api test for %s returned HTTP %s", pattern.value, resp.status_code)
        return ApiTestResult(
            pattern=pattern,
            url=url,
            status_code=resp.status_code,
            success=ok,
            latency_ms=latency,
            response=body,
            error=None if ok else f"HTTP {resp.status_code}",
        )

    async def test_patterns(self, patterns: List[AgentPattern], payload: Optional[Dict[str, Any]] = None) -> List[ApiTestResult]:
        return [await self.test_pattern(p, payload) for p in patterns]
