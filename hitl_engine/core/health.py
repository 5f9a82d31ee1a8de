"""Component health checks behind the ``/health`` endpoint."""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict

from .logging import get_logger

logger = get_logger(__name__)


@dataclass
class ComponentCheck:
    name: str
    func: Callable[[], Any]
    timeout: float = 5.0


def _check_result(status: str, started: float, **fields) -> Dict[str, Any]:
    result = {
        "status": status,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
        "timestamp": datetime.utcnow().isoformat(),
    }
    result.update(fields)
    return result


class HealthChecker:
    """Runs registered component checks, each under its own timeout.

    A check passes by returning (a dict of details, a message, or nothing)
    and fails by raising. Synchronous checks such as a database ping run in
    a worker thread so a hung connection cannot block the event loop.
    """

    def __init__(self):
        self.checks: Dict[str, ComponentCheck] = {}
        self.last_results: Dict[str, Dict[str, Any]] = {}

    def register_check(self, name: str, check_func: Callable[[], Any], timeout: float = 5.0):
        self.checks[name] = ComponentCheck(name, check_func, timeout)
        logger.debug(f"Registered health check: {name}")

    async def run_check(self, name: str) -> Dict[str, Any]:
        check = self.checks.get(name)
        started = time.perf_counter()
        if check is None:
            return _check_result("unknown", started, message=f"No health check named '{name}'")

        try:
            if asyncio.iscoroutinefunction(check.func):
                outcome = await asyncio.wait_for(check.func(), timeout=check.timeout)
            else:
                outcome = await asyncio.wait_for(asyncio.to_thread(check.func), timeout=check.timeout)
        except asyncio.TimeoutError:
            result = _check_result("timeout", started, message=f"No answer within {check.timeout}s")
        except Exception as e:
            logger.warning(f"Health check '{name}' failed: {str(e)}")
            result = _check_result("unhealthy", started, message=str(e), error_type=type(e).__name__)
        else:
            if isinstance(outcome, dict):
                details = outcome
            else:
                details = {"message": outcome if isinstance(outcome, str) else "ok"}
            result = _check_result("healthy", started, **details)

        self.last_results[name] = result
        return result

    async def run_all_checks(self) -> Dict[str, Any]:
        """Run every check; the overall status is healthy only if all of them are."""
        results = {name: await self.run_check(name) for name in self.checks}
        healthy = all(result["status"] == "healthy" for result in results.values())
        return {
            "overall_status": "healthy" if healthy else "unhealthy",
            "checks": results,
            "timestamp": datetime.utcnow().isoformat(),
        }
