from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from refactor_orchestrator.checks import CheckRunner
from refactor_orchestrator.models import CheckResult, Gate, GateVerificationResult, utcnow_iso

logger = logging.getLogger(__name__)


def gate_summary(gate: Gate, checks: Sequence[CheckResult]) -> str:
    total = len(checks)
    passed = sum(1 for check in checks if check.passed)
    if passed == total:
        return f'Quality gate "{gate.name}" passed ({passed}/{total} checks)'
    return f'Quality gate "{gate.name}" failed ({passed}/{total} checks passed)'


class GateVerifier:
    """Runs every check of a gate and folds them into one verdict."""

    def __init__(self, runner: CheckRunner) -> None:
        self.runner = runner

    async def verify(self, gate: Gate) -> GateVerificationResult:
        verified_at = utcnow_iso()
        results: list[CheckResult] = []
        # Every check runs, regardless of earlier failures.
        for check in gate.checks:
            results.append(await self.runner.run(check))
        passed = all(result.passed for result in results)
        summary = gate_summary(gate, results)
        logger.info(summary)
        return GateVerificationResult(
            gate_id=gate.id,
            passed=passed,
            checks=tuple(results),
            summary=summary,
            verified_at=verified_at,
        )

    async def verify_many(self, gates: Iterable[Gate]) -> list[GateVerificationResult]:
        results: list[GateVerificationResult] = []
        for gate in gates:
            result = await self.verify(gate)
            results.append(result)
            if gate.required and not result.passed:
                break
        return results

    @staticmethod
    def all_required_passed(
        results: Iterable[GateVerificationResult], gates: Iterable[Gate]
    ) -> bool:
        by_id = {result.gate_id: result for result in results}
        for gate in gates:
            if not gate.required:
                continue
            result = by_id.get(gate.id)
            if result is None or not result.passed:
                return False
        return True
