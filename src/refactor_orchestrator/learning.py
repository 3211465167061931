from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import asdict
from pathlib import Path
from typing import Any

import httpx

from refactor_orchestrator.models import EstimationFeedback, Outcome, utcnow_iso

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8000/api"


class LearningSink(ABC):
    """Fire-and-forget receiver of outcomes; implementations never raise on transport errors."""

    @abstractmethod
    async def record_outcome(self, outcome: Outcome) -> None:
        raise NotImplementedError

    @abstractmethod
    async def record_estimation_feedback(self, feedback: Sequence[EstimationFeedback]) -> None:
        raise NotImplementedError


class NullLearningSink(LearningSink):
    async def record_outcome(self, outcome: Outcome) -> None:
        logger.debug("Learning disabled, skipping outcome %s", outcome.id)

    async def record_estimation_feedback(self, feedback: Sequence[EstimationFeedback]) -> None:
        return None


class LocalLearningSink(LearningSink):
    """Appends JSON lines under the state directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.outcomes_file = directory / "outcomes.jsonl"
        self.feedback_file = directory / "estimation_feedback.jsonl"

    def _append(self, path: Path, payload: dict[str, Any]) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("Failed to write learning record to %s: %s", path, exc)

    async def record_outcome(self, outcome: Outcome) -> None:
        self._append(self.outcomes_file, outcome.to_dict())
        logger.info("Recorded outcome %s", outcome.id)

    async def record_estimation_feedback(self, feedback: Sequence[EstimationFeedback]) -> None:
        recorded_at = utcnow_iso()
        for item in feedback:
            self._append(self.feedback_file, {"recorded_at": recorded_at, **asdict(item)})


class HttpLearningSink(LearningSink):
    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout_seconds: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self.transport,
        )

    async def _post(self, path: str, payload: Any) -> bool:
        try:
            async with self._client() as client:
                response = await client.post(path, json=payload)
                if response.status_code >= 400:
                    logger.warning(
                        "Learning sink rejected %s: %s %s",
                        path,
                        response.status_code,
                        response.text[:200],
                    )
                    return False
        except httpx.TimeoutException:
            logger.warning("Learning sink request to %s timed out", path)
            return False
        except httpx.HTTPError as exc:
            logger.warning("Learning sink request to %s failed: %s", path, exc)
            return False
        return True

    async def record_outcome(self, outcome: Outcome) -> None:
        if await self._post("/learning/outcomes", outcome.to_dict()):
            logger.info("Recorded outcome %s", outcome.id)

    async def record_estimation_feedback(self, feedback: Sequence[EstimationFeedback]) -> None:
        if not feedback:
            return
        payload = {"feedback": [asdict(item) for item in feedback]}
        if await self._post("/learning/estimation-feedback", payload):
            logger.info("Recorded %d estimation feedback entries", len(feedback))

    async def health_check(self) -> bool:
        try:
            async with self._client() as client:
                response = await client.get("/health")
        except httpx.HTTPError as exc:
            logger.warning("Learning sink health check failed: %s", exc)
            return False
        return response.status_code == 200
