import asyncio
import json
from pathlib import Path

import httpx

from refactor_orchestrator.learning import HttpLearningSink, LocalLearningSink, NullLearningSink
from refactor_orchestrator.models import EstimationFactor, EstimationFeedback, Outcome


def _outcome() -> Outcome:
    return Outcome(
        id="outcome-project-1",
        project_id="project-1",
        rating="good",
        success=True,
        coverage_delta=12.0,
        quality_delta=8.0,
    )


def _feedback() -> list[EstimationFeedback]:
    return [
        EstimationFeedback(
            task_id="t1",
            category="testing",
            description="Cover the service layer",
            estimated_hours=2.0,
            actual_hours=3.0,
            accuracy=50,
            factors=(
                EstimationFactor(
                    factor="Test writing complexity",
                    impact="negative",
                    magnitude=0.5,
                ),
            ),
        )
    ]


def test_local_sink_appends_json_lines(tmp_path: Path) -> None:
    sink = LocalLearningSink(tmp_path / "learning")

    asyncio.run(sink.record_outcome(_outcome()))
    asyncio.run(sink.record_outcome(_outcome()))
    asyncio.run(sink.record_estimation_feedback(_feedback()))

    outcome_lines = sink.outcomes_file.read_text(encoding="utf-8").splitlines()
    assert len(outcome_lines) == 2
    assert json.loads(outcome_lines[0])["project_id"] == "project-1"

    (feedback_line,) = sink.feedback_file.read_text(encoding="utf-8").splitlines()
    record = json.loads(feedback_line)
    assert record["task_id"] == "t1"
    assert record["factors"][0]["factor"] == "Test writing complexity"
    assert "recorded_at" in record


def test_http_sink_posts_outcome_and_feedback() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"ok": True})

    sink = HttpLearningSink("http://learning.test/api/", transport=httpx.MockTransport(handler))

    asyncio.run(sink.record_outcome(_outcome()))
    asyncio.run(sink.record_estimation_feedback(_feedback()))

    assert [request.method for request in requests] == ["POST", "POST"]
    assert str(requests[0].url) == "http://learning.test/api/learning/outcomes"
    assert json.loads(requests[0].content)["rating"] == "good"
    assert str(requests[1].url) == "http://learning.test/api/learning/estimation-feedback"
    assert json.loads(requests[1].content)["feedback"][0]["accuracy"] == 50


def test_http_sink_skips_empty_feedback() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(200)

    sink = HttpLearningSink("http://learning.test/api", transport=httpx.MockTransport(handler))

    asyncio.run(sink.record_estimation_feedback([]))

    assert requests == []


def test_http_sink_tolerates_server_and_transport_errors() -> None:
    def server_error(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="database unavailable")

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler in (server_error, unreachable):
        sink = HttpLearningSink("http://learning.test/api", transport=httpx.MockTransport(handler))
        asyncio.run(sink.record_outcome(_outcome()))
        asyncio.run(sink.record_estimation_feedback(_feedback()))


def test_http_sink_health_check() -> None:
    def healthy(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/api/health"
        return httpx.Response(200, json={"status": "ok"})

    def unreachable(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    up = HttpLearningSink("http://learning.test/api", transport=httpx.MockTransport(healthy))
    down = HttpLearningSink("http://learning.test/api", transport=httpx.MockTransport(unreachable))

    assert asyncio.run(up.health_check()) is True
    assert asyncio.run(down.health_check()) is False


def test_null_sink_accepts_everything() -> None:
    sink = NullLearningSink()

    asyncio.run(sink.record_outcome(_outcome()))
    asyncio.run(sink.record_estimation_feedback(_feedback()))
