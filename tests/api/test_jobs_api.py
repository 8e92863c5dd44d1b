from datetime import timedelta

import pytest

from fitter.api.jobs import get_pipeline_jobs
from fitter.db.models import DailySummary, Suggestion
from fitter.services.jobs import PipelineJobs


@pytest.fixture
def jobs_client(app, client, config, session_factory, make_gateway, fixed_clock, ok_payload):
    gateway, transport = make_gateway(lambda model, window: ok_payload)
    jobs = PipelineJobs(config, session_factory, gateway=gateway, clock=fixed_clock)
    app.dependency_overrides[get_pipeline_jobs] = lambda: jobs
    return client, transport


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_run_suggestions_job(jobs_client, db_session, create_user) -> None:
    client, transport = jobs_client
    ready = create_user()
    create_user(onboarded=False)

    response = client.post("/jobs/suggestions/run")
    assert response.status_code == 200
    body = response.json()
    assert body["job"] == "suggestions"
    assert body["succeeded"] == [ready.id]
    assert body["failed"] == []
    assert len(transport.calls) == 1

    rerun = client.post("/jobs/suggestions/run").json()
    assert rerun["skipped"] == [ready.id]
    db_session.expire_all()
    assert db_session.query(Suggestion).count() == 3


def test_run_suggestions_job_reports_failures(app, client, config, session_factory, make_gateway, fixed_clock, create_user) -> None:
    gateway, _ = make_gateway(lambda model, window: "")
    app.dependency_overrides[get_pipeline_jobs] = lambda: PipelineJobs(
        config, session_factory, gateway=gateway, clock=fixed_clock
    )
    user = create_user()

    body = client.post("/jobs/suggestions/run").json()
    assert body["succeeded"] == []
    assert body["failed"][0]["user_id"] == user.id
    assert body["failed"][0]["error_type"] == "ProviderUnavailable"


def test_run_expire_job(jobs_client, db_session, create_user, seed_suggestion, fixed_now) -> None:
    client, _ = jobs_client
    user = create_user()
    stale = seed_suggestion(user.id, generated_at=fixed_now - timedelta(days=2))
    seed_suggestion(user.id)

    response = client.post("/jobs/expire/run")
    assert response.status_code == 200
    assert response.json() == {"job": "expire", "count": 1}
    db_session.expire_all()
    assert stale.status == "dismissed"


def test_run_aggregate_job_for_day(jobs_client, db_session, create_user) -> None:
    client, _ = jobs_client
    user = create_user()

    response = client.post("/jobs/aggregate/run", params={"day": "2026-10-17"})
    assert response.status_code == 200
    assert response.json()["succeeded"] == [user.id]
    db_session.expire_all()
    row = db_session.query(DailySummary).filter(DailySummary.user_id == user.id).one()
    assert row.date.isoformat() == "2026-10-17T00:00:00"


def test_day_only_valid_for_aggregate(jobs_client) -> None:
    client, _ = jobs_client
    assert client.post("/jobs/expire/run", params={"day": "2026-10-17"}).status_code == 422


def test_unknown_job(jobs_client) -> None:
    client, _ = jobs_client
    assert client.post("/jobs/reindex/run").status_code == 422


def test_serve_runs_uvicorn_with_env(monkeypatch) -> None:
    from fitter import main

    seen: dict = {}
    monkeypatch.setattr(main.uvicorn, "run", lambda target, **kwargs: seen.update(target=target, **kwargs))
    monkeypatch.setenv("API_HOST", "0.0.0.0")
    monkeypatch.setenv("API_PORT", "9001")

    main.serve()

    assert seen["target"] == "fitter.main:app"
    assert seen["host"] == "0.0.0.0"
    assert seen["port"] == 9001
