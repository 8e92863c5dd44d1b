import json
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Optional
from uuid import uuid4

# Bind the import-time engine to a throwaway file before any fitter import.
os.environ.setdefault("DB_PATH", str(Path(tempfile.gettempdir()) / f"fitter_pytest_{os.getpid()}.db"))

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy.orm import Session  # noqa: E402

from fitter.core.config import PipelineConfig  # noqa: E402
from fitter.db.models import Log, NutritionLog, Suggestion, User  # noqa: E402
from fitter.db.session import SessionLocal, configure_database, create_tables  # noqa: E402
from fitter.services.ai_gateway import AIGateway, ContextWindow  # noqa: E402

FIXED_NOW = datetime(2026, 10, 18, 6, 0, 0)

Responder = Callable[[str, ContextWindow], str]


class FakeTransport:
    name = "fake"

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.calls: list[tuple[str, ContextWindow]] = []

    def complete(self, model: str, window: ContextWindow, timeout: httpx.Timeout) -> str:
        self.calls.append((model, window))
        return self.responder(model, window)

    @property
    def models_called(self) -> list[str]:
        return [model for model, _ in self.calls]


@pytest.fixture(scope="session")
def fixture_dir() -> Path:
    return Path(__file__).resolve().parent / "fixtures" / "llm"


@pytest.fixture(scope="session")
def ok_payload(fixture_dir: Path) -> str:
    return (fixture_dir / "OK_SUGGESTIONS.json").read_text(encoding="utf-8")


@pytest.fixture(scope="session")
def malformed_payload(fixture_dir: Path) -> str:
    return (fixture_dir / "MALFORMED.txt").read_text(encoding="utf-8")


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    db_path = tmp_path / "fitter_test.db"
    configure_database(str(db_path))
    create_tables()
    return db_path


@pytest.fixture
def session_factory(test_db_path: Path):
    return SessionLocal


@pytest.fixture
def db_session(test_db_path: Path):
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def config(test_db_path: Path) -> PipelineConfig:
    return PipelineConfig(
        ai_api_key="test-key",
        ai_retry_backoff_seconds=0.0,
        batch_max_workers=1,
        batch_user_timeout_seconds=10.0,
        db_path=str(test_db_path),
    )


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def fixed_clock() -> Callable[[], datetime]:
    return lambda: FIXED_NOW


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def make_gateway(config: PipelineConfig, sleeps: list[float]):
    def _make(responder: Responder, **overrides) -> tuple[AIGateway, FakeTransport]:
        transport = FakeTransport(responder)
        gateway_config = config.with_overrides(**overrides) if overrides else config
        return AIGateway(gateway_config, transport=transport, sleep=sleeps.append), transport

    return _make


@pytest.fixture
def create_user(db_session: Session) -> Callable[..., User]:
    def _create_user(
        onboarded: bool = True, goals: Optional[list[str]] = None, **fields
    ) -> User:
        user = User(
            email=f"user_{uuid4().hex[:10]}@test.com",
            completed_onboarding=onboarded,
            goals_json=json.dumps(goals) if goals is not None else None,
            age=fields.pop("age", 34),
            height_cm=fields.pop("height_cm", 172.0),
            weight_kg=fields.pop("weight_kg", 70.0),
            **fields,
        )
        db_session.add(user)
        db_session.commit()
        db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
def seed_log(db_session: Session) -> Callable[..., Log]:
    def _seed(user_id: int, log_type: str, value: float, when: datetime, unit: Optional[str] = None) -> Log:
        row = Log(user_id=user_id, type=log_type, value=value, unit=unit, date=when)
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_meal(db_session: Session) -> Callable[..., NutritionLog]:
    def _seed(
        user_id: int,
        when: datetime,
        calories: float = 0.0,
        protein: float = 0.0,
        carbs: float = 0.0,
        fat: float = 0.0,
        meal_type: str = "lunch",
        micronutrients: Optional[dict] = None,
    ) -> NutritionLog:
        row = NutritionLog(
            user_id=user_id,
            date=when,
            meal_type=meal_type,
            items_json=json.dumps(
                [{"name": "meal", "calories": calories, "protein": protein, "carbs": carbs, "fat": fat}]
            ),
            total_calories=calories,
            total_protein=protein,
            total_carbs=carbs,
            total_fat=fat,
            micronutrients_json=json.dumps(micronutrients) if micronutrients is not None else None,
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def seed_suggestion(db_session: Session) -> Callable[..., Suggestion]:
    def _seed(
        user_id: int,
        status: str = "active",
        generated_at: datetime = FIXED_NOW,
        expires_at: Optional[datetime] = None,
        priority: str = "medium",
        title: str = "Walk after lunch",
    ) -> Suggestion:
        row = Suggestion(
            user_id=user_id,
            title=title,
            description="A 10 minute walk helps digestion.",
            category="exercise",
            priority=priority,
            status=status,
            emoji="🚶",
            generated_at=generated_at,
            expires_at=expires_at if expires_at is not None else generated_at + timedelta(hours=24),
        )
        db_session.add(row)
        db_session.commit()
        db_session.refresh(row)
        return row

    return _seed


@pytest.fixture
def app(test_db_path: Path):
    from fitter.main import app as fastapi_app

    return fastapi_app


@pytest.fixture
def client(app):
    app.dependency_overrides = {}
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides = {}
