from collections.abc import Generator
from types import SimpleNamespace
import uuid

import httpx
import pytest
from fastapi.testclient import TestClient
from typer.testing import CliRunner

from api import app, get_uow
from application import (
    RegisterConstructionTypeCommand,
    RegisterConstructionTypeUseCase,
    RegisterPlotCommand,
    RegisterPlotUseCase,
    StageDefinition,
)
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "SITE_TRACKER_SEED_DEMO",
        "SITE_TRACKER_API_URL",
        "SITE_TRACKER_SAVE_DEBOUNCE_SECONDS",
        "SITE_TRACKER_HTTP_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture()
def uow(db: InMemoryDatabase) -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork(db)


@pytest.fixture()
def client(db: InMemoryDatabase) -> Generator[TestClient, None, None]:
    app.dependency_overrides[get_uow] = lambda: InMemoryUnitOfWork(db)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def site(uow: InMemoryUnitOfWork) -> SimpleNamespace:
    """One three-stage construction type and one plot built to it."""
    construction_type = RegisterConstructionTypeUseCase().execute(
        RegisterConstructionTypeCommand(
            name="Timber Frame",
            description="Closed-panel timber frame",
            stages=[
                StageDefinition("Foundations", "#78716c"),
                StageDefinition("Superstructure", "#f59e0b"),
                StageDefinition("Roof", "#ef4444"),
            ],
        ),
        uow,
    )
    plot = RegisterPlotUseCase().execute(
        RegisterPlotCommand(
            name="Plot 1",
            construction_type_id=uuid.UUID(construction_type.id),
            street_address="1 Meadow Lane",
            contractor="Northfield Homes",
        ),
        uow,
    )
    return SimpleNamespace(
        construction_type=construction_type,
        plot=plot,
        plot_id=plot.id,
        stage_ids=[s.id for s in construction_type.stages],
    )


@pytest.fixture()
def api_transport(client: TestClient) -> httpx.MockTransport:
    """An httpx transport that answers from the in-process app."""

    def handler(request: httpx.Request) -> httpx.Response:
        response = client.request(
            request.method,
            request.url.raw_path.decode(),
            content=request.content,
            headers={"content-type": request.headers.get("content-type", "application/json")},
        )
        return httpx.Response(
            response.status_code,
            content=response.content,
            headers={"content-type": response.headers.get("content-type", "application/json")},
        )

    return httpx.MockTransport(handler)


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()
