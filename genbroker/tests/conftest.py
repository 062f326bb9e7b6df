import os
from typing import Any, Callable

import pytest
from fastapi.testclient import TestClient

# Settings are read at import time: configure BEFORE any app import
os.environ.setdefault("APP_ENV", "dev")
os.environ.setdefault("GENBROKER_DATABASE_URL", "sqlite:///./genbroker-test.db")
os.environ["GENBROKER_SETTINGS_FILE"] = os.path.join(os.path.dirname(__file__), "missing-settings.toml")
os.environ.setdefault("GENBROKER_INTERNAL_API_TOKEN", "test-internal-token")
os.environ.setdefault("GENBROKER_ADMIN_USER_IDS", "admin-1")

from genbroker.app.core.config import settings
from genbroker.app.core.database import Database
from genbroker.app.services.credits import CreditLedger
from genbroker.app.services.jobs import JobStore
from genbroker.app.services.notifications import NotificationDispatcher, Notifier
from genbroker.app.services.orchestrator import JobOrchestrator
from genbroker.app.services.providers.base import GenerationProvider, GenerationResult
from genbroker.app.services.queue import RetryPolicy
from genbroker.app.services.runtime import Runtime
from genbroker.app.services.validation import RequestValidator, UsageLimiter

INTERNAL_TOKEN = "test-internal-token"
ADMIN_ID = "admin-1"


class FakeProvider(GenerationProvider):
    """Returns queued outcomes in order, then a default success.

    An outcome is a GenerationResult, an exception to raise, or a callable
    taking the call dict and returning either of those.
    """

    def __init__(self, default_cost: int | None = None):
        self.default_cost = default_cost
        self.outcomes: list[Any] = []
        self.calls: list[dict[str, Any]] = []

    def queue(self, *outcomes: Any) -> "FakeProvider":
        self.outcomes.extend(outcomes)
        return self

    def generate(self, type: str, prompt: str, model: str, params: dict[str, Any]) -> GenerationResult:
        call = {"type": type, "prompt": prompt, "model": model, "params": dict(params)}
        self.calls.append(call)
        outcome: Any = self.outcomes.pop(0) if self.outcomes else None
        if callable(outcome) and not isinstance(outcome, GenerationResult):
            outcome = outcome(call)
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            return GenerationResult(
                success=True,
                result_url="https://cdn.example.com/result.png",
                credits_used=self.default_cost if self.default_cost is not None else 1,
                metadata={"provider": "fake"},
            )
        return outcome


class RecordingNotifier(Notifier):
    def __init__(self, failures: int = 0):
        self.failures = failures
        self.sent: list[tuple[str, str]] = []
        self.attempts = 0

    def send(self, user_id: str, message: str) -> None:
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("discord unavailable")
        self.sent.append((user_id, message))

    def messages_for(self, user_id: str) -> list[str]:
        return [message for uid, message in self.sent if uid == user_id]


@pytest.fixture
def db(tmp_path) -> Database:
    database = Database(url=f"sqlite:///{tmp_path / 'genbroker.db'}")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger(db: Database) -> CreditLedger:
    return CreditLedger(db)


@pytest.fixture
def job_store(db: Database) -> JobStore:
    return JobStore(db)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier: RecordingNotifier) -> NotificationDispatcher:
    return NotificationDispatcher(notifier, concurrency=1, retry_policy=RetryPolicy(max_attempts=3, backoff_seconds=0))


@pytest.fixture
def orchestrator_factory(
    ledger: CreditLedger,
    job_store: JobStore,
    provider: FakeProvider,
    dispatcher: NotificationDispatcher,
) -> Callable[..., JobOrchestrator]:
    def build(**overrides: Any) -> JobOrchestrator:
        options: dict[str, Any] = {
            "usage_limiter": UsageLimiter(job_store, max_concurrent=10, max_per_hour=100, max_per_day=100),
            "retry_policy": RetryPolicy(max_attempts=3, backoff_seconds=0),
            "concurrency": 2,
            "start_delay_seconds": 0,
            "low_balance_threshold": 100,
        }
        options.update(overrides)
        return JobOrchestrator(ledger, job_store, provider, RequestValidator(), dispatcher, **options)

    return build


@pytest.fixture
def orchestrator(orchestrator_factory) -> JobOrchestrator:
    orch = orchestrator_factory()
    yield orch
    orch.stop(timeout=2)


@pytest.fixture
def runtime(db, ledger, job_store, dispatcher, orchestrator) -> Runtime:
    return Runtime(db=db, ledger=ledger, jobs=job_store, dispatcher=dispatcher, orchestrator=orchestrator)


@pytest.fixture
def client(monkeypatch, runtime: Runtime) -> TestClient:
    from genbroker.main import app

    # Tests drive the queues with drain(); no background workers or scheduler.
    monkeypatch.setattr(settings, "api_run_workers", False)
    monkeypatch.setattr(settings, "internal_api_token", INTERNAL_TOKEN)
    monkeypatch.setattr(settings, "admin_user_ids", [ADMIN_ID])

    app.state.runtime = runtime
    with TestClient(app) as test_client:
        yield test_client
    app.state.runtime = None


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {INTERNAL_TOKEN}"}


@pytest.fixture
def admin_headers(auth_headers) -> dict[str, str]:
    return {**auth_headers, "X-Acting-User": ADMIN_ID}


@pytest.fixture
def funded_user(ledger: CreditLedger) -> Callable[..., str]:
    def make(user_id: str = "user-1", credits: int = 100) -> str:
        ledger.ensure_account(user_id, initial_grant=credits)
        return user_id

    return make
