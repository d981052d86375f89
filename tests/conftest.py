import psycopg2
import pytest
import testing.postgresql
from fastapi.testclient import TestClient
from clubsphere.api import create_app
from clubsphere.config import Settings
from clubsphere.gateway import CheckoutSession
from clubsphere.services.exceptions import BadRequest, Unauthorized
from clubsphere.storage import Store


class FakeVerifier:
    """Accepts bearer tokens of the form ``tok:<email>``."""

    def verify(self, token: str) -> str:
        if not token.startswith("tok:") or len(token) == 4:
            raise Unauthorized("Unauthorized access: Invalid token")
        return token[4:]


class FakeGateway:
    """In-memory checkout sessions with the gateway client's interface."""

    def __init__(self):
        self.sessions: dict[str, CheckoutSession] = {}
        self.created: list[dict] = []
        self.fail_with: Exception | None = None

    def create_session(self, **kwargs) -> CheckoutSession:
        sid = f"cs_test_{len(self.created) + 1}"
        self.created.append(kwargs)
        session = CheckoutSession(
            id=sid,
            payment_status="unpaid",
            amount_total=kwargs["amount"],
            currency=kwargs["currency"],
            payer_email=kwargs["customer_email"],
            payment_intent=None,
            metadata=dict(kwargs["metadata"]),
            url=f"https://checkout.stripe.test/{sid}",
        )
        self.sessions[sid] = session
        return session

    def add_session(self, sid: str, metadata: dict, *, paid: bool = True, amount: int = 500,
                    email: str | None = None, intent: str | None = None) -> CheckoutSession:
        session = CheckoutSession(
            id=sid,
            payment_status="paid" if paid else "unpaid",
            amount_total=amount,
            currency="usd",
            payer_email=email,
            payment_intent=intent or (f"pi_{sid}" if paid else None),
            metadata=metadata,
        )
        self.sessions[sid] = session
        return session

    def pay(self, sid: str) -> CheckoutSession:
        session = self.sessions[sid]
        session.payment_status = "paid"
        session.payment_intent = f"pi_{sid}"
        return session

    def retrieve_session(self, session_id: str) -> CheckoutSession:
        if self.fail_with is not None:
            raise self.fail_with
        if session_id not in self.sessions:
            raise BadRequest("Invalid session_id")
        return self.sessions[session_id]


_TABLES = "users, clubs, events, event_registrations, payments"


@pytest.fixture(scope="session")
def postgresql_server():
    try:
        server = testing.postgresql.Postgresql()
    except RuntimeError as exc:
        pytest.skip(f"PostgreSQL unavailable: {exc}")
    yield server
    server.stop()


@pytest.fixture(params=["sqlite", "postgres"])
def database_url(request, tmp_path):
    if request.param == "sqlite":
        yield f"sqlite:///{tmp_path / 'clubsphere.db'}"
        return
    server = request.getfixturevalue("postgresql_server")
    yield server.url()
    conn = psycopg2.connect(server.url())
    try:
        with conn, conn.cursor() as cur:
            cur.execute(f"TRUNCATE {_TABLES}")
    finally:
        conn.close()


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        stripe_secret="sk_test_123",
        site_domain="https://clubs.example",
        firebase_project_id="clubsphere-test",
    )


@pytest.fixture
def store(settings):
    s = Store(settings.database_url).open()
    yield s
    s.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(settings, store, gateway):
    app = create_app(settings, store=store, gateway=gateway, verifier=FakeVerifier())
    with TestClient(app) as c:
        yield c
