import datetime
from concurrent.futures import ThreadPoolExecutor
import pytest
from clubsphere.models import (
    Club,
    Event,
    EventKind,
    EventRegistration,
    Payment,
    PaymentKind,
    PaymentStatus,
    RegistrationStatus,
    Role,
    User,
)
from clubsphere.storage import DuplicateKeyError, Store


def _payment(tx: str, subject: str = "c1") -> Payment:
    return Payment(
        kind=PaymentKind.CLUB_MEMBERSHIP,
        subject_id=subject,
        amount_minor=500,
        currency="usd",
        payer_email="a@x.com",
        transaction_id=tx,
    )


def test_store_requires_open(tmp_path):
    store = Store(f"sqlite:///{tmp_path / 'closed.db'}")
    with pytest.raises(RuntimeError):
        store.get_club("c1")


def test_sqlite_url_forms(tmp_path):
    assert Store(f"sqlite:///{tmp_path / 'a.db'}").path == tmp_path / "a.db"
    assert str(Store("sqlite:///relative.db").path) == "relative.db"


def test_club_roundtrip_preserves_enums(store):
    club = Club(name="Chess Club", creator_email="a@x.com", membership_fee=500, category="games")
    store.create_club(club)
    loaded = store.get_club(club.id)
    assert loaded.name == "Chess Club"
    assert loaded.payment_status is PaymentStatus.PENDING
    assert loaded.category == "games"
    assert loaded.created_at == club.created_at


def test_payment_transaction_unique(store):
    store.create_payment(_payment("pi_1"))
    with pytest.raises(DuplicateKeyError):
        store.create_payment(_payment("pi_1", subject="c2"))
    assert store.list_payments(["c1", "c2"])[0].transaction_id == "pi_1"
    assert len(store.list_payments(["c1", "c2"])) == 1


def test_registration_unique_per_event_and_email(store):
    store.create_registration(EventRegistration(event_id="e1", email="b@x.com"))
    with pytest.raises(DuplicateKeyError):
        store.create_registration(EventRegistration(event_id="e1", email="b@x.com"))
    # same email on another event is fine
    store.create_registration(EventRegistration(event_id="e2", email="b@x.com"))
    assert store.count_registrations("e1") == 1


def test_user_email_unique(store):
    store.create_user(User(email="a@x.com"))
    with pytest.raises(DuplicateKeyError):
        store.create_user(User(email="a@x.com", role=Role.ADMIN))


def test_mark_club_paid_only_from_pending(store):
    club = Club(name="C", creator_email="a@x.com", membership_fee=100)
    store.create_club(club)
    now = datetime.datetime.now(datetime.timezone.utc)
    assert store.mark_club_paid(club.id, "TRK-1", now) is True
    assert store.mark_club_paid(club.id, "TRK-2", now) is False
    assert store.get_club(club.id).tracking_code == "TRK-1"


def test_reserve_seat_respects_capacity(store):
    event = Event(club_id="c1", title="Open day", date_time="2030-01-01T10:00", creator_email="a@x.com",
                  max_attendees=2)
    store.create_event(event)
    assert store.reserve_seat(event.id)
    assert store.reserve_seat(event.id)
    assert not store.reserve_seat(event.id)
    assert store.get_event(event.id).attendees == 2


def test_reserve_seat_unlimited(store):
    event = Event(club_id="c1", title="Open day", date_time="2030-01-01T10:00", creator_email="a@x.com")
    store.create_event(event)
    for _ in range(5):
        assert store.reserve_seat(event.id)
    assert store.get_event(event.id).attendees == 5


def test_transaction_rollback(store):
    event = Event(club_id="c1", title="T", date_time="2030-01-01", creator_email="a@x.com",
                  kind=EventKind.PAID, price=1000)
    store.create_event(event)
    with pytest.raises(RuntimeError):
        with store.transaction() as conn:
            store.create_payment(_payment("pi_rollback"), conn=conn)
            store.increment_attendees(event.id, conn=conn)
            raise RuntimeError("boom")

    assert store.get_payment_by_transaction("pi_rollback") is None
    assert store.get_event(event.id).attendees == 0


def test_search_escapes_wildcards(store):
    store.create_club(Club(name="100% Chess", creator_email="a@x.com", membership_fee=1))
    store.create_club(Club(name="1000 Chess", creator_email="a@x.com", membership_fee=1))
    names = [c.name for c in store.list_clubs(search="0%")]
    assert names == ["100% Chess"]
    assert len(store.list_clubs(search="chess")) == 2


def test_tracking_code_collision_is_duplicate_key(store):
    first = Club(name="A", creator_email="a@x.com", membership_fee=100)
    second = Club(name="B", creator_email="a@x.com", membership_fee=100)
    store.create_club(first)
    store.create_club(second)
    now = datetime.datetime.now(datetime.timezone.utc)
    assert store.mark_club_paid(first.id, "TRK-1", now)
    with pytest.raises(DuplicateKeyError):
        store.mark_club_paid(second.id, "TRK-1", now)
    assert store.get_club(second.id).tracking_code is None


def test_owner_payments_outlive_subject(store):
    store.create_payment(Payment(
        kind=PaymentKind.CLUB_MEMBERSHIP,
        subject_id="gone",
        amount_minor=500,
        currency="usd",
        payer_email="a@x.com",
        owner_email="a@x.com",
        transaction_id="pi_owner",
    ))
    store.create_payment(_payment("pi_other"))
    assert [p.transaction_id for p in store.list_payments_for_owner("a@x.com")] == ["pi_owner"]
    assert store.list_payments_for_owner("b@x.com") == []


def test_paid_registration_count(store):
    store.create_registration(EventRegistration(event_id="e1", email="b@x.com"))
    assert store.count_paid_registrations("e1") == 0
    store.create_registration(EventRegistration(
        event_id="e1", email="c@x.com", payment_status=RegistrationStatus.PAID, transaction_id="pi_c",
    ))
    assert store.count_paid_registrations("e1") == 1


def test_more_callers_than_connections(settings):
    small = Store(settings.database_url, max_connections=2, busy_timeout=10).open()
    try:
        club = Club(name="Busy", creator_email="a@x.com", membership_fee=100)
        small.create_club(club)
        with ThreadPoolExecutor(max_workers=12) as exc:
            results = list(exc.map(lambda _: small.get_club(club.id), range(48)))
        assert all(r.id == club.id for r in results)
    finally:
        small.close()
