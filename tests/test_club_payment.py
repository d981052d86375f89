from concurrent.futures import ThreadPoolExecutor
from clubsphere.models import PaymentKind
from clubsphere.services import payments
from clubsphere.services import users as user_service
from clubsphere.services.exceptions import UpstreamFailure


def auth(email):
    return {"Authorization": f"Bearer tok:{email}"}


def create_club(client, email="a@x.com", name="Chess Club", fee=500):
    resp = client.post(
        "/clubs",
        json={"name": name, "creator_email": email, "membership_fee": fee},
        headers=auth(email),
    )
    assert resp.status_code == 200
    return resp.json()["club_id"]


def checkout(client, gateway, club_id):
    resp = client.post("/create-club-checkout-session", json={"club_id": club_id})
    assert resp.status_code == 200
    sid = resp.json()["url"].rsplit("/", 1)[1]
    return gateway.sessions[sid]


def test_club_payment_end_to_end(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)

    created = gateway.created[0]
    assert created["amount"] == 500
    assert created["description"] == "Chess Club"
    assert created["customer_email"] == "a@x.com"
    assert created["success_url"] == "https://clubs.example/dashboard/payment-success?session_id={CHECKOUT_SESSION_ID}"
    assert created["metadata"]["subject_kind"] == "club_membership"
    assert created["metadata"]["subject_ref"] == club_id

    # checkout alone changes nothing
    assert store.get_club(club_id).payment_status.value == "pending"

    gateway.pay(session.id)
    resp = client.patch(f"/club-payment-success?session_id={session.id}")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["duplicate"] is False
    assert body["payment"]["amount"] == 5.0
    assert body["payment"]["kind"] == "club_membership"

    club = client.get(f"/clubs/{club_id}").json()
    assert club["payment_status"] == "paid"
    assert club["tracking_code"].startswith("TRK-")
    assert len(store.list_payments([club_id])) == 1


def test_confirm_is_idempotent(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)

    first = client.patch(f"/club-payment-success?session_id={session.id}").json()
    tracking = store.get_club(club_id).tracking_code
    second = client.patch(f"/club-payment-success?session_id={session.id}").json()

    assert second["duplicate"] is True
    assert second["payment"]["id"] == first["payment"]["id"]
    assert store.get_club(club_id).tracking_code == tracking
    assert len(store.list_payments([club_id])) == 1


def test_concurrent_confirmations_record_one_payment(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)

    def confirm(_):
        return client.patch(f"/club-payment-success?session_id={session.id}")

    with ThreadPoolExecutor(max_workers=4) as exc:
        responses = list(exc.map(confirm, range(4)))

    assert all(r.status_code == 200 for r in responses)
    assert len({r.json()["payment"]["id"] for r in responses}) == 1
    assert len(store.list_payments([club_id])) == 1


def test_unpaid_session_rejected(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)

    resp = client.patch(f"/club-payment-success?session_id={session.id}")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "Payment not completed"
    assert store.list_payments([club_id]) == []
    assert store.get_club(club_id).tracking_code is None


def test_missing_session_id(client):
    resp = client.patch("/club-payment-success")
    assert resp.status_code == 400
    assert resp.json()["detail"] == "session_id missing"


def test_unknown_session_id(client):
    resp = client.patch("/club-payment-success?session_id=cs_nope")
    assert resp.status_code == 400


def test_invalid_metadata(client, gateway):
    gateway.add_session("cs_bad", {"v": "1", "subject_kind": "trophy", "subject_ref": "x", "payer_email": "a@x.com"})
    resp = client.patch("/club-payment-success?session_id=cs_bad")
    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Invalid session metadata")

    gateway.add_session("cs_empty", {})
    assert client.patch("/club-payment-success?session_id=cs_empty").status_code == 400


def test_event_session_rejected_on_club_endpoint(client, gateway):
    gateway.add_session(
        "cs_evt",
        {"v": "1", "subject_kind": "event_registration", "subject_ref": "e1", "payer_email": "a@x.com"},
    )
    resp = client.patch("/club-payment-success?session_id=cs_evt")
    assert resp.status_code == 400


def test_authenticated_confirm_must_match_payer(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)

    resp = client.patch(f"/club-payment-success?session_id={session.id}", headers=auth("mallory@x.com"))
    assert resp.status_code == 403
    assert store.list_payments([club_id]) == []

    resp = client.patch(f"/club-payment-success?session_id={session.id}", headers=auth("a@x.com"))
    assert resp.status_code == 200


def test_legacy_session_metadata(client, gateway, store):
    club_id = create_club(client)
    gateway.add_session("cs_legacy", {"clubId": club_id, "clubName": "Chess Club"}, email="a@x.com")

    resp = client.patch("/club-payment-success?session_id=cs_legacy")
    assert resp.status_code == 200
    assert resp.json()["payment"]["kind"] == PaymentKind.LEGACY.value
    assert store.get_club(club_id).payment_status.value == "paid"


def test_gateway_timeout_is_retryable_and_writes_nothing(client, gateway, store):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)
    gateway.fail_with = UpstreamFailure("Payment gateway unavailable, please retry")

    resp = client.patch(f"/club-payment-success?session_id={session.id}")
    assert resp.status_code == 500
    assert resp.json()["retryable"] is True
    assert store.list_payments([club_id]) == []

    gateway.fail_with = None
    assert client.patch(f"/club-payment-success?session_id={session.id}").status_code == 200


def test_checkout_rejects_paid_or_missing_club(client, gateway):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)
    client.patch(f"/club-payment-success?session_id={session.id}")

    assert client.post("/create-club-checkout-session", json={"club_id": club_id}).status_code == 409
    assert client.post("/create-club-checkout-session", json={"club_id": "missing"}).status_code == 404


def test_payment_history_self_only(client, gateway):
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)
    client.patch(f"/club-payment-success?session_id={session.id}")

    resp = client.get("/payments?email=a@x.com", headers=auth("a@x.com"))
    assert resp.status_code == 200
    assert [p["subject_id"] for p in resp.json()] == [club_id]

    assert client.get("/payments?email=a@x.com", headers=auth("b@x.com")).status_code == 403
    assert client.get("/payments", headers=auth("a@x.com")).status_code == 400
    assert client.get("/payments?email=a@x.com").status_code == 401


def test_tracking_code_collision_retries_with_fresh_code(client, gateway, store, monkeypatch):
    codes = iter(["TRK-1-AAAA", "TRK-1-AAAA", "TRK-2-BBBB"])
    monkeypatch.setattr(payments, "generate_tracking_code", lambda: next(codes))

    first = create_club(client, name="First")
    second = create_club(client, name="Second")
    for club_id in (first, second):
        session = checkout(client, gateway, club_id)
        gateway.pay(session.id)
        assert client.patch(f"/club-payment-success?session_id={session.id}").status_code == 200

    assert store.get_club(first).tracking_code == "TRK-1-AAAA"
    assert store.get_club(second).tracking_code == "TRK-2-BBBB"
    assert len(store.list_payments([second])) == 1


def test_rejected_paid_club_stays_in_owner_history(client, gateway, store):
    user_service.set_role_by_email(store, "admin@x.com", "admin")
    club_id = create_club(client)
    session = checkout(client, gateway, club_id)
    gateway.pay(session.id)
    client.patch(f"/club-payment-success?session_id={session.id}")

    assert client.delete(f"/admin/clubs/reject/{club_id}", headers=auth("admin@x.com")).status_code == 200
    history = client.get("/payments?email=a@x.com", headers=auth("a@x.com")).json()
    assert [(p["subject_id"], p["subject_name"]) for p in history] == [(club_id, "Chess Club")]
