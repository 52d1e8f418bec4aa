from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from conftest import make_token
from ride_payments import payout_methods
from ride_payments.errors import Conflict, NotFound
from ride_payments.models import PayoutMethod, User

BANK_DETAILS = {
    "account_holder_name": "  Dana Driver ",
    "institution_number": "001",
    "transit_number": "12345",
    "account_number": "9876543",
    "paypal_email": "ignored@example.com",
}


@pytest.fixture
def driver(db):
    db.add(User(id="driver-1", email="driver@example.com"))
    db.add(User(id="driver-2", email="other@example.com"))
    db.commit()
    return "driver-1"


def add_method(db, user_id, method_id, is_default=False, age_minutes=0, payout_type="paypal"):
    created = datetime.now(timezone.utc) - timedelta(minutes=age_minutes)
    db.add(PayoutMethod(id=method_id, user_id=user_id, payout_type=payout_type,
                        paypal_email=f"{method_id}@example.com", is_default=is_default,
                        created_at=created, updated_at=created))
    db.commit()


def defaults_for(db, user_id):
    db.expire_all()
    return [m.id for m in db.query(PayoutMethod).filter_by(user_id=user_id, is_default=True)]


def test_create_bank_transfer_method(client, db, driver, auth_headers):
    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "bank_transfer", "details": BANK_DETAILS},
        headers=auth_headers(driver),
    )

    assert response.status_code == 201
    body = response.json()
    assert body["statusCode"] == 201
    method = body["data"]["payout_method"]
    assert method["account_holder_name"] == "Dana Driver"
    assert method["account_number"] == "9876543"
    assert method["paypal_email"] is None
    assert method["is_default"] is False


def test_create_with_make_default_demotes_previous(client, db, driver, auth_headers):
    add_method(db, driver, "pm-old", is_default=True)

    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "paypal", "details": {"paypal_email": "new@example.com"},
              "make_default": True},
        headers=auth_headers(driver),
    )

    assert response.status_code == 201
    new_id = response.json()["data"]["payout_method"]["id"]
    assert defaults_for(db, driver) == [new_id]


def test_create_requires_matching_token(client, driver, auth_headers):
    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "paypal", "details": {"paypal_email": "x@example.com"}},
        headers=auth_headers("driver-2"),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized: token does not match user_id"


def test_create_requires_bearer_token(client, driver):
    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "paypal", "details": {}},
    )

    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized: missing bearer token"


def test_forged_token_is_rejected(client, driver):
    forged = make_token(driver, secret="not-the-real-secret")

    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "paypal", "details": {}},
        headers={"Authorization": f"Bearer {forged}"},
    )

    assert response.status_code == 401
    assert response.json()["error"] == "Invalid or missing token"


def test_expired_token_is_rejected(client, driver):
    expired = make_token(driver, expires_in=-60)

    response = client.get(f"/api/stripe/payout-methods?user_id={driver}",
                          headers={"Authorization": f"Bearer {expired}"})

    assert response.status_code == 401


def test_create_for_unknown_user(client, auth_headers):
    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": "ghost", "payout_type": "paypal", "details": {}},
        headers=auth_headers("ghost"),
    )

    assert response.status_code == 404
    assert response.json()["error"] == "User not found"


def test_create_rejects_unknown_payout_type(client, driver, auth_headers):
    response = client.post(
        "/api/stripe/payout-methods",
        json={"user_id": driver, "payout_type": "cheque", "details": {}},
        headers=auth_headers(driver),
    )

    assert response.status_code == 400
    assert response.json()["error"] == "Invalid or missing payout_type"


def test_list_orders_default_first_then_oldest(client, db, driver, auth_headers):
    add_method(db, driver, "pm-a", age_minutes=30)
    add_method(db, driver, "pm-b", is_default=True, age_minutes=10)
    add_method(db, driver, "pm-c", age_minutes=20)
    add_method(db, "driver-2", "pm-other", age_minutes=40)

    response = client.get(f"/api/stripe/payout-methods?user_id={driver}", headers=auth_headers(driver))

    assert response.status_code == 200
    ids = [m["id"] for m in response.json()["data"]["payout_methods"]]
    assert ids == ["pm-b", "pm-a", "pm-c"]


def test_list_without_methods_is_not_found(client, driver, auth_headers):
    response = client.get(f"/api/stripe/payout-methods?user_id={driver}", headers=auth_headers(driver))

    assert response.status_code == 404
    assert response.json()["error"] == "No payout methods found for user"


def test_list_requires_user_id(client, driver, auth_headers):
    response = client.get("/api/stripe/payout-methods", headers=auth_headers(driver))

    assert response.status_code == 400


def test_set_default_demotes_and_promotes(client, db, driver, auth_headers):
    add_method(db, driver, "pm-a", is_default=True)
    add_method(db, driver, "pm-b")
    add_method(db, "driver-2", "pm-other", is_default=True)

    response = client.post(
        "/api/stripe/payout-methods/pm-b/default",
        json={"user_id": driver},
        headers=auth_headers(driver),
    )

    assert response.status_code == 200
    assert response.json()["data"]["payout_method"]["is_default"] is True
    assert defaults_for(db, driver) == ["pm-b"]
    assert defaults_for(db, "driver-2") == ["pm-other"]


def test_set_default_on_current_default_is_a_no_op(client, db, driver, auth_headers):
    add_method(db, driver, "pm-a", is_default=True)

    response = client.post(
        "/api/stripe/payout-methods/pm-a/default",
        json={"user_id": driver},
        headers=auth_headers(driver),
    )

    assert response.status_code == 200
    assert defaults_for(db, driver) == ["pm-a"]


def test_set_default_for_someone_elses_method(client, db, driver, auth_headers):
    add_method(db, "driver-2", "pm-other")

    response = client.post(
        "/api/stripe/payout-methods/pm-other/default",
        json={"user_id": driver},
        headers=auth_headers(driver),
    )

    assert response.status_code == 404
    assert response.json()["error"] == "Payout method not found or does not belong to user"
    assert defaults_for(db, "driver-2") == []


def test_delete_non_default_method(client, db, driver, auth_headers):
    add_method(db, driver, "pm-a", is_default=True)
    add_method(db, driver, "pm-b")

    response = client.delete("/api/stripe/payout-methods/pm-b", headers=auth_headers(driver))

    assert response.status_code == 204
    assert response.content == b""
    db.expire_all()
    assert db.get(PayoutMethod, "pm-b") is None


def test_default_method_cannot_be_deleted(client, db, driver, auth_headers):
    add_method(db, driver, "pm-a", is_default=True)

    response = client.delete("/api/stripe/payout-methods/pm-a", headers=auth_headers(driver))

    assert response.status_code == 400
    assert response.json()["error"] == "Cannot delete the default payout method"
    db.expire_all()
    assert db.get(PayoutMethod, "pm-a") is not None


def test_delete_checks_ownership_and_existence(client, db, driver, auth_headers):
    add_method(db, "driver-2", "pm-other")

    response = client.delete("/api/stripe/payout-methods/pm-other", headers=auth_headers(driver))
    assert response.status_code == 403
    assert response.json()["error"] == "Unauthorized: token does not match payout method owner"

    response = client.delete("/api/stripe/payout-methods/missing", headers=auth_headers(driver))
    assert response.status_code == 404


def test_service_keeps_single_default_across_switches(db, driver):
    add_method(db, driver, "pm-a")
    add_method(db, driver, "pm-b")

    for target in ("pm-a", "pm-b", "pm-a"):
        payout_methods.set_default_payout_method(db, driver, target)
        assert defaults_for(db, driver) == [target]

    with pytest.raises(NotFound):
        payout_methods.set_default_payout_method(db, driver, "pm-missing")
    assert defaults_for(db, driver) == ["pm-a"]


def unique_violation():
    return IntegrityError(
        "UPDATE payout_methods SET is_default=?",
        {},
        Exception("UNIQUE constraint failed: payout_methods.user_id"),
    )


def test_database_allows_one_default_per_user(db, driver):
    add_method(db, driver, "pm-a", is_default=True)
    add_method(db, driver, "pm-b")
    add_method(db, "driver-2", "pm-other", is_default=True)

    db.add(PayoutMethod(id="pm-c", user_id=driver, payout_type="paypal", is_default=True))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()

    assert defaults_for(db, driver) == ["pm-a"]
    assert db.get(PayoutMethod, "pm-c") is None


def test_losing_default_race_returns_conflict(client, db, driver, auth_headers, mocker):
    add_method(db, driver, "pm-a", is_default=True)
    add_method(db, driver, "pm-b")
    mocker.patch("sqlalchemy.orm.Session.commit", side_effect=unique_violation())

    response = client.post(
        "/api/stripe/payout-methods/pm-b/default",
        json={"user_id": driver},
        headers=auth_headers(driver),
    )

    assert response.status_code == 409
    body = response.json()
    assert body["success"] is False
    assert body["statusCode"] == 409
    assert body["error"] == "Default payout method was changed concurrently; retry the request"
    assert defaults_for(db, driver) == ["pm-a"]


def test_conflict_rolls_back_the_session(db, driver, mocker):
    add_method(db, driver, "pm-a", is_default=True)
    add_method(db, driver, "pm-b")
    mocker.patch.object(db, "commit", side_effect=unique_violation())

    with pytest.raises(Conflict) as excinfo:
        payout_methods.create_payout_method(db, driver, "paypal", {"paypal_email": "c@example.com"},
                                            make_default=True)

    assert excinfo.value.status_code == 409
    assert not db.in_transaction()
    assert not db.new
    assert defaults_for(db, driver) == ["pm-a"]
    assert db.query(PayoutMethod).filter_by(user_id=driver).count() == 2
