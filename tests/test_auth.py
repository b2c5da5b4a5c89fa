from bson import ObjectId

from shopkeep.app import create_app

from conftest import CUSTOMER_PASSWORD, make_headers


def test_customer_login_issues_token(client, customer):
    response = client.post(
        "/api/auth/login/customer",
        json={"email": "ASHA@example.com ", "password": CUSTOMER_PASSWORD},
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body["access_token"]
    assert body["user"]["kind"] == "customer"
    assert body["user"]["email"] == "asha@example.com"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['access_token']}"})
    assert me.status_code == 200
    assert me.get_json()["user"]["id"] == str(customer["_id"])


def test_customer_login_rejects_wrong_password(client, customer):
    response = client.post(
        "/api/auth/login/customer",
        json={"email": "asha@example.com", "password": "nope"},
    )

    assert response.status_code == 401


def test_login_requires_both_fields(client):
    response = client.post("/api/auth/login/customer", json={"email": "asha@example.com"})

    assert response.status_code == 400


def test_customer_credentials_do_not_open_admin_login(client, customer):
    response = client.post(
        "/api/auth/login/admin",
        json={"email": "asha@example.com", "password": CUSTOMER_PASSWORD},
    )

    assert response.status_code == 401


def test_admin_login(client, admin):
    response = client.post(
        "/api/auth/login/admin",
        json={"email": "ops@example.com", "password": "admin-password"},
    )

    assert response.status_code == 200
    assert response.get_json()["user"]["kind"] == "admin"


def test_me_requires_token(client):
    assert client.get("/api/auth/me").status_code == 401


def test_token_for_deleted_account_is_unauthorized(app, client):
    headers = make_headers(app, ObjectId(), "customer")

    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_token_with_unknown_kind_is_unauthorized(app, client, customer):
    headers = make_headers(app, customer["_id"], "superuser")

    assert client.get("/api/auth/me", headers=headers).status_code == 401


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_transactions_default_off_for_standalone_mongo(monkeypatch, database):
    monkeypatch.delenv("MONGO_TRANSACTIONS", raising=False)
    monkeypatch.setenv("MONGO_URI", "mongodb://localhost:27017/shopkeep")

    app = create_app({"TESTING": True}, database=database)

    assert app.config["MONGO_TRANSACTIONS"] is False
    assert app.extensions["shopkeep"]["store"].use_transactions is False


def test_transactions_default_on_for_replica_set(monkeypatch, database):
    monkeypatch.delenv("MONGO_TRANSACTIONS", raising=False)
    monkeypatch.setenv("MONGO_URI", "mongodb://db1,db2/shopkeep?replicaSet=rs0")

    app = create_app({"TESTING": True}, database=database)

    assert app.config["MONGO_TRANSACTIONS"] is True
