from datetime import datetime

from bson import ObjectId


def test_first_sign_in_registers_user(client, db):
    response = client.post("/users", json={"email": "New@Example.com", "name": "New"})
    assert response.status_code == 200
    body = response.json()
    assert body["acknowledged"] is True

    u = db["user"].find_one({"_id": ObjectId(body["inserted_id"])})
    assert u["email"] == "new@example.com"
    assert u["role"] == "user"
    assert u["created_at"] is not None
    assert u["last_loggedIn"] is not None


def test_repeat_sign_in_only_touches_last_login(client, db):
    client.post("/users", json={"email": "pat@example.com", "name": "Pat"})
    stale = datetime(2020, 1, 1)
    db["user"].update_one({"email": "pat@example.com"}, {"$set": {"role": "decorator", "last_loggedIn": stale}})

    response = client.post("/users", json={"email": "pat@example.com", "name": "Someone Else"})
    assert response.json()["matched_count"] == 1

    u = db["user"].find_one({"email": "pat@example.com"})
    assert u["role"] == "decorator"
    assert u["name"] == "Pat"
    assert u["last_loggedIn"] != stale
    assert db["user"].count_documents({}) == 1


def test_sign_in_rejects_invalid_email(client):
    response = client.post("/users", json={"email": "not-an-email"})
    assert response.status_code == 422
    assert response.json()["message"] == "Validation error"


def test_get_role(client, add_user, auth):
    add_user("admin@example.com", role="admin")
    response = client.get("/user/role", headers=auth("admin@example.com"))
    assert response.json() == {"role": "admin"}


def test_get_role_for_unregistered_caller(client, auth):
    response = client.get("/user/role", headers=auth("nobody@example.com"))
    assert response.status_code == 200
    assert response.json() == {"role": None}


def test_list_users_filters_and_excludes_admin(client, add_user, auth):
    add_user("admin@example.com", role="admin", work_status="available")
    add_user("d1@example.com", role="decorator", work_status="available")
    add_user("d2@example.com", role="decorator", work_status="in_service")
    add_user("u1@example.com", work_status="available")

    response = client.get(
        "/users",
        params={"role": "decorator", "work_status": "available"},
        headers=auth("admin@example.com"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert [u["email"] for u in body["results"]] == ["d1@example.com"]


def test_list_users_never_includes_requesting_admin(client, add_user, auth):
    add_user("admin@example.com", role="admin")
    add_user("other-admin@example.com", role="admin")

    body = client.get("/users", params={"role": "admin"}, headers=auth("admin@example.com")).json()
    assert [u["email"] for u in body["results"]] == ["other-admin@example.com"]


def test_list_users_pagination(client, add_user, auth):
    add_user("admin@example.com", role="admin")
    for i in range(5):
        add_user(f"user{i}@example.com")

    body = client.get("/users", params={"limit": 2, "skip": 2}, headers=auth("admin@example.com")).json()
    assert body["total"] == 5
    assert [u["email"] for u in body["results"]] == ["user2@example.com", "user3@example.com"]
    assert all("id" in u and "_id" not in u for u in body["results"])


def test_list_users_rejects_unknown_role(client, add_user, auth):
    add_user("admin@example.com", role="admin")
    response = client.get("/users", params={"role": "superuser"}, headers=auth("admin@example.com"))
    assert response.status_code == 422


def test_promote_role_resets_work_status(client, db, add_user, auth):
    add_user("admin@example.com", role="admin")
    target = add_user("u@example.com", work_status="in_service")

    response = client.patch(f"/user/{target}/role", json={"role": "decorator"}, headers=auth("admin@example.com"))
    assert response.status_code == 200
    assert response.json()["modified_count"] == 1

    u = db["user"].find_one({"_id": target})
    assert u["role"] == "decorator"
    assert u["work_status"] == "available"


def test_promote_role_validates_input(client, add_user, auth):
    add_user("admin@example.com", role="admin")
    headers = auth("admin@example.com")

    assert client.patch("/user/not-an-id/role", json={"role": "admin"}, headers=headers).status_code == 400
    assert client.patch(f"/user/{ObjectId()}/role", json={"role": "admin"}, headers=headers).status_code == 404
    target = add_user("u@example.com")
    assert client.patch(f"/user/{target}/role", json={"role": "owner"}, headers=headers).status_code == 422
