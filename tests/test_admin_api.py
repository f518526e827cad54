DRIVER = {
    "name": "Ravi",
    "email": "ravi@iitj.ac.in",
    "username": "ravi",
    "password": "drive123",
    "busId": 2,
}


def test_admin_lists_users(admin_client, student_client):
    resp = admin_client.get("/api/users")
    assert resp.status_code == 200
    names = sorted(u["username"] for u in resp.json())
    assert names == ["admin", "stud"]
    assert all("passwordHash" not in u for u in resp.json())


def test_users_list_is_admin_only(client, student_client):
    assert client.get("/api/users").status_code == 401
    assert student_client.get("/api/users").status_code == 403


def test_create_driver_forces_role(admin_client, store):
    resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, role="admin"))
    assert resp.status_code == 201
    body = resp.json()
    assert body["role"] == "driver"
    assert body["busId"] == 2
    assert store.get_user_by_username("ravi").role.value == "driver"


def test_create_driver_accepts_numeric_string_bus(admin_client):
    resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, busId="1"))
    assert resp.status_code == 201
    assert resp.json()["busId"] == 1


def test_create_driver_requires_known_bus(admin_client, store):
    for bus_id in (0, 3):
        resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, busId=bus_id))
        assert resp.status_code == 400
        assert "Bus ID must be either 1 or 2" in resp.json()["message"]
    body = dict(DRIVER)
    del body["busId"]
    assert admin_client.post("/api/admin/create-driver", json=body).status_code == 400
    assert store.get_user_by_username("ravi") is None


def test_create_driver_rejects_duplicates(admin_client):
    assert admin_client.post("/api/admin/create-driver", json=DRIVER).status_code == 201
    resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, email="x@iitj.ac.in"))
    assert resp.status_code == 400
    assert resp.json()["message"] == "Username is already taken"
    resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, username="ravi2"))
    assert resp.json()["message"] == "Email is already registered"


def test_student_cannot_create_driver(student_client, store):
    assert student_client.post("/api/admin/create-driver", json=DRIVER).status_code == 403
    assert student_client.post("/api/admin/create-driver", json={"busId": 9}).status_code == 403
    assert store.get_user_by_username("ravi") is None


def test_driver_cannot_create_driver(driver_client):
    assert driver_client.post("/api/admin/create-driver", json=DRIVER).status_code == 403


def test_create_driver_rejects_boolean_bus(admin_client, store):
    for flag in (True, False):
        resp = admin_client.post("/api/admin/create-driver", json=dict(DRIVER, busId=flag))
        assert resp.status_code == 400
        assert "Bus ID must be a number" in resp.json()["message"]
    assert store.get_user_by_username("ravi") is None
