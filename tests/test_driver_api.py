from fastapi.testclient import TestClient

from auth import get_password_hash
from conftest import login
from database import MemoryStore
from main import create_app
from schemas import Role


def bus_b1(client):
    return next(b for b in client.get("/api/buses").json() if b["busNumber"] == "B1")


def test_update_location(driver_client, store):
    bus_id = store.get_bus_by_id(1).id
    before = len(store.get_bus_locations(bus_id))
    resp = driver_client.post("/api/driver/update-location", json={"latitude": "26.23", "longitude": "73.01"})
    assert resp.status_code == 200
    assert resp.json() == {"message": "Location updated successfully"}

    bus = bus_b1(driver_client)
    assert bus["isActive"] is True
    assert bus["lastLocation"] == {"latitude": "26.23", "longitude": "73.01"}
    assert bus["lastUpdated"] is not None

    rows = store.get_bus_locations(bus_id)
    assert len(rows) == before + 1
    assert (rows[0].latitude, rows[0].longitude, rows[0].is_active) == ("26.23", "73.01", True)
    assert store.get_bus_by_id(2).last_location is None


def test_update_location_accepts_numbers(driver_client):
    resp = driver_client.post("/api/driver/update-location", json={"latitude": 26.5, "longitude": 73})
    assert resp.status_code == 200
    assert bus_b1(driver_client)["lastLocation"] == {"latitude": "26.5", "longitude": "73"}


def test_update_location_validation(driver_client, store):
    for body in ({}, {"latitude": "26.2"}, {"latitude": "", "longitude": "73"}, {"latitude": "north", "longitude": "73"}):
        assert driver_client.post("/api/driver/update-location", json=body).status_code == 400
    assert store.get_bus_locations(store.get_bus_by_id(1).id) == []


def test_update_location_reactivates_bus(driver_client):
    driver_client.post("/api/driver/toggle-status", json={"isActive": False})
    driver_client.post("/api/driver/update-location", json={"latitude": "1", "longitude": "2"})
    assert bus_b1(driver_client)["isActive"] is True


def test_toggle_without_body_flips(driver_client):
    original = bus_b1(driver_client)["isActive"]
    resp = driver_client.post("/api/driver/toggle-status")
    assert resp.status_code == 200
    assert resp.json()["isActive"] is (not original)
    assert bus_b1(driver_client)["isActive"] is (not original)
    driver_client.post("/api/driver/toggle-status")
    assert bus_b1(driver_client)["isActive"] is original


def test_toggle_with_empty_object_flips(driver_client):
    resp = driver_client.post("/api/driver/toggle-status", json={})
    assert resp.json() == {"message": "Bus activated successfully", "isActive": True}


def test_toggle_sets_explicit_value_and_stamps_time(driver_client):
    first = driver_client.post("/api/driver/toggle-status", json={"isActive": False})
    assert first.json() == {"message": "Bus deactivated successfully", "isActive": False}
    assert bus_b1(driver_client)["lastUpdated"] is not None
    driver_client.post("/api/driver/toggle-status", json={"isActive": True})
    resp = driver_client.post("/api/driver/toggle-status", json={"isActive": True})
    assert resp.json()["isActive"] is True
    assert bus_b1(driver_client)["isActive"] is True


def test_student_gets_403_on_driver_endpoints(student_client):
    assert student_client.post("/api/driver/update-location", json={"latitude": "1", "longitude": "2"}).status_code == 403
    assert student_client.post("/api/driver/update-location", json={"latitude": "x"}).status_code == 403
    assert student_client.post("/api/driver/toggle-status").status_code == 403


def test_admin_gets_403_and_anonymous_401(admin_client, client):
    assert admin_client.post("/api/driver/toggle-status").status_code == 403
    assert client.post("/api/driver/update-location", json={"latitude": "1", "longitude": "2"}).status_code == 401


def test_driver_without_bus_assignment(settings, store):
    store.seed_initial_data("unused")
    store.create_user(name="D", email="d@iitj.ac.in", username="nobus",
                      password_hash=get_password_hash("drive123"), role=Role.DRIVER)
    client = TestClient(create_app(settings=settings, store=store))
    login(client, "nobus", "drive123")
    resp = client.post("/api/driver/update-location", json={"latitude": "1", "longitude": "2"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "No bus assigned to the driver"
    assert client.post("/api/driver/toggle-status").status_code == 400


def test_driver_whose_bus_is_missing(settings):
    store = MemoryStore()
    store.create_user(name="D", email="d@iitj.ac.in", username="lost",
                      password_hash=get_password_hash("drive123"), role=Role.DRIVER, bus_id=1)
    client = TestClient(create_app(settings=settings, store=store))
    login(client, "lost", "drive123")
    resp = client.post("/api/driver/update-location", json={"latitude": "1", "longitude": "2"})
    assert resp.status_code == 404
    assert resp.json()["message"] == "Bus not found"
    assert client.post("/api/driver/toggle-status").status_code == 404


def test_update_location_rejects_non_finite(driver_client, store):
    for body in ({"latitude": "nan", "longitude": "73"}, {"latitude": "26", "longitude": "inf"},
                 {"latitude": "-Infinity", "longitude": "73"}):
        resp = driver_client.post("/api/driver/update-location", json=body)
        assert resp.status_code == 400
        assert "finite" in resp.json()["message"]
    assert bus_b1(driver_client)["lastLocation"] is None
    assert store.get_bus_locations(store.get_bus_by_id(1).id) == []
