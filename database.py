"""
Storage backends for the shuttle tracker.

``Store`` is the single interface every handler talks to. ``MemoryStore``
keeps everything in process and is what development and the tests run on;
``MongoStore`` persists to MongoDB through pymongo. Both generate ObjectId
string ids, keep ``last_location`` as a structured pair and enforce unique
usernames, emails and bus numbers themselves.
"""

import logging
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient, ReturnDocument
from pymongo.errors import DuplicateKeyError

from config import Settings
from schemas import (
    BUS_NUMBERS,
    Bus,
    BusLocation,
    Day,
    LatLng,
    Role,
    Schedule,
    User,
)

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


class DuplicateUserError(StoreError):
    """Raised when a username or email is already taken."""

    def __init__(self, field: str):
        super().__init__(f"{field} already exists")
        self.field = field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(ObjectId())


# (bus_id, day, departure, arrival, start, end, route, is_arrival)
SEED_SCHEDULES = [
    (1, Day.WEEKDAY, "6:30 AM", "7:40 AM", "IITJ", "GPRA", "via Paota and Railway Station", False),
    (2, Day.WEEKDAY, "6:30 AM", "7:40 AM", "IITJ", "Jaljog Circle", "via Paota and Riktiya Bheruji Circle", False),
    (1, Day.WEEKDAY, "10:00 AM", "11:00 AM", "IITJ", "AIIMS Jodhpur", "via Paota – MBM – AIIMS", False),
    (2, Day.WEEKDAY, "11:00 AM", "12:00 PM", "IITJ", "MBM", "via Paota and Railway Station", False),
    (1, Day.WEEKDAY, "3:00 PM", "4:00 PM", "IITJ", "AIIMS Jodhpur", "via Paota – Railway Station", False),
    (1, Day.WEEKDAY, "7:45 AM", "8:50 AM", "GPRA", "IITJ", "via MBM – Paota – Mandore", True),
    (2, Day.WEEKDAY, "7:45 AM", "8:50 AM", "Jaljog Circle", "IITJ", "", True),
    (2, Day.SUNDAY, "9:30 AM", "10:30 AM", "IITJ", "MBM", "via Paota – Riktiya Bheruji Circle – MBM", False),
    (1, Day.SUNDAY, "10:30 AM", "11:30 AM", "IITJ", "MBM", "via Paota – MBM", False),
    (2, Day.SUNDAY, "11:30 AM", "12:30 PM", "MBM", "IITJ", "via Paota – Mandore – IITJ", True),
    (1, Day.SUNDAY, "1:30 PM", "2:30 PM", "MBM", "IITJ", "via MBM College – Paota – IITJ", True),
]


class Store(ABC):
    # ----------------------- Users -----------------------
    @abstractmethod
    def get_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_username(self, username: str) -> Optional[User]: ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    def create_user(self, *, name: str, email: str, username: str, password_hash: str,
                    role: Role, bus_id: Optional[int] = None) -> User: ...

    @abstractmethod
    def get_users(self) -> List[User]: ...

    @abstractmethod
    def count_users(self) -> int: ...

    # ----------------------- Buses -----------------------
    @abstractmethod
    def get_bus(self, bus_id: str) -> Optional[Bus]: ...

    @abstractmethod
    def get_bus_by_number(self, bus_number: str) -> Optional[Bus]: ...

    @abstractmethod
    def get_buses(self) -> List[Bus]: ...

    @abstractmethod
    def create_bus(self, bus_number: str, is_active: bool = False) -> Bus: ...

    @abstractmethod
    def update_bus_status(self, bus_id: str, is_active: bool) -> Optional[Bus]: ...

    @abstractmethod
    def update_bus_location(self, bus_id: str, latitude: str, longitude: str) -> Optional[Bus]: ...

    # ----------------------- Location history -----------------------
    @abstractmethod
    def create_bus_location(self, bus_id: str, latitude: str, longitude: str,
                            is_active: bool = True) -> BusLocation: ...

    @abstractmethod
    def get_bus_locations(self, bus_id: str, limit: int = 100) -> List[BusLocation]: ...

    # ----------------------- Schedules -----------------------
    @abstractmethod
    def get_schedules(self, day: Day, bus_id: Optional[int] = None) -> List[Schedule]: ...

    @abstractmethod
    def create_schedule(self, *, bus_id: int, day: Day, departure_time: str, arrival_time: str,
                        start_location: str, end_location: str, route: str = "",
                        is_arrival: bool = False) -> Schedule: ...

    def get_bus_by_id(self, number: int) -> Optional[Bus]:
        """Resolve a driver/schedule bus id (1 or 2) to its Bus."""
        bus_number = BUS_NUMBERS.get(number)
        if bus_number is None:
            return None
        return self.get_bus_by_number(bus_number)

    def seed_initial_data(self, admin_password_hash: str) -> bool:
        """Create the admin, both buses and the timetable on an empty store.

        Returns False without touching anything when any user already exists.
        """
        if self.count_users() > 0:
            return False
        self.create_user(
            name="Admin",
            email="admin@iitj.ac.in",
            username="admin",
            password_hash=admin_password_hash,
            role=Role.ADMIN,
        )
        for bus_number in BUS_NUMBERS.values():
            self.create_bus(bus_number, is_active=False)
        for bus_id, day, departure, arrival, start, end, route, is_arrival in SEED_SCHEDULES:
            self.create_schedule(
                bus_id=bus_id,
                day=day,
                departure_time=departure,
                arrival_time=arrival,
                start_location=start,
                end_location=end,
                route=route,
                is_arrival=is_arrival,
            )
        logger.info("Seeded admin user, %d buses and %d schedules", len(BUS_NUMBERS), len(SEED_SCHEDULES))
        return True


class MemoryStore(Store):
    def __init__(self):
        self._lock = threading.Lock()
        self._users: Dict[str, User] = {}
        self._buses: Dict[str, Bus] = {}
        self._locations: Dict[str, List[BusLocation]] = {}
        self._schedules: Dict[str, Schedule] = {}

    # Reads take the lock too; handlers run concurrently in the threadpool.
    def get_user(self, user_id):
        with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    def get_user_by_username(self, username):
        with self._lock:
            for user in self._users.values():
                if user.username == username:
                    return user.model_copy(deep=True)
        return None

    def get_user_by_email(self, email):
        with self._lock:
            for user in self._users.values():
                if user.email == email:
                    return user.model_copy(deep=True)
        return None

    def create_user(self, *, name, email, username, password_hash, role, bus_id=None):
        with self._lock:
            for existing in self._users.values():
                if existing.username == username:
                    raise DuplicateUserError("username")
                if existing.email == email:
                    raise DuplicateUserError("email")
            user = User(
                id=_new_id(),
                name=name,
                email=email,
                username=username,
                password_hash=password_hash,
                role=Role(role),
                bus_id=bus_id,
            )
            self._users[user.id] = user
        return user.model_copy(deep=True)

    def get_users(self):
        with self._lock:
            return [u.model_copy(deep=True) for u in self._users.values()]

    def count_users(self):
        with self._lock:
            return len(self._users)

    def get_bus(self, bus_id):
        with self._lock:
            bus = self._buses.get(bus_id)
            return bus.model_copy(deep=True) if bus else None

    def get_bus_by_number(self, bus_number):
        with self._lock:
            for bus in self._buses.values():
                if bus.bus_number == bus_number:
                    return bus.model_copy(deep=True)
        return None

    def get_buses(self):
        with self._lock:
            return [b.model_copy(deep=True) for b in self._buses.values()]

    def create_bus(self, bus_number, is_active=False):
        with self._lock:
            if any(b.bus_number == bus_number for b in self._buses.values()):
                raise StoreError(f"Bus {bus_number} already exists")
            bus = Bus(id=_new_id(), bus_number=bus_number, is_active=is_active)
            self._buses[bus.id] = bus
        return bus.model_copy(deep=True)

    def update_bus_status(self, bus_id, is_active):
        with self._lock:
            bus = self._buses.get(bus_id)
            if bus is None:
                return None
            bus.is_active = is_active
            bus.last_updated = _now()
            return bus.model_copy(deep=True)

    def update_bus_location(self, bus_id, latitude, longitude):
        with self._lock:
            bus = self._buses.get(bus_id)
            if bus is None:
                return None
            bus.last_location = LatLng(latitude=latitude, longitude=longitude)
            bus.last_updated = _now()
            bus.is_active = True
            return bus.model_copy(deep=True)

    def create_bus_location(self, bus_id, latitude, longitude, is_active=True):
        location = BusLocation(
            id=_new_id(),
            bus_id=bus_id,
            latitude=latitude,
            longitude=longitude,
            timestamp=_now(),
            is_active=is_active,
        )
        with self._lock:
            self._locations.setdefault(bus_id, []).append(location)
        return location.model_copy(deep=True)

    def get_bus_locations(self, bus_id, limit=100):
        with self._lock:
            rows = list(reversed(self._locations.get(bus_id, [])))
            return [r.model_copy(deep=True) for r in rows[:limit]]

    def get_schedules(self, day, bus_id=None):
        day = Day(day)
        with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._schedules.values()
                if s.day == day and (bus_id is None or s.bus_id == bus_id)
            ]

    def create_schedule(self, *, bus_id, day, departure_time, arrival_time,
                        start_location, end_location, route="", is_arrival=False):
        schedule = Schedule(
            id=_new_id(),
            bus_id=bus_id,
            day=Day(day),
            departure_time=departure_time,
            arrival_time=arrival_time,
            start_location=start_location,
            end_location=end_location,
            route=route,
            is_arrival=is_arrival,
        )
        with self._lock:
            self._schedules[schedule.id] = schedule
        return schedule.model_copy(deep=True)


def _to_model(doc, model):
    if doc is None:
        return None
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return model(**doc)


def _oid(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


class MongoStore(Store):
    def __init__(self, db):
        self.db = db
        self.users = db["users"]
        self.buses = db["buses"]
        self.locations = db["busLocations"]
        self.schedules = db["schedules"]
        self.users.create_index([("username", ASCENDING)], unique=True)
        self.users.create_index([("email", ASCENDING)], unique=True)
        self.buses.create_index([("bus_number", ASCENDING)], unique=True)
        self.locations.create_index([("bus_id", ASCENDING), ("timestamp", DESCENDING)])
        self.schedules.create_index([("day", ASCENDING), ("bus_id", ASCENDING)])

    @classmethod
    def connect(cls, url: str, name: str) -> "MongoStore":
        client = MongoClient(url, tz_aware=True)
        logger.info("Connected to MongoDB database %s", name)
        return cls(client[name])

    def get_user(self, user_id):
        oid = _oid(user_id)
        if oid is None:
            return None
        return _to_model(self.users.find_one({"_id": oid}), User)

    def get_user_by_username(self, username):
        return _to_model(self.users.find_one({"username": username}), User)

    def get_user_by_email(self, email):
        return _to_model(self.users.find_one({"email": email}), User)

    def create_user(self, *, name, email, username, password_hash, role, bus_id=None):
        doc = {
            "name": name,
            "email": email,
            "username": username,
            "password_hash": password_hash,
            "role": Role(role).value,
            "bus_id": bus_id,
        }
        try:
            res = self.users.insert_one(doc)
        except DuplicateKeyError as e:
            key = (e.details or {}).get("keyPattern") or {}
            if not key:
                key = {"username": 1} if self.users.find_one({"username": username}) else {"email": 1}
            raise DuplicateUserError("email" if "email" in key else "username") from e
        doc["_id"] = res.inserted_id
        return _to_model(doc, User)

    def get_users(self):
        return [_to_model(d, User) for d in self.users.find({})]

    def count_users(self):
        return self.users.count_documents({})

    def get_bus(self, bus_id):
        oid = _oid(bus_id)
        if oid is None:
            return None
        return _to_model(self.buses.find_one({"_id": oid}), Bus)

    def get_bus_by_number(self, bus_number):
        return _to_model(self.buses.find_one({"bus_number": bus_number}), Bus)

    def get_buses(self):
        return [_to_model(d, Bus) for d in self.buses.find({})]

    def create_bus(self, bus_number, is_active=False):
        doc = {"bus_number": bus_number, "is_active": is_active, "last_location": None, "last_updated": None}
        try:
            res = self.buses.insert_one(doc)
        except DuplicateKeyError as e:
            raise StoreError(f"Bus {bus_number} already exists") from e
        doc["_id"] = res.inserted_id
        return _to_model(doc, Bus)

    def _update_bus(self, bus_id, changes):
        oid = _oid(bus_id)
        if oid is None:
            return None
        doc = self.buses.find_one_and_update(
            {"_id": oid},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        return _to_model(doc, Bus)

    def update_bus_status(self, bus_id, is_active):
        return self._update_bus(bus_id, {"is_active": is_active, "last_updated": _now()})

    def update_bus_location(self, bus_id, latitude, longitude):
        return self._update_bus(bus_id, {
            "last_location": {"latitude": latitude, "longitude": longitude},
            "last_updated": _now(),
            "is_active": True,
        })

    def create_bus_location(self, bus_id, latitude, longitude, is_active=True):
        doc = {
            "bus_id": bus_id,
            "latitude": latitude,
            "longitude": longitude,
            "timestamp": _now(),
            "is_active": is_active,
        }
        res = self.locations.insert_one(doc)
        doc["_id"] = res.inserted_id
        return _to_model(doc, BusLocation)

    def get_bus_locations(self, bus_id, limit=100):
        docs = (
            self.locations.find({"bus_id": bus_id})
            .sort([("timestamp", DESCENDING), ("_id", DESCENDING)])
            .limit(limit)
        )
        return [_to_model(d, BusLocation) for d in docs]

    def get_schedules(self, day, bus_id=None):
        query = {"day": Day(day).value}
        if bus_id is not None:
            query["bus_id"] = bus_id
        return [_to_model(d, Schedule) for d in self.schedules.find(query)]

    def create_schedule(self, *, bus_id, day, departure_time, arrival_time,
                        start_location, end_location, route="", is_arrival=False):
        doc = {
            "bus_id": bus_id,
            "day": Day(day).value,
            "departure_time": departure_time,
            "arrival_time": arrival_time,
            "start_location": start_location,
            "end_location": end_location,
            "route": route,
            "is_arrival": is_arrival,
        }
        res = self.schedules.insert_one(doc)
        doc["_id"] = res.inserted_id
        return _to_model(doc, Schedule)


def build_store(settings: Settings) -> Store:
    if settings.storage_backend == "mongo":
        if not settings.database_url:
            raise StoreError("DATABASE_URL is required for the mongo storage backend")
        return MongoStore.connect(settings.database_url, settings.database_name)
    if settings.storage_backend != "memory":
        raise StoreError(f"Unknown storage backend: {settings.storage_backend}")
    logger.info("Using in-memory storage")
    return MemoryStore()
