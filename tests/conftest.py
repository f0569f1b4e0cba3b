from types import SimpleNamespace

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from config import Config
from store_memory import MemoryStore

PASSWORD = "Str0ng!pass"
ADMIN_EMAIL = "admin@demo.com"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def make_voter(store):
    counter = {"n": 0}

    def _make(email=None, password=PASSWORD):
        counter["n"] += 1
        n = counter["n"]
        return store.create_voter(
            full_name=f"Voter {n}",
            email=email or f"voter{n}@college.edu",
            student_id=f"S{n:04d}",
            password_hash=generate_password_hash(password),
        )

    return _make


@pytest.fixture
def election(store):
    """Positions {president, secretary}; candidates A, B for president and C for secretary."""
    return SimpleNamespace(
        a=store.add_candidate("Asha", "president"),
        b=store.add_candidate("Bilal", "president"),
        c=store.add_candidate("Chen", "secretary"),
    )


@pytest.fixture
def app(store):
    return create_app(Config(admin_email=ADMIN_EMAIL), store=store)


@pytest.fixture
def client(app):
    return app.test_client()
