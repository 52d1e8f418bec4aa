import os
import time
from pathlib import Path

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SUPABASE_JWT_SECRET"] = "test-jwt-secret"
os.environ["JWT_AUDIENCE"] = "authenticated"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test"

import pytest
import stripe
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from ride_payments.database import Base, get_db
from ride_payments.main import app as fastapi_app

TEST_DB_PATH = Path("test_ride_payments_session.db")
SQLALCHEMY_DATABASE_URL = f"sqlite:///./{TEST_DB_PATH}"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="session", autouse=True)
def remove_test_db():
    yield
    engine.dispose()
    TEST_DB_PATH.unlink(missing_ok=True)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client():
    fastapi_app.dependency_overrides[get_db] = override_get_db
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


def make_token(user_id, secret="test-jwt-secret", expires_in=3600):
    claims = {"sub": user_id, "aud": "authenticated", "role": "authenticated", "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture
def auth_headers():
    def _headers(user_id):
        return {"Authorization": f"Bearer {make_token(user_id)}"}
    return _headers


def stripe_object(cls, **values):
    return cls.construct_from(values, "sk_test_123")
