import datetime
import os
import sys
from pathlib import Path

import pytest
from bson.objectid import ObjectId
from httpx import ASGITransport, AsyncClient

# Ensure the backend directory is on PYTHONPATH when pytest is run from repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# Ensure test env
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("TOKEN_PEPPER", "test-pepper")
os.environ.setdefault("ALLOWED_ORIGINS", "*")
os.environ.setdefault("ENFORCE_HTTPS", "false")
os.environ.setdefault("USE_FAKE_DB_FOR_TESTS", "1")
os.environ.setdefault("CSRF_ENFORCE", "false")
os.environ.setdefault("ALLOW_INSECURE_COOKIES", "1")
os.environ.setdefault("RATE_LIMIT_MAX_REQUESTS", "100000")
os.environ.setdefault("APP_BASE_URL", "https://naksyetu.test")
os.environ.setdefault("MPESA_CALLBACK_SECRET", "test-callback-secret")
os.environ.pop("GEMINI_API_KEY", None)
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

# Import app AFTER env vars
from naksyetu.main import app  # noqa: E402
from naksyetu import db as db_mod  # noqa: E402
from naksyetu.auth import create_access_token, hash_password  # noqa: E402
from naksyetu.db import connect as connect_to_mongo  # noqa: E402

USER_PASSWORD = "Userpass1"


@pytest.fixture(autouse=True)
async def _fresh_db():
    # startup events are not run by ASGITransport
    await connect_to_mongo()
    db_mod.db.reset()
    yield


@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c


@pytest.fixture
def make_user():
    """Insert a user directly with a properly hashed password."""
    async def _make(role: str = "attendee", email: str | None = None, name: str | None = None, **extra) -> dict:
        email = email or f"{role}-{ObjectId()}@example.com"
        name = name or email.split("@")[0]
        now = datetime.datetime.now(datetime.timezone.utc)
        doc = {
            "email": email.lower(),
            "name": name,
            "name_lower": name.lower(),
            "role": role,
            "password_hash": hash_password(USER_PASSWORD),
            "failed_login_attempts": 0,
            "assigned_events": [],
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        await db_mod.db.users.insert_one(doc)
        return doc
    return _make


@pytest.fixture
def auth_headers():
    def _headers(user: dict) -> dict:
        token = create_access_token({"sub": user["email"]})
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture
def make_listing():
    async def _make(organizer: dict, collection: str = "events", status: str = "published", **extra) -> dict:
        now = datetime.datetime.now(datetime.timezone.utc)
        doc = {
            "name": "Nairobi Jazz Night",
            "category": "Music",
            "date": now + datetime.timedelta(days=30),
            "organizer_id": str(organizer["_id"]),
            "organizer_name": organizer.get("organizer_name") or organizer.get("name"),
            "status": status,
            "tickets": [
                {"name": "Regular", "price": 1000.0, "quantity": 100},
                {"name": "VIP", "price": 2500.0, "quantity": 20},
            ],
            "created_at": now,
            "updated_at": now,
            **extra,
        }
        await db_mod.db[collection].insert_one(doc)
        return doc
    return _make


@pytest.fixture
async def organizer(make_user):
    return await make_user("organizer", email="org@example.com", name="TheOrganizer",
                           organizer_name="Jazz Co", phone="+254712345678")


@pytest.fixture
async def admin(make_user):
    return await make_user("admin", email="admin@example.com", name="AdminUser")


@pytest.fixture
async def super_admin(make_user):
    return await make_user("super-admin", email="root@example.com", name="RootUser")


@pytest.fixture
async def influencer(make_user):
    return await make_user("influencer", email="inf@example.com", name="StarPromoter",
                           full_name="Star Promoter", phone="+254722000111")


@pytest.fixture
async def attendee(make_user):
    return await make_user("attendee", email="fan@example.com", name="JazzFan", phone="+254700111222")


@pytest.fixture
def sent_emails(monkeypatch):
    """Capture outgoing e-mails instead of logging them."""
    sent = []

    async def _fake_send_email(**kwargs):
        sent.append(kwargs)
        return True

    monkeypatch.setattr("naksyetu.notifications.send_email", _fake_send_email)
    return sent


@pytest.fixture
def stk_push(monkeypatch):
    """Replace the Daraja STK push with a recorder returning sequential checkout ids."""
    calls = []

    async def _fake_stk_push(*, phone, amount, order_id):
        calls.append({"phone": phone, "amount": amount, "order_id": order_id})
        return {"ResponseCode": "0", "CheckoutRequestID": f"ws_CO_{len(calls)}", "MerchantRequestID": "m-1"}

    monkeypatch.setattr("naksyetu.payments_providers.mpesa.initiate_stk_push", _fake_stk_push)
    return calls


@pytest.fixture
def callback_url():
    return f"/checkout/mpesa/callback/{os.environ['MPESA_CALLBACK_SECRET']}"


@pytest.fixture
def stk_callback():
    """Build a Daraja STK callback body."""
    def _body(checkout_request_id: str, result_code: int = 0,
              desc: str = "The service request is processed successfully.", receipt: str = "QGH7XYZ123") -> dict:
        stk = {
            "MerchantRequestID": "m-1",
            "CheckoutRequestID": checkout_request_id,
            "ResultCode": result_code,
            "ResultDesc": desc,
        }
        if result_code == 0:
            stk["CallbackMetadata"] = {"Item": [
                {"Name": "Amount", "Value": 1},
                {"Name": "MpesaReceiptNumber", "Value": receipt},
                {"Name": "TransactionDate", "Value": 20260101120000},
                {"Name": "PhoneNumber", "Value": 254700111222},
            ]}
        return {"Body": {"stkCallback": stk}}
    return _body
