import json
from datetime import timedelta

import pytest
import requests

import qotore.app as app_module
from qotore.gmail import GmailResult
from qotore.orders import isoformat, parse_timestamp, utcnow
from qotore.supabase import SupabaseError, SupabaseNotFound

TEST_CONFIG = {
    "TESTING": True,
    "SUPABASE_URL": "https://project.supabase.co",
    "SUPABASE_ANON_KEY": "anon-key",
    "SUPABASE_SERVICE_ROLE_KEY": "service-key",
    "ADMIN_USER": "admin",
    "ADMIN_PASS": "correct-horse",
    "ADMIN_PASS_HASH": "",
    "JWT_SECRET_KEY": "test-secret-key-that-is-long-enough-for-hs256",
    "JWT_COOKIE_SECURE": False,
    "ADMIN_EMAIL": "",
    "GMAIL_USER": "",
    "GOOGLE_CLIENT_ID": "",
    "GOOGLE_CLIENT_SECRET": "",
    "GOOGLE_REFRESH_TOKEN": "",
    "RESEND_API_KEY": "",
    "SITE_URL": "https://qotore.test",
}

GMAIL_CONFIG = {
    "ADMIN_EMAIL": "owner@qotore.test",
    "GMAIL_USER": "shop@qotore.test",
    "GOOGLE_CLIENT_ID": "client-id",
    "GOOGLE_CLIENT_SECRET": "client-secret",
    "GOOGLE_REFRESH_TOKEN": "refresh-token",
}


class FakeResponse:
    def __init__(self, status_code=200, payload=None, content=None, headers=None):
        self.status_code = status_code
        self._payload = payload
        if content is None:
            content = json.dumps(payload).encode("utf-8") if payload is not None else b""
        self.content = content
        self.text = content.decode("utf-8", errors="replace")
        self.headers = headers or {}

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON body")
        return self._payload

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} error", response=self)


class RecordingSession:
    """Stands in for requests.Session, answering from a queue of responses."""

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    def _next(self, method, url, kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            raise AssertionError(f"Unexpected {method} {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response

    def request(self, method, url, **kwargs):
        return self._next(method, url, kwargs)

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)


def _matches(row, column, condition):
    value = row.get(column)
    if isinstance(condition, tuple) and len(condition) == 2 and isinstance(condition[0], str):
        operator, operand = condition
        if operator == "neq":
            return str(value) != str(operand)
        if operator in ("gte", "lt"):
            left, right = parse_timestamp(value), parse_timestamp(operand)
            if left is None or right is None:
                return False
            return left >= right if operator == "gte" else left < right
        if operator == "in":
            return str(value) in {str(entry) for entry in operand}
        raise AssertionError(f"Unsupported operator {operator}")
    if isinstance(condition, (list, set, frozenset)):
        return str(value) in {str(entry) for entry in condition}
    if condition is None:
        return value is None
    if isinstance(condition, bool):
        return bool(value) is condition
    return str(value) == str(condition)


class FakeSupabase:
    """In-memory replacement for SupabaseRest."""

    def __init__(self):
        self.tables = {
            "fragrances": [],
            "variants": [],
            "orders": [],
            "order_items": [],
            "user_profiles": [],
        }
        self.objects = {}
        self.users_by_token = {}
        self.fail_inserts = set()
        self.keys_used = []
        self._next_id = 1

    def _new_id(self):
        value = self._next_id
        self._next_id += 1
        return value

    def seed(self, table, **row):
        row.setdefault("id", self._new_id())
        row.setdefault("created_at", isoformat(utcnow()))
        self.tables[table].append(row)
        return row

    def _filtered(self, table, filters=None, any_of=None):
        rows = [
            row
            for row in self.tables[table]
            if all(_matches(row, column, cond) for column, cond in (filters or {}).items())
        ]
        if any_of:
            rows = [row for row in rows if any(_matches(row, c, v) for c, v in any_of)]
        return rows

    def select(self, table, columns="*", filters=None, any_of=None, order=None, limit=None):
        rows = [dict(row) for row in self._filtered(table, filters, any_of)]
        if order:
            first = order.split(",")[0]
            column, _, direction = first.partition(".")
            rows.sort(
                key=lambda row: (row.get(column) is None, str(row.get(column) or "")),
                reverse=direction.startswith("desc"),
            )
        if "order_items(*)" in columns:
            for row in rows:
                row["order_items"] = [
                    dict(item)
                    for item in self.tables["order_items"]
                    if str(item.get("order_id")) == str(row["id"])
                ]
        return rows[:limit] if limit else rows

    def insert(self, table, rows):
        if table in self.fail_inserts:
            raise SupabaseError("Database request failed: 400", 400, "insert rejected")
        batch = rows if isinstance(rows, list) else [rows]
        created = []
        for row in batch:
            stored = dict(row)
            stored.setdefault("id", self._new_id())
            stored.setdefault("created_at", isoformat(utcnow()))
            self.tables[table].append(stored)
            created.append(dict(stored))
        return created

    def upsert(self, table, rows):
        batch = rows if isinstance(rows, list) else [rows]
        saved = []
        for row in batch:
            existing = self._filtered(table, {"id": row["id"]})
            if existing:
                existing[0].update(row)
                saved.append(dict(existing[0]))
            else:
                saved.extend(self.insert(table, row))
        return saved

    def update(self, table, filters, payload):
        updated = []
        for row in self._filtered(table, filters):
            row.update(payload)
            updated.append(dict(row))
        return updated

    def delete(self, table, filters):
        doomed = self._filtered(table, filters)
        self.tables[table] = [row for row in self.tables[table] if row not in doomed]

    def upload_object(self, bucket, name, data, content_type, upsert=True):
        self.objects[(bucket, name)] = (data, content_type)
        return {"Key": f"{bucket}/{name}"}

    def delete_object(self, bucket, name):
        if (bucket, name) not in self.objects:
            raise SupabaseNotFound("Object not found", 404, "")
        del self.objects[(bucket, name)]

    def public_object_url(self, bucket, name):
        return f"https://project.supabase.co/storage/v1/object/public/{bucket}/{name}"

    def download_public_object(self, bucket, name):
        if (bucket, name) not in self.objects:
            raise SupabaseNotFound("Object not found", 404, "")
        return self.objects[(bucket, name)]

    def get_auth_user(self, access_token):
        return self.users_by_token.get(access_token)


class FakeGmailSender:
    sent = []
    result = GmailResult(success=True, message_id="gmail-123", attempts=1)

    def __init__(self, client_id, client_secret, refresh_token, **kwargs):
        self.credentials = (client_id, client_secret, refresh_token)

    def send(self, sender, to, subject, text, html):
        FakeGmailSender.sent.append(
            {"from": sender, "to": to, "subject": subject, "text": text, "html": html}
        )
        return FakeGmailSender.result


@pytest.fixture
def fake_db():
    return FakeSupabase()


@pytest.fixture
def gmail(monkeypatch):
    FakeGmailSender.sent = []
    FakeGmailSender.result = GmailResult(success=True, message_id="gmail-123", attempts=1)
    monkeypatch.setattr(app_module, "GmailSender", FakeGmailSender)
    return FakeGmailSender


@pytest.fixture
def make_app(monkeypatch, fake_db, gmail):
    def factory(**overrides):
        def build_client(url, key, **kwargs):
            fake_db.keys_used.append(key)
            return fake_db

        monkeypatch.setattr(app_module, "SupabaseRest", build_client)
        config = dict(TEST_CONFIG)
        config.update(overrides)
        return app_module.create_app(config)

    return factory


@pytest.fixture
def app(make_app):
    return make_app()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    test_client = app.test_client()
    response = test_client.post(
        "/admin/login", json={"username": "admin", "password": "correct-horse"}
    )
    assert response.status_code == 200
    return test_client


@pytest.fixture
def seed_order(fake_db):
    def factory(minutes_ago=10, items=None, **fields):
        row = {
            "order_number": fields.pop("order_number", None) or f"ORD-{fake_db._next_id:08d}",
            "customer_first_name": "Aisha",
            "customer_last_name": "Al Balushi",
            "customer_phone": "96891234567",
            "customer_email": "aisha@example.com",
            "customer_ip": "127.0.0.1",
            "delivery_address": "Way 123, House 4",
            "delivery_city": "Muscat",
            "delivery_region": "Bawshar",
            "notes": "",
            "total_amount": 25500,
            "status": "pending",
            "reviewed": False,
            "created_at": isoformat(utcnow() - timedelta(minutes=minutes_ago)),
        }
        row.update(fields)
        order = fake_db.seed("orders", **row)
        for item in items or [
            {
                "fragrance_id": 1,
                "variant_id": 11,
                "fragrance_name": "Oud Royal",
                "fragrance_brand": "Qotore",
                "variant_size": "10ml",
                "quantity": 3,
                "unit_price_cents": 8500,
                "total_price_cents": 25500,
            }
        ]:
            fake_db.seed("order_items", order_id=order["id"], **item)
        return order

    return factory
