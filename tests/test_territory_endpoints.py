import json
import os
import unittest
from datetime import datetime

os.environ.setdefault("DATABASE_URL", "sqlite://")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from reports_shared import issue_auth_session_token
from services.rate_limiter import RequestRateLimiter
from shared.db import Base, User
from territory_endpoints import handle_territory_request


class DummyRequest:
    def __init__(self, method, action="", headers=None, body=None):
        self.method = method
        self.params = {}
        self.headers = headers or {}
        self.route_params = {"action": action}
        self._body = body

    def get_json(self):
        if self._body is None:
            raise ValueError()
        return self._body


def _body(resp):
    return json.loads(resp.get_body().decode("utf-8"))


class TerritoryEndpointTests(unittest.TestCase):
    def setUp(self):
        os.environ["AUTH_SESSION_SECRET"] = "territory-test-secret"
        self.engine = create_engine(
            "sqlite://", future=True, connect_args={"check_same_thread": False}, poolclass=StaticPool
        )
        Base.metadata.create_all(bind=self.engine)
        self.Session = sessionmaker(bind=self.engine)
        db = self.Session()
        db.add(User(email="broker@example.com", role="broker", territory_json=["CA", "90210"], created_at=datetime(2026, 1, 1)))
        db.add(User(email="admin@example.com", role="admin", territory_json=None))
        db.add(User(email="former@example.com", role="broker", territory_json=["CA"], is_active=False))
        db.commit()
        db.close()
        self.limiter = RequestRateLimiter(window_seconds=60, max_requests=50)

    def tearDown(self):
        self.engine.dispose()

    def _call(self, method, action, email="broker@example.com", body=None):
        token, _expires = issue_auth_session_token(email)
        req = DummyRequest(method, action, headers={"Authorization": f"Bearer {token}"}, body=body)
        return handle_territory_request(req, limiter=self.limiter, session_factory=self.Session)

    def test_scope_summary(self):
        resp = self._call("GET", "scope")
        self.assertEqual(resp.status_code, 200)
        payload = _body(resp)
        self.assertEqual(payload["displayName"], "CA, 90210")
        self.assertEqual(payload["role"], "broker")
        self.assertTrue(payload["hasRestrictions"])
        self.assertEqual(payload["parsed"], {"states": ["CA"], "cities": [], "zipCodes": ["90210"]})

    def test_inactive_user_is_rejected(self):
        self.assertEqual(self._call("GET", "scope", email="former@example.com").status_code, 401)

    def test_validate(self):
        payload = _body(self._call("POST", "validate", body={"territory": "CA, , Zone #4"}))
        self.assertFalse(payload["isValid"])
        self.assertEqual(len(payload["errors"]), 2)
        self.assertEqual(payload["parsed"]["cities"], ["Zone #4"])

    def test_filter_for_broker_and_admin(self):
        body = {"resource": "deals", "query": {"filter": {"stage": "close"}}}
        broker = _body(self._call("POST", "filter", body=body))
        self.assertEqual(
            broker["query"]["filter"],
            {
                "stage": "close",
                "organization.state@in": ["CA"],
                "organization.city@in": [],
                "organization.zipCode@in": ["90210"],
            },
        )
        self.assertEqual(broker["query"]["pagination"], {"page": 1, "perPage": 25})
        admin = _body(self._call("POST", "filter", email="admin@example.com", body=body))
        self.assertEqual(admin["query"]["filter"], {"stage": "close"})
        self.assertFalse(admin["hasRestrictions"])

    def test_access(self):
        allowed = _body(self._call("POST", "access", body={"resourceType": "organizations", "record": {"state": "CA"}}))
        denied = _body(self._call("POST", "access", body={"resourceType": "organizations", "record": {"state": "TX"}}))
        self.assertEqual(allowed, {"canAccess": True})
        self.assertEqual(denied["reason"], "Record is outside your assigned territory")

    def test_bad_requests(self):
        self.assertEqual(self._call("POST", "filter", body={"query": {}}).status_code, 400)
        self.assertEqual(self._call("POST", "validate").status_code, 400)
        self.assertEqual(self._call("POST", "access", body={"resourceType": "deals", "record": "x"}).status_code, 400)

    def test_wrong_method_and_unknown_action(self):
        self.assertEqual(self._call("GET", "filter").status_code, 405)
        self.assertEqual(self._call("GET", "regions").status_code, 404)


if __name__ == "__main__":
    unittest.main()
