import json

import pytest
import requests

from salon_ledger_client import (
    CallbackInjectionTransport,
    CrossOriginBlocked,
    DeleteResult,
    Forbidden,
    NotOwner,
    RequestRejected,
    SalonLedgerClient,
    TransientFailure,
    TransportFailure,
    Unauthenticated,
    select_fallback,
)

URL = "https://ledger.test/exec"


class FakeResponse:
    def __init__(self, status_code=200, body=None, text=None, headers=None):
        self.status_code = status_code
        self.headers = headers if headers is not None else {"Content-Type": "application/json"}
        if text is None:
            text = json.dumps(body) if body is not None else ""
        self.text = text
        self.closed = False

    def json(self):
        return json.loads(self.text)

    def close(self):
        self.closed = True


class FakeSession:
    """Replays scripted outcomes and records every call.

    ``script`` maps a call kind ("direct_get", "direct_post", "stream_post",
    "callback") to a list of outcomes; an outcome is a FakeResponse, an
    exception instance or a callable taking the call record.
    """

    def __init__(self, **script):
        self.script = {key: list(value) for key, value in script.items()}
        self.calls = []

    def _kind(self, method, kwargs):
        if method == "GET":
            return "callback" if "callback" in (kwargs.get("params") or {}) else "direct_get"
        return "stream_post" if kwargs.get("stream") else "direct_post"

    def _next(self, method, url, kwargs):
        kind = self._kind(method, kwargs)
        record = {"kind": kind, "method": method, "url": url, **kwargs}
        self.calls.append(record)
        outcomes = self.script.get(kind)
        if not outcomes:
            raise AssertionError(f"unexpected {kind} call")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(record)
        return outcome

    def get(self, url, **kwargs):
        return self._next("GET", url, kwargs)

    def post(self, url, **kwargs):
        return self._next("POST", url, kwargs)

    def kinds(self):
        return [c["kind"] for c in self.calls]


def html_page():
    return FakeResponse(200, text="<html>Sign in</html>", headers={"Content-Type": "text/html"})


def callback_reply(body):
    def reply(record):
        name = record["params"]["callback"]
        return FakeResponse(200, text=f"{name}({json.dumps(body)})", headers={"Content-Type": "application/javascript"})

    return reply


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def invalidations():
    return []


def make_client(session, sleeps, invalidations, **kwargs):
    kwargs.setdefault("token", "tok")
    return SalonLedgerClient(
        base_url=URL,
        session=session,
        sleep=sleeps.append,
        on_session_invalid=invalidations.append,
        **kwargs,
    )


def test_direct_read_success_attaches_token_as_parameter(sleeps, invalidations):
    session = FakeSession(direct_get=[FakeResponse(body={"success": True, "orders": [{"id": "x"}], "total": 1})])
    client = make_client(session, sleeps, invalidations)
    assert client.list_orders(date="2025-03-20") == [{"id": "x"}]
    call = session.calls[0]
    assert call["params"]["idToken"] == "tok"
    assert call["params"]["action"] == "orders"
    assert call["params"]["date"] == "2025-03-20"
    assert "limit" not in call["params"]
    assert "Authorization" not in call["headers"]
    assert call["timeout"] == 10.0
    assert sleeps == []


def test_health_sends_no_token(sleeps, invalidations):
    session = FakeSession(direct_get=[FakeResponse(body={"success": True, "status": "ok"})])
    client = make_client(session, sleeps, invalidations, token=None)
    assert client.health()["status"] == "ok"
    assert "idToken" not in session.calls[0]["params"]


def test_blocked_write_goes_fire_and_forget_once(sleeps, invalidations):
    response = FakeResponse(200, text="")
    session = FakeSession(direct_post=[html_page()], stream_post=[response])
    client = make_client(session, sleeps, invalidations)
    result = client.create_order("Cắt tóc", 100000)
    assert result.confirmed is False
    assert result.transport == "fire_and_forget"
    assert session.kinds() == ["direct_post", "stream_post"]
    assert session.calls[1]["data"]["idToken"] == "tok"
    assert response.closed


def test_write_never_uses_callback_injection(sleeps, invalidations):
    session = FakeSession(
        direct_post=[html_page()],
        stream_post=[requests.ConnectionError("offline")],
    )
    client = make_client(session, sleeps, invalidations)
    with pytest.raises(TransportFailure):
        client.create_order("Gội", 50000)
    assert session.kinds() == ["direct_post", "stream_post", "direct_post", "direct_post"]
    assert "callback" not in session.kinds()
    assert sleeps == [1.0, 2.0]


def test_transient_write_is_retried_with_linear_backoff(sleeps, invalidations):
    ok = FakeResponse(body={"success": True, "order": {"id": "o1"}})
    session = FakeSession(direct_post=[requests.Timeout("slow"), FakeResponse(503, text="busy"), ok])
    client = make_client(session, sleeps, invalidations)
    result = client.create_order("Uốn", 1)
    assert result.confirmed is True
    assert result.attempts == 3
    assert result.data["order"]["id"] == "o1"
    assert sleeps == [1.0, 2.0]
    assert session.kinds() == ["direct_post"] * 3


def test_blocked_read_uses_callback_and_cleans_up(sleeps, invalidations):
    session = FakeSession(
        direct_get=[html_page()],
        callback=[callback_reply({"success": True, "todayCount": 2, "todayRevenue": 5,
                                  "monthRevenue": 9, "totalOrders": 4})],
    )
    client = make_client(session, sleeps, invalidations)
    stats = client.get_stats()
    assert stats == {
        "todayCount": 2,
        "todayRevenue": 5,
        "weekCount": 0,
        "weekRevenue": 0,
        "monthRevenue": 9,
        "totalOrders": 4,
        "services": [],
    }
    assert session.kinds() == ["direct_get", "callback"]
    assert session.calls[1]["params"]["callback"].startswith("__jsonp_cb_")
    assert session.calls[1]["params"]["idToken"] == "tok"
    assert client.callback.pending == {}
    assert sleeps == []


def test_callback_timeout_cleans_up_and_fails(sleeps, invalidations):
    session = FakeSession(
        direct_get=[requests.ConnectionError("down")],
        callback=[requests.Timeout("slow")],
    )
    client = make_client(session, sleeps, invalidations)
    with pytest.raises(TransportFailure) as info:
        client.list_orders()
    assert isinstance(info.value.last_error, TransientFailure)
    assert session.kinds() == ["direct_get"] * 3 + ["callback"]
    assert session.calls[-1]["timeout"] == 10.0
    assert client.callback.pending == {}


def test_callback_names_are_unique():
    transport = CallbackInjectionTransport()
    assert len({transport.new_callback_name() for _ in range(500)}) == 500


def test_unauthenticated_response_short_circuits(sleeps, invalidations):
    rejected = FakeResponse(401, body={"success": False, "error": "unauthenticated", "code": 401})
    session = FakeSession(direct_post=[rejected])
    client = make_client(session, sleeps, invalidations)
    with pytest.raises(Unauthenticated):
        client.create_order("Tẩy", 1)
    assert len(session.calls) == 1
    assert invalidations == ["unauthenticated"]
    assert sleeps == []
    assert client.token is None


def test_forbidden_through_callback_path(sleeps, invalidations):
    session = FakeSession(
        direct_get=[html_page()],
        callback=[callback_reply({"success": False, "error": "forbidden", "code": 403})],
    )
    client = make_client(session, sleeps, invalidations)
    with pytest.raises(Forbidden):
        client.list_orders()
    assert invalidations == ["forbidden"]
    assert session.kinds() == ["direct_get", "callback"]


def test_missing_token_fails_before_any_request(sleeps, invalidations):
    session = FakeSession()
    client = make_client(session, sleeps, invalidations, token=None)
    with pytest.raises(Unauthenticated):
        client.get_stats()
    assert session.calls == []


def test_token_provider_is_consulted(sleeps, invalidations):
    session = FakeSession(direct_get=[FakeResponse(body={"success": True, "email": "u1@example.com", "name": "Lan"})])
    client = make_client(session, sleeps, invalidations, token=None, token_provider=lambda: "fresh")
    assert client.whoami() == {"email": "u1@example.com", "name": "Lan"}
    assert session.calls[0]["params"]["idToken"] == "fresh"


def test_delete_outcomes(sleeps, invalidations):
    session = FakeSession(direct_post=[
        FakeResponse(body={"success": True, "id": "o1"}),
        FakeResponse(404, body={"success": False, "error": "not_found", "code": 404}),
        FakeResponse(403, body={"success": False, "error": "not_owner", "code": 403}),
    ])
    client = make_client(session, sleeps, invalidations)
    assert client.delete_order("o1") is DeleteResult.DELETED
    assert client.delete_order("o1") is DeleteResult.ALREADY_GONE
    with pytest.raises(NotOwner):
        client.delete_order("o2")
    assert invalidations == []


def test_unconfirmed_delete(sleeps, invalidations):
    session = FakeSession(direct_post=[html_page()], stream_post=[FakeResponse()])
    client = make_client(session, sleeps, invalidations)
    assert client.delete_order("o1") is DeleteResult.UNCONFIRMED


def test_bad_request_is_not_retried(sleeps, invalidations):
    session = FakeSession(direct_post=[
        FakeResponse(400, body={"success": False, "error": "invalid_request", "code": 400}),
    ])
    client = make_client(session, sleeps, invalidations)
    with pytest.raises(RequestRejected):
        client.create_order("", 1)
    assert len(session.calls) == 1


def test_origin_check_blocks_unreadable_response(sleeps, invalidations):
    no_cors = FakeResponse(body={"success": True, "order": {"id": "o1"}}, headers={"Content-Type": "application/json"})
    session = FakeSession(direct_post=[no_cors], stream_post=[FakeResponse()])
    client = make_client(session, sleeps, invalidations, origin="https://salon.example")
    result = client.create_order("Cắt tóc", 1)
    assert result.confirmed is False
    assert session.calls[0]["headers"]["Origin"] == "https://salon.example"
    assert session.calls[0]["data"]["origin"] == "https://salon.example"


def test_select_fallback_policy():
    assert select_fallback(True, CrossOriginBlocked()) == "fire_and_forget"
    assert select_fallback(True, TransientFailure()) is None
    assert select_fallback(False, CrossOriginBlocked()) == "callback"
    assert select_fallback(False, TransientFailure()) == "callback"


def test_against_running_app(api, add_staff, sleeps, invalidations):
    add_staff("u1@example.com", name="Lan")
    client = SalonLedgerClient(
        base_url="http://testserver/exec",
        token="token-u1",
        origin="https://salon.example",
        session=api,
        sleep=sleeps.append,
        on_session_invalid=invalidations.append,
    )
    assert client.health()["status"] == "ok"
    created = client.create_order("Cắt tóc", 100000)
    assert created.confirmed
    order = created.data["order"]
    assert order["ownerIdentity"] == "u1@example.com"
    assert [o["id"] for o in client.list_orders()] == [order["id"]]
    assert client.get_stats()["todayRevenue"] == 100000
    assert client.delete_order(order["id"]) is DeleteResult.DELETED
    assert client.delete_order(order["id"]) is DeleteResult.ALREADY_GONE

    client.set_token("expired")
    with pytest.raises(Unauthenticated):
        client.list_orders()
    assert invalidations == ["unauthenticated"]


def test_scope_mismatch_keeps_the_session(api, add_staff, sleeps, invalidations):
    add_staff("u1@example.com", name="Lan")
    add_staff("u2@example.com", name="Mai")
    client = SalonLedgerClient(
        base_url="http://testserver/exec",
        token="token-u1",
        session=api,
        sleep=sleeps.append,
        on_session_invalid=invalidations.append,
    )
    with pytest.raises(NotOwner):
        client.list_orders(employee="Mai")
    assert invalidations == []
    assert client.token == "token-u1"
    assert client.list_orders(employee="Lan") == []


def test_stats_breakdown_from_running_app(api, add_staff, sleeps, invalidations):
    add_staff("u1@example.com", name="Lan")
    client = SalonLedgerClient(base_url="http://testserver/exec", token="token-u1", session=api, sleep=sleeps.append)
    client.create_order("Gội", 50000)
    client.create_order("Gội", 30000)
    stats = client.get_stats()
    assert stats["weekCount"] == 2
    assert stats["services"] == [{"name": "Gội", "count": 2, "revenue": 80000}]
    assert [o["category"] for o in client.list_orders(service="gội")] == ["Gội", "Gội"]


def test_from_env(monkeypatch):
    monkeypatch.setenv("SALON_LEDGER_URL", "https://ledger.test/exec")
    monkeypatch.setenv("SALON_LEDGER_TOKEN", "env-token")
    monkeypatch.setenv("SALON_LEDGER_ORIGIN", "https://salon.example")
    client = SalonLedgerClient.from_env(attempts=5)
    assert client.base_url == "https://ledger.test/exec"
    assert client.token == "env-token"
    assert client.origin == "https://salon.example"
    assert client.attempts == 5

    override = SalonLedgerClient.from_env(token="explicit")
    assert override.token == "explicit"


def test_from_env_without_url(monkeypatch):
    monkeypatch.delenv("SALON_LEDGER_URL", raising=False)
    monkeypatch.setenv("SALON_LEDGER_TOKEN", "")
    with pytest.raises(RuntimeError):
        SalonLedgerClient.from_env()

    monkeypatch.setenv("SALON_LEDGER_URL", "https://ledger.test/exec")
    assert SalonLedgerClient.from_env().token is None
