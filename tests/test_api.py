"""End-to-end tests for the users HTTP API."""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from opentelemetry.trace import SpanKind, StatusCode

from users_api.api import create_app
from users_api.auth import PasswordVerifier
from users_api.database import Database
from users_api.telemetry import (
    HTTP_SERVER_ATTRIBUTE_KEYS,
    HTTP_SERVER_ATTRIBUTE_KEYS_MS,
    HTTP_SERVER_DURATION,
    HTTP_SERVER_DURATION_MS,
    LATENCY_BUCKETS,
    LATENCY_BUCKETS_MS,
    PASSWORD_CHECK_ERRORS,
    PASSWORD_CHECK_LATENCY,
)

TEST_ROUNDS = 4
PASSWORD = "super-secret-password"


@pytest.fixture
def api_app(tmp_path: Path, sink):
    database = Database(tmp_path / "users.sqlite3", telemetry=sink, bcrypt_rounds=TEST_ROUNDS)
    database.initialize()
    user = database.create_user("Alice", "alice@example.com", PASSWORD)
    verifier = PasswordVerifier(sink, rounds=TEST_ROUNDS)
    app = create_app(database=database, verifier=verifier, telemetry=sink)
    yield app, database, user


@pytest.fixture
def traced_app(tmp_path: Path, otel):
    database = Database(tmp_path / "users.sqlite3", telemetry=otel.sink, bcrypt_rounds=TEST_ROUNDS)
    database.initialize()
    user = database.create_user("Alice", "alice@example.com", PASSWORD)
    verifier = PasswordVerifier(otel.sink, rounds=TEST_ROUNDS)
    app = create_app(database=database, verifier=verifier, telemetry=otel.sink)
    yield app, database, user


def _broken_app(tmp_path: Path, telemetry):
    # Never initialised, so every query fails.
    database = Database(tmp_path / "broken.sqlite3", telemetry=telemetry, bcrypt_rounds=TEST_ROUNDS)
    verifier = PasswordVerifier(telemetry, rounds=TEST_ROUNDS)
    return create_app(database=database, verifier=verifier, telemetry=telemetry)


def test_healthcheck(api_app) -> None:
    app, _, _ = api_app
    with TestClient(app) as client:
        response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_get_user_returns_profile_without_password(api_app) -> None:
    app, _, user = api_app

    with TestClient(app) as client:
        response = client.get("/user", params={"id": user.id})

    assert response.status_code == 200, response.text
    assert response.json() == {"id": user.id, "name": "Alice", "email": "alice@example.com"}


def test_get_user_requires_id(api_app) -> None:
    app, _, _ = api_app
    with TestClient(app) as client:
        missing = client.get("/user")
        invalid = client.get("/user", params={"id": "abc"})

    assert missing.status_code == 400
    assert invalid.status_code == 400


def test_get_unknown_user_returns_404(api_app) -> None:
    app, _, _ = api_app
    with TestClient(app) as client:
        response = client.get("/user", params={"id": 999})
    assert response.status_code == 404


def test_get_user_store_failure_returns_500(tmp_path: Path, sink) -> None:
    app = _broken_app(tmp_path, sink)
    with TestClient(app) as client:
        response = client.get("/user", params={"id": 1})
    assert response.status_code == 500
    assert response.json()["detail"] == "Failed to get user"


def test_auth_accepts_correct_password(api_app, sink) -> None:
    app, _, user = api_app

    with TestClient(app) as client:
        response = client.post("/user/auth", data={"id": str(user.id), "password": PASSWORD})

    assert response.status_code == 200, response.text
    assert response.json() == {"Status": "OK"}
    assert [attrs for _, attrs in sink.latencies] == [{"matched": True}]
    assert any(name == "password_check" for name, _ in sink.spans)


def test_auth_rejects_wrong_password(api_app, sink) -> None:
    app, _, user = api_app

    with TestClient(app) as client:
        response = client.post("/user/auth", data={"id": str(user.id), "password": "nope"})

    assert response.status_code == 401
    assert sink.error_count == 0


def test_malformed_hash_looks_like_a_wrong_password(api_app, sink) -> None:
    app, database, user = api_app
    other = database.create_user("Bob", "bob@example.com", None)
    database.set_password_hash(other.id, b"$2b$04$tooshort")

    with TestClient(app) as client:
        wrong = client.post("/user/auth", data={"id": str(user.id), "password": "nope"})
        malformed = client.post("/user/auth", data={"id": str(other.id), "password": "nope"})

    assert wrong.status_code == malformed.status_code == 401
    assert wrong.json() == malformed.json()
    assert sink.error_count == 1
    assert len(sink.latencies) == 2


def test_auth_for_account_without_password_is_rejected(api_app, sink) -> None:
    app, database, _ = api_app
    other = database.create_user("Bob", "bob@example.com", None)

    with TestClient(app) as client:
        response = client.post("/user/auth", data={"id": str(other.id), "password": ""})

    assert response.status_code == 401
    assert len(sink.latencies) == 1


def test_auth_for_unknown_user_is_rejected_like_a_wrong_password(api_app, sink) -> None:
    app, _, user = api_app

    with TestClient(app) as client:
        unknown = client.post("/user/auth", data={"id": "999", "password": PASSWORD})
        wrong = client.post("/user/auth", data={"id": str(user.id), "password": "nope"})

    assert unknown.status_code == 401
    assert unknown.json() == wrong.json()
    assert len(sink.latencies) == 2


def test_auth_requires_id(api_app, sink) -> None:
    app, _, _ = api_app
    with TestClient(app) as client:
        missing = client.post("/user/auth", data={"password": PASSWORD})
        invalid = client.post("/user/auth", data={"id": "one", "password": PASSWORD})

    assert missing.status_code == 400
    assert invalid.status_code == 400
    assert sink.latencies == []


def test_auth_store_failure_returns_500(tmp_path: Path, sink) -> None:
    app = _broken_app(tmp_path, sink)
    with TestClient(app) as client:
        response = client.post("/user/auth", data={"id": "1", "password": PASSWORD})
    assert response.status_code == 500
    assert sink.latencies == []


def test_one_server_span_per_request(traced_app, otel) -> None:
    app, _, user = traced_app

    with TestClient(app) as client:
        client.get("/user", params={"id": user.id})

    server_spans = [span for span in otel.spans.get_finished_spans() if span.kind is SpanKind.SERVER]
    assert len(server_spans) == 1


def test_store_failure_is_recorded_on_spans(tmp_path: Path, otel) -> None:
    app = _broken_app(tmp_path, otel.sink)

    with TestClient(app) as client:
        response = client.get("/user", params={"id": 1})

    assert response.status_code == 500
    spans = otel.spans.get_finished_spans()
    (lookup,) = [span for span in spans if span.name == "users.fetch"]
    assert lookup.status.status_code is StatusCode.ERROR
    assert any(event.name == "exception" for event in lookup.events)

    (server,) = [span for span in spans if span.kind is SpanKind.SERVER]
    assert server.status.status_code is StatusCode.ERROR


def test_spans_never_carry_credentials(traced_app, otel) -> None:
    app, database, user = traced_app
    stored = database.fetch(user.id).password_hash
    assert stored is not None

    with TestClient(app) as client:
        client.post("/user/auth", data={"id": str(user.id), "password": PASSWORD})
        client.post("/user/auth", data={"id": str(user.id), "password": "wrong-guess-123"})

    forbidden = [PASSWORD, "wrong-guess-123", stored.decode("ascii"), stored.hex()]
    for span in otel.spans.get_finished_spans():
        values = [str(value) for value in span.attributes.values()]
        for event in span.events:
            values.extend(str(value) for value in event.attributes.values())
        for value in values:
            for secret in forbidden:
                assert secret not in value


def test_password_check_metrics_through_http(traced_app, otel) -> None:
    app, database, user = traced_app
    other = database.create_user("Bob", "bob@example.com", None)
    database.set_password_hash(other.id, b"$2b$04$tooshort")

    with TestClient(app) as client:
        client.post("/user/auth", data={"id": str(user.id), "password": PASSWORD})
        client.post("/user/auth", data={"id": str(user.id), "password": "nope"})
        client.post("/user/auth", data={"id": str(other.id), "password": "nope"})

    latency_points = otel.points(PASSWORD_CHECK_LATENCY)
    assert sum(point.count for point in latency_points) == 3
    for point in latency_points:
        assert set(point.attributes) == {"matched"}
    assert sum(point.value for point in otel.points(PASSWORD_CHECK_ERRORS)) == 1


def test_package_factory_builds_a_wired_application(tmp_path: Path) -> None:
    import users_api

    settings = users_api.Settings(database_path=tmp_path / "users.sqlite3", bcrypt_rounds=TEST_ROUNDS)
    app = users_api.create_app(settings=settings)

    assert not getattr(app, "_is_instrumented_by_opentelemetry", False)

    with TestClient(app) as client:
        assert client.get("/health").json() == {"status": "ok"}
        assert client.get("/user", params={"id": 1}).status_code == 404
        assert client.post("/user/auth", data={"id": "1", "password": PASSWORD}).status_code == 401


def test_oversized_identifier_is_a_client_error(api_app, sink) -> None:
    app, _, _ = api_app
    huge = "9" * 5000

    with TestClient(app) as client:
        lookup = client.get("/user", params={"id": huge})
        auth = client.post("/user/auth", data={"id": huge, "password": PASSWORD})

    assert lookup.status_code == 400
    assert auth.status_code == 400
    assert sink.latencies == []


def test_traced_app_is_instrumented(traced_app) -> None:
    app, _, _ = traced_app
    assert getattr(app, "_is_instrumented_by_opentelemetry", False)


def test_http_server_duration_is_bucketed_and_low_cardinality(traced_app, otel) -> None:
    app, _, user = traced_app

    with TestClient(app) as client:
        client.get("/user", params={"id": user.id})
        client.get("/user", params={"id": 999})
        client.post("/user/auth", data={"id": str(user.id), "password": PASSWORD})

    stable = otel.points(HTTP_SERVER_DURATION)
    legacy = otel.points(HTTP_SERVER_DURATION_MS)
    # Which of the two is emitted depends on the HTTP semantic convention mode.
    assert stable or legacy
    for point in stable:
        assert tuple(point.explicit_bounds) == LATENCY_BUCKETS
        assert set(point.attributes) <= HTTP_SERVER_ATTRIBUTE_KEYS
    for point in legacy:
        assert tuple(point.explicit_bounds) == LATENCY_BUCKETS_MS
        assert set(point.attributes) <= HTTP_SERVER_ATTRIBUTE_KEYS_MS
    for point in [*stable, *legacy]:
        assert not {"http.target", "http.host", "net.host.port", "user.id"} & set(point.attributes)
    assert sum(point.count for point in [*stable, *legacy]) == 3
