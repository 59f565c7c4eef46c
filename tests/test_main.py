import json
import logging

import pytest
from fastapi import APIRouter, FastAPI

from conftest import SQLALCHEMY_DATABASE_URL, TestingSessionLocal
from order_service.logging_config import JSONFormatter
from order_service.main import build_gateways, check_routes
from order_service.routes import ROUTE_TABLE, router


def test_every_declared_route_is_bound():
    check_routes(router)


def test_route_check_reads_nested_routers():
    outer = APIRouter()
    outer.include_router(router)
    app = FastAPI()
    app.include_router(outer)

    check_routes(outer)


def test_route_check_reads_wrapped_route_groups():
    class RouteGroup:
        def __init__(self, routes):
            self.routes = routes

    holder = APIRouter()
    holder.routes.append(RouteGroup(list(router.routes)))

    check_routes(holder)


def test_missing_route_binding_fails_startup():
    table = ROUTE_TABLE + [("POST", "/orders/refund", "refund_order")]
    with pytest.raises(RuntimeError) as excinfo:
        check_routes(router, table)
    assert "POST /orders/refund -> refund_order" in str(excinfo.value)


def test_mismatched_handler_name_fails_startup():
    table = [("POST", "/orders/{provider}-order", "createPayPalOrder")]
    with pytest.raises(RuntimeError):
        check_routes(router, table)


def test_build_gateways_skips_unconfigured_providers(mocker):
    settings = mocker.Mock(
        stripe_secret_key="sk_test_123",
        paypal_client_id=None,
        paypal_client_secret=None,
        gateway_timeout=5.0,
    )

    gateways = build_gateways(settings)

    assert sorted(gateways) == ["stripe"]


def test_health(client, monkeypatch):
    monkeypatch.setattr("order_service.main.SessionLocal", TestingSessionLocal)

    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["database"] == "connected"


def test_request_id_is_echoed(client):
    response = client.get("/health", headers={"X-Request-ID": "req-42"})

    assert response.headers["X-Request-ID"] == "req-42"


def test_validation_errors_are_400(client):
    response = client.post("/orders/paypal-order", json={"cartItems": "nope"})

    assert response.status_code == 400
    body = response.json()
    assert body["status"] == "error"
    assert body["code"] == "validation_error"
    assert body["error"]


def test_json_formatter_includes_extra_fields():
    formatter = JSONFormatter("order-service")
    record = logging.LogRecord("order_service.service", logging.INFO, __file__, 1, "Order persisted", None, None)
    record.external_id = "T1"
    record.outcome = "persisted"

    log = json.loads(formatter.format(record))

    assert log["service"] == "order-service"
    assert log["message"] == "Order persisted"
    assert log["external_id"] == "T1"
    assert log["outcome"] == "persisted"


def test_app_engine_uses_the_test_database():
    import order_service.database

    assert str(order_service.database.engine.url) == SQLALCHEMY_DATABASE_URL
