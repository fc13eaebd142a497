"""
Tests for request middleware and exception handlers
"""
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from omniflow.core.exceptions import ExecutionNotFoundError, FlowDefinitionError
from omniflow.core.logging import get_correlation_id
from omniflow.core.middleware import setup_exception_handlers, setup_middleware


@pytest.fixture
async def client():
    app = FastAPI()
    setup_middleware(app)
    setup_exception_handlers(app)

    @app.get("/echo")
    async def echo():
        return {"correlation_id": get_correlation_id()}

    @app.get("/missing")
    async def missing():
        raise ExecutionNotFoundError("exec-1")

    @app.get("/invalid-flow")
    async def invalid_flow():
        raise FlowDefinitionError("bot-1", "no start node")

    @app.get("/crash")
    async def crash():
        raise RuntimeError("unexpected")

    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestCorrelationIdMiddleware:
    @pytest.mark.unit
    async def test_propagates_incoming_header(self, client):
        response = await client.get("/echo", headers={"X-Correlation-ID": "req-0001"})

        assert response.headers["X-Correlation-ID"] == "req-0001"
        assert response.json() == {"correlation_id": "req-0001"}

    @pytest.mark.unit
    async def test_generates_when_missing(self, client):
        response = await client.get("/echo")

        cid = response.headers["X-Correlation-ID"]
        assert len(cid) == 8
        assert response.json()["correlation_id"] == cid


class TestExceptionHandlers:
    @pytest.mark.unit
    async def test_not_found_rendered(self, client):
        response = await client.get("/missing")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "ERR_3003"
        assert error["details"]["identifier"] == "exec-1"

    @pytest.mark.unit
    async def test_flow_definition_rendered(self, client):
        response = await client.get("/invalid-flow")

        assert response.status_code == 422
        assert response.json()["error"]["details"]["reason"] == "no start node"

    @pytest.mark.unit
    async def test_unexpected_error_is_generic_500(self, client):
        response = await client.get("/crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "ERR_1000"
        assert "unexpected" not in response.json()["error"]["message"]
