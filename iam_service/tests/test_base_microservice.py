import json
import logging

from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from iam_service.base_microservice import BaseMicroservice, MCPResponse
from iam_service.main import create_app


def test_mcp_response_envelope():
    response = MCPResponse(data={"id": 1}, message="done")
    assert response.status_code == 200
    assert json.loads(response.body) == {"status": "ok", "message": "done", "data": {"id": 1}}


def test_mcp_response_error_code():
    response = MCPResponse(message="nope", status="error", error_code="ACCOUNT_NOT_FOUND", status_code=404)
    assert response.status_code == 404
    body = json.loads(response.body)
    assert body["status"] == "error"
    assert body["error_code"] == "ACCOUNT_NOT_FOUND"
    assert body["data"] is None


def test_log_event_and_error(caplog):
    service = BaseMicroservice(name="pytest")
    with caplog.at_level(logging.INFO, logger="iam_service.pytest"):
        service.log_event("account.registered", {"id": 1})
        service.log_error(ValueError("bad input"), context="unit test")

    assert "EVENT: account.registered | Details: {'id': 1}" in caplog.text
    assert "ERROR: ValueError: bad input | Context: unit test" in caplog.text


async def test_mcp_response_through_a_route():
    service = BaseMicroservice()
    app = FastAPI()

    @app.get("/thing")
    async def thing():
        return service.mcp_response(data=[1, 2], message="listed", status_code=202)

    transport = ASGITransport(app=app)
    async with AsyncClient(base_url="http://test", transport=transport) as ac:
        resp = await ac.get("/thing")
    assert resp.status_code == 202
    assert resp.json() == {"status": "ok", "message": "listed", "data": [1, 2]}


async def test_lifespan_creates_owner(settings, notifier, store, caplog):
    app = create_app(
        settings.with_overrides(
            bootstrap_owner_username="owner",
            bootstrap_owner_email="owner@example.com",
            bootstrap_owner_password="Str0ngPassw0rd",
        ),
        notifier=notifier,
        store=store,
    )
    caplog.set_level(logging.INFO)
    async with app.router.lifespan_context(app):
        page = (await app.state.auth_services.lifecycle.list_accounts()).unwrap()

    assert [(a.username, a.role) for a in page.items] == [("owner", "owner")]
    assert "EVENT: account.owner.created" in caplog.text
