import pytest
from fastapi.testclient import TestClient

from wallet_autopilot.api.server import configure_app
from wallet_autopilot.config import MAX_UINT256, init_config

from conftest import AGENT, TOKEN, WALLET, FakeAuthority, FakeIndexer, make_approval


@pytest.fixture
def fake_indexer():
    return FakeIndexer()


@pytest.fixture
def client(tmp_path, fake_indexer):
    init_config(tmp_path, agent={"address": AGENT})
    app = configure_app(tmp_path, indexer=fake_indexer, authority=FakeAuthority(), start_monitor=False)
    with TestClient(app) as test_client:
        yield test_client


def _register(client, **overrides):
    body = {
        "delegator": WALLET,
        "delegate": AGENT,
        "scope": {"type": "functionCall", "targets": [TOKEN], "selectors": ["0x095ea7b3"]},
        "proofOfGrant": "0xsigned",
    }
    body.update(overrides)
    return client.post("/api/delegation/register", json=body)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


def test_register_and_list(client):
    resp = _register(client)

    assert resp.status_code == 200
    data = resp.json()
    assert data["success"] is True
    assert data["delegation"]["status"] == "active"

    listed = client.get(f"/api/delegation/{WALLET}").json()
    assert [d["id"] for d in listed] == [data["delegationId"]]


@pytest.mark.parametrize(
    "overrides",
    [
        {"delegator": "not-an-address"},
        {"proofOfGrant": ""},
        {"scope": {"targets": []}},
        {"scope": {"targets": [TOKEN], "action_kinds": ["teleport"]}},
    ],
)
def test_register_rejects_malformed_input(client, overrides):
    resp = _register(client, **overrides)

    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "AUTOPILOT_E_VALIDATION"


def test_revoke_is_idempotent(client):
    delegation_id = _register(client).json()["delegationId"]

    assert client.post("/api/delegation/revoke", json={"delegationId": delegation_id}).json() == {"success": True}
    assert client.delete(f"/api/delegation/{delegation_id}").json() == {"success": True}

    [record] = client.get(f"/api/delegation/{WALLET}").json()
    assert record["status"] == "revoked"


def test_revoke_unknown_is_404(client):
    resp = client.post("/api/delegation/revoke", json={"delegationId": "missing"})

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "AUTOPILOT_E_DELEGATION_NOT_FOUND"


def test_pause_and_resume(client):
    delegation_id = _register(client).json()["delegationId"]

    assert client.post(f"/api/delegation/{delegation_id}/pause").json()["status"] == "paused"
    assert client.post(f"/api/delegation/{delegation_id}/resume").json()["status"] == "active"


def test_wallet_health_404_when_never_indexed(client):
    assert client.get(f"/api/wallet/{WALLET}/health").status_code == 404


def test_wallet_health_and_approvals(client, fake_indexer):
    fake_indexer.approvals[WALLET] = [
        make_approval(amount=MAX_UINT256),
        make_approval(amount=10, is_risky=True),
    ]

    health = client.get(f"/api/wallet/{WALLET}/health").json()
    approvals = client.get(f"/api/wallet/{WALLET}/approvals").json()
    risky = client.get(f"/api/wallet/{WALLET}/approvals/risky").json()

    assert health["score"] == 80
    assert health["indexed"] is True
    assert len(approvals) == 2
    assert approvals[0]["amount"] == str(MAX_UINT256)
    assert [a["isRisky"] for a in risky] == [True]


def test_bad_wallet_address_is_400(client):
    assert client.get("/api/wallet/0x123/approvals").status_code == 400


def test_actions_audit(client):
    assert client.get("/api/actions").json() == []
    assert client.get("/api/actions", params={"status": "bogus"}).status_code == 400


def test_monitor_status(client):
    status = client.get("/api/monitor").json()

    assert status["agent"] == AGENT
    assert status["monitor"]["running"] is False
    assert status["monitor"]["cycles_run"] == 0
