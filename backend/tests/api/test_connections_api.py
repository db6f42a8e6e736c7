import pytest


def _headers(user, roles=None):
    headers = {"X-User-Id": user.id}
    if roles:
        headers["X-User-Roles"] = roles
    return headers


@pytest.mark.asyncio
async def test_scenario_a_over_http(api_client, make_user):
    u1 = await make_user()
    u2 = await make_user()

    created = await api_client.post("/connections", json={"receiver_id": u2.id}, headers=_headers(u1))
    assert created.status_code == 201
    connection_id = created.json()["id"]
    assert created.json()["status"] == "pending"

    incoming = await api_client.get("/connections/incoming", headers=_headers(u2))
    assert [row["id"] for row in incoming.json()] == [connection_id]

    accepted = await api_client.post(
        f"/connections/{connection_id}/respond", json={"decision": "accept"}, headers=_headers(u2)
    )
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"

    for viewer, partner in ((u1, u2), (u2, u1)):
        status = await api_client.get(f"/connections/status/{partner.id}", headers=_headers(viewer))
        assert status.json() == {"partner_id": partner.id, "status": "accepted"}

    sent = await api_client.post("/messages", json={"receiver_id": u2.id, "content": "hi"}, headers=_headers(u1))
    assert sent.status_code == 201
    assert sent.json()["content"] == "hi"


@pytest.mark.asyncio
async def test_error_statuses(api_client, make_user):
    alice = await make_user()
    bob = await make_user()

    self_request = await api_client.post("/connections", json={"receiver_id": alice.id}, headers=_headers(alice))
    assert self_request.status_code == 400
    assert self_request.json()["detail"] == "self_connection"
    assert "request_id" in self_request.json()

    created = await api_client.post("/connections", json={"receiver_id": bob.id}, headers=_headers(alice))
    duplicate = await api_client.post("/connections", json={"receiver_id": alice.id}, headers=_headers(bob))
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"] == "already_pending"

    connection_id = created.json()["id"]
    wrong_party = await api_client.post(
        f"/connections/{connection_id}/respond", json={"decision": "accept"}, headers=_headers(alice)
    )
    assert wrong_party.status_code == 403

    missing = await api_client.post(
        "/connections/5d0c1b4e-0000-4000-8000-000000000000/cancel", headers=_headers(alice)
    )
    assert missing.status_code == 404

    malformed = await api_client.get("/connections/status/not-a-uuid", headers=_headers(alice))
    assert malformed.status_code == 400


@pytest.mark.asyncio
async def test_requires_authentication(api_client):
    response = await api_client.get("/connections")
    assert response.status_code == 401
    assert response.json()["detail"] == "invalid_token"


@pytest.mark.asyncio
async def test_block_and_remove(api_client, make_user, connect):
    alice = await make_user()
    bob = await make_user()
    carol = await make_user()
    accepted = await connect(alice, bob)
    pending = await api_client.post("/connections", json={"receiver_id": carol.id}, headers=_headers(alice))

    removed = await api_client.delete(f"/connections/{accepted.id}", headers=_headers(bob))
    assert removed.status_code == 204

    blocked = await api_client.post(f"/connections/{pending.json()['id']}/block", headers=_headers(carol))
    assert blocked.json()["status"] == "blocked"

    statuses = await api_client.post(
        "/connections/statuses", json={"partner_ids": [bob.id, carol.id]}, headers=_headers(alice)
    )
    assert statuses.json() == {"statuses": {bob.id: None, carol.id: "blocked"}}
