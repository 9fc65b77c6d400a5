"""
HTTP API tests.

Run the app in-process over httpx's ASGI transport with the stub protocol
client, so sessions are driven by injecting client events.
"""
from chatrelay.models.session import SessionStatus

PHONE_JID = "15551234567:3@s.whatsapp.net"


async def create_session(api, headers, session_id="main", **body):
    response = await api.post("/api/sessions", json={"sessionId": session_id, **body}, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()["data"]


async def connect_session(api, headers, runtime, client_factory, wait_for, session_id="main"):
    await create_session(api, headers, session_id)
    await wait_for(lambda: session_id in client_factory.clients)
    client = client_factory.latest(session_id)
    client.emit_open(PHONE_JID, "Alice")
    await wait_for(lambda: runtime.registry.get_session(session_id).status == SessionStatus.CONNECTED)
    return client


# --- service ---------------------------------------------------------------

async def test_root_and_health(api):
    root = await api.get("/")
    assert root.json()["status"] == "running"

    health = await api.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["sessions"] == 0


async def test_metrics_endpoint(api):
    response = await api.get("/metrics")
    assert response.status_code == 200
    assert "http_requests_total" in response.text


# --- auth ------------------------------------------------------------------

async def test_register_login_and_me(api, account):
    login = await api.post("/api/auth/login", json={"email": "owner@example.com", "password": "secret123"})
    assert login.status_code == 200
    body = login.json()
    assert body["success"] is True
    token = body["data"]["token"]

    me = await api.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.status_code == 200
    assert me.json()["data"]["email"] == "owner@example.com"

    by_key = await api.get("/api/auth/me", headers=account["headers"])
    assert by_key.json()["data"]["id"] == account["user"]["id"]


async def test_duplicate_register_is_rejected(api, account):
    response = await api.post(
        "/api/auth/register",
        json={"email": "owner@example.com", "password": "secret123"},
    )
    assert response.status_code == 400
    assert response.json()["code"] == "ALREADY_EXISTS"


async def test_bad_login_and_missing_credentials(api, account):
    bad = await api.post("/api/auth/login", json={"email": "owner@example.com", "password": "wrong-pass"})
    assert bad.status_code == 401
    assert bad.json()["code"] == "UNAUTHORIZED"

    anonymous = await api.get("/api/sessions")
    assert anonymous.status_code == 401
    assert anonymous.json()["success"] is False
    assert anonymous.json()["code"] == "UNAUTHORIZED"


async def test_refresh_api_key_invalidates_old_key(api, account):
    response = await api.post("/api/auth/refresh-api-key", headers=account["headers"])
    new_key = response.json()["data"]["apiKey"]
    assert new_key != account["user"]["apiKey"]

    old = await api.get("/api/auth/me", headers=account["headers"])
    assert old.status_code == 401
    new = await api.get("/api/auth/me", headers={"X-API-Key": new_key})
    assert new.status_code == 200


async def test_change_password(api, account):
    headers = account["headers"]
    wrong = await api.post(
        "/api/auth/change-password",
        json={"currentPassword": "nope", "newPassword": "another1"},
        headers=headers,
    )
    assert wrong.status_code == 401

    ok = await api.post(
        "/api/auth/change-password",
        json={"currentPassword": "secret123", "newPassword": "another1"},
        headers=headers,
    )
    assert ok.status_code == 200
    login = await api.post("/api/auth/login", json={"email": "owner@example.com", "password": "another1"})
    assert login.status_code == 200


# --- sessions --------------------------------------------------------------

async def test_create_and_list_sessions(api, account):
    headers = account["headers"]
    created = await create_session(api, headers)
    assert created["sessionId"] == "main"
    assert created["status"] == "CONNECTING"

    duplicate = await api.post("/api/sessions", json={"sessionId": "main"}, headers=headers)
    assert duplicate.status_code == 400
    assert duplicate.json()["code"] == "ALREADY_EXISTS"

    listed = await api.get("/api/sessions", headers=headers)
    assert [s["sessionId"] for s in listed.json()["data"]] == ["main"]


async def test_session_id_is_validated(api, account):
    response = await api.post("/api/sessions", json={"sessionId": "../etc"}, headers=account["headers"])

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"][0]["field"] == "sessionId"


async def test_sessions_are_owner_scoped(api, account, other_account):
    await create_session(api, account["headers"])

    response = await api.get("/api/sessions/main", headers=other_account["headers"])
    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"

    listed = await api.get("/api/sessions", headers=other_account["headers"])
    assert listed.json()["data"] == []


async def test_qr_code_available_after_qr_event(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    await create_session(api, headers)

    missing = await api.get("/api/sessions/main/qr", headers=headers)
    assert missing.status_code == 404

    await wait_for(lambda: "main" in client_factory.clients)
    client_factory.latest("main").emit_qr("2@abc")
    await wait_for(lambda: runtime.registry.get_session("main").status == SessionStatus.QR_REQUIRED)

    response = await api.get("/api/sessions/main/qr", headers=headers)
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "QR_REQUIRED"
    assert data["qrCode"].startswith("data:image/png;base64,")


async def test_status_and_delete(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    await connect_session(api, headers, runtime, client_factory, wait_for)

    status = await api.get("/api/sessions/main/status", headers=headers)
    assert status.json()["data"]["status"] == "CONNECTED"
    assert status.json()["data"]["phoneNumber"] == "15551234567"

    deleted = await api.delete("/api/sessions/main", headers=headers)
    assert deleted.status_code == 200
    assert (await api.get("/api/sessions/main", headers=headers)).status_code == 404


async def test_pairing_code_flow(api, account, runtime, wait_for):
    headers = account["headers"]
    await create_session(api, headers, "paired", usePairingCode=True)
    await wait_for(lambda: runtime.registry.get_session("paired").status == SessionStatus.PAIRING_REQUIRED)

    response = await api.post(
        "/api/sessions/paired/pairing-code",
        json={"phoneNumber": "+15551234567"},
        headers=headers,
    )

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["phoneNumber"] == "15551234567"
    assert len(data["pairingCode"]) == 8


# --- messages --------------------------------------------------------------

async def test_send_requires_connected_session(api, account):
    headers = account["headers"]
    await create_session(api, headers)

    response = await api.post(
        "/api/messages/main/send",
        json={"to": "4915100000000@s.whatsapp.net", "content": {"text": "hi"}},
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "SESSION_NOT_CONNECTED"


async def test_send_message(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/messages/main/send",
        json={
            "to": "4915100000000@s.whatsapp.net",
            "content": {"text": "  hello  "},
            "options": {"mentions": ["1@s.whatsapp.net"]},
        },
        headers=headers,
    )

    assert response.status_code == 200
    assert response.json()["data"]["key"]["fromMe"] is True
    assert client.commands == [(
        "send_message",
        {"to": "4915100000000@s.whatsapp.net", "content": {"text": "hello", "mentions": ["1@s.whatsapp.net"]}},
    )]


async def test_invalid_location_never_reaches_client(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/messages/main/send-location",
        json={"to": "1@s.whatsapp.net", "latitude": 91, "longitude": 0},
        headers=headers,
    )

    assert response.status_code == 400
    body = response.json()
    assert body["code"] == "VALIDATION_ERROR"
    assert body["details"][0]["field"] == "latitude"
    assert client.commands == []


async def test_send_location_and_reaction(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    await api.post(
        "/api/messages/main/send-location",
        json={"to": "1@s.whatsapp.net", "latitude": 52.5, "longitude": 13.4, "name": "Berlin"},
        headers=headers,
    )
    await api.post(
        "/api/messages/main/send-reaction",
        json={"to": "1@s.whatsapp.net", "messageId": "ABC", "emoji": "👍"},
        headers=headers,
    )

    location, reaction = [kwargs["content"] for _, kwargs in client.commands]
    assert location["location"]["degreesLatitude"] == 52.5
    assert location["location"]["name"] == "Berlin"
    assert reaction == {"react": {"text": "👍", "key": {"remoteJid": "1@s.whatsapp.net", "id": "ABC"}}}


async def test_send_media(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/messages/main/send-media",
        data={"to": "1@s.whatsapp.net", "caption": "look"},
        files={"file": ("cat.png", b"\x89PNG-bytes", "image/png")},
        headers=headers,
    )

    assert response.status_code == 200, response.text
    content = client.commands[0][1]["content"]
    assert content == {"image": b"\x89PNG-bytes", "caption": "look", "fileName": "cat.png"}


async def test_send_media_rejects_unsupported_type(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/messages/main/send-media",
        data={"to": "1@s.whatsapp.net"},
        files={"file": ("run.exe", b"MZ", "application/x-msdownload")},
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
    assert client.commands == []


async def test_message_history(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)
    client.emit_messages([{
        "key": {"id": "IN1", "remoteJid": "1@s.whatsapp.net", "fromMe": False},
        "message": {"conversation": "hey"},
        "messageTimestamp": 1760000000,
    }])

    await wait_for(lambda: len(runtime.hub.events("message")) == 1)

    response = await api.get("/api/messages/main", headers=headers, params={"chatId": "1@s.whatsapp.net"})
    messages = response.json()["data"]
    assert messages[0]["messageId"] == "IN1"
    assert messages[0]["content"] == {"conversation": "hey"}
    assert messages[0]["fromMe"] is False


async def test_deleted_session_id_cannot_be_claimed_by_another_owner(
    api, account, other_account, client_factory, runtime, wait_for
):
    client = await connect_session(api, account["headers"], runtime, client_factory, wait_for, session_id="shared")
    client.emit_messages([{
        "key": {"id": "IN1", "remoteJid": "1@s.whatsapp.net", "fromMe": False},
        "message": {"conversation": "private note"},
        "messageTimestamp": 1760000000,
    }])
    await wait_for(lambda: len(runtime.hub.events("message")) == 1)
    assert (await api.delete("/api/sessions/shared", headers=account["headers"])).status_code == 200

    claimed = await api.post("/api/sessions", json={"sessionId": "shared"}, headers=other_account["headers"])
    assert claimed.status_code == 400
    assert claimed.json()["code"] == "ALREADY_EXISTS"

    history = await api.get("/api/messages/shared", headers=other_account["headers"])
    assert history.status_code == 404

    recreated = await api.post("/api/sessions", json={"sessionId": "shared"}, headers=account["headers"])
    assert recreated.status_code == 201


# --- chats, contacts, groups -----------------------------------------------

async def test_archive_chat_updates_snapshot(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post("/api/chats/main/1@s.whatsapp.net/archive", headers=headers)

    assert response.status_code == 200
    assert client.commands == [("chat_modify", {"jid": "1@s.whatsapp.net", "modification": {"archive": True}})]
    chats = (await api.get("/api/chats/main", headers=headers)).json()["data"]
    assert chats[0]["isArchived"] is True


async def test_block_contact(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post("/api/contacts/main/1@s.whatsapp.net/block", headers=headers)

    assert response.status_code == 200
    assert client.commands == [("update_block_status", {"jid": "1@s.whatsapp.net", "action": "block"})]
    contacts = (await api.get("/api/contacts/main", headers=headers)).json()["data"]
    assert contacts[0]["isBlocked"] is True


async def test_create_group_with_description(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/groups/main/create",
        json={"subject": "Team", "participants": ["1@s.whatsapp.net"], "description": "Weekly sync"},
        headers=headers,
    )

    assert response.status_code == 200
    group = response.json()["data"]
    assert group["id"].endswith("@g.us")
    assert [name for name, _ in client.commands] == ["group_create", "group_update_description"]

    stored = await runtime.persistence.get_group("main", group["id"])
    assert stored.subject == "Team"
    assert stored.description == "Weekly sync"


async def test_participant_action_is_validated(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    await connect_session(api, headers, runtime, client_factory, wait_for)

    response = await api.post(
        "/api/groups/main/123@g.us/participants/kick",
        json={"participants": ["1@s.whatsapp.net"]},
        headers=headers,
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


# --- webhooks --------------------------------------------------------------

async def test_webhook_crud(api, account, other_account):
    headers = account["headers"]
    created = await api.post(
        "/api/webhooks",
        json={"url": "https://hooks.example/in", "events": ["message.received", "message.received"], "secret": "k"},
        headers=headers,
    )
    assert created.status_code == 201
    webhook = created.json()["data"]
    assert webhook["events"] == ["message.received"]
    assert webhook["hasSecret"] is True
    assert webhook["maxRetries"] == 3

    updated = await api.patch(
        f"/api/webhooks/{webhook['id']}",
        json={"events": ["*"], "secret": None},
        headers=headers,
    )
    assert updated.json()["data"]["events"] == ["*"]
    assert updated.json()["data"]["hasSecret"] is False

    foreign = await api.delete(f"/api/webhooks/{webhook['id']}", headers=other_account["headers"])
    assert foreign.status_code == 404

    deleted = await api.delete(f"/api/webhooks/{webhook['id']}", headers=headers)
    assert deleted.status_code == 200
    assert (await api.get("/api/webhooks", headers=headers)).json()["data"] == []


async def test_webhook_rejects_unknown_event(api, account):
    response = await api.post(
        "/api/webhooks",
        json={"url": "https://hooks.example/in", "events": ["message.deleted"]},
        headers=account["headers"],
    )

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


async def test_webhook_test_endpoint(api, account, webhook_endpoint):
    headers = account["headers"]
    created = await api.post(
        "/api/webhooks",
        json={"url": "https://hooks.example/in", "events": ["*"]},
        headers=headers,
    )
    webhook_id = created.json()["data"]["id"]

    response = await api.post(f"/api/webhooks/{webhook_id}/test", headers=headers)

    assert response.json()["data"] == {"testSuccess": True}
    assert webhook_endpoint.requests[0].headers["X-Webhook-Event"] == "webhook.test"


async def test_inbound_message_reaches_owner_webhook(api, account, client_factory, runtime, webhook_endpoint, wait_for):
    headers = account["headers"]
    created = await api.post(
        "/api/webhooks",
        json={"url": "https://hooks.example/in", "events": ["message.received"]},
        headers=headers,
    )
    webhook_id = created.json()["data"]["id"]
    client = await connect_session(api, headers, runtime, client_factory, wait_for)

    client.emit_messages([{
        "key": {"id": "IN1", "remoteJid": "1@s.whatsapp.net", "fromMe": False},
        "message": {"conversation": "hey"},
    }])
    await wait_for(lambda: len(webhook_endpoint.requests) == 1)
    await runtime.router.drain()

    deliveries = (await api.get(f"/api/webhooks/{webhook_id}/deliveries", headers=headers)).json()["data"]
    assert len(deliveries) == 1
    assert deliveries[0]["status"] == "SUCCESS"


# --- dashboard -------------------------------------------------------------

async def test_dashboard_stats(api, account, client_factory, runtime, wait_for):
    headers = account["headers"]
    await connect_session(api, headers, runtime, client_factory, wait_for)
    await create_session(api, headers, "second")

    stats = (await api.get("/api/dashboard/stats", headers=headers)).json()["data"]

    assert stats["totalSessions"] == 2
    assert stats["connectedSessions"] == 1
    assert stats["sessionsByStatus"]["CONNECTED"] == 1

    sessions = (await api.get("/api/dashboard/sessions", headers=headers)).json()["data"]
    assert {s["sessionId"]: s["status"] for s in sessions}["main"] == "CONNECTED"
