"""
Integration tests for conversations, messages and the conversation WebSocket.
"""
import asyncio

import pytest
from sqlalchemy import select
from starlette.websockets import WebSocketDisconnect

from careflow import models
from careflow.database import AsyncSessionLocal
from conftest import bearer_token


async def _receipts():
    async with AsyncSessionLocal() as db:
        result = await db.execute(
            select(models.MessageReadReceipt.message_id, models.MessageReadReceipt.user_id)
            .order_by(models.MessageReadReceipt.id)
        )
        return result.all()


class TestConversations:
    def test_participants(self, care_team):
        conversation = care_team["conversation"]
        assert conversation["status"] == "active"
        assert sorted(p["role"] for p in conversation["participants"]) == ["patient", "provider"]

    def test_patient_sees_only_own_conversations(self, client, care_team, make_patient):
        tenant = care_team["tenant"]
        other = make_patient(tenant["headers"], first_name="Other")
        client.post("/api/conversations/", headers=tenant["headers"], json={"patient_id": other["id"]})

        listed = client.get("/api/conversations/", headers=care_team["patient_headers"]).json()
        assert [c["id"] for c in listed] == [care_team["conversation"]["id"]]
        assert len(client.get("/api/conversations/", headers=tenant["headers"]).json()) == 2

        # a patient cannot open a thread about someone else
        resp = client.post(
            "/api/conversations/", headers=care_team["patient_headers"], json={"patient_id": other["id"]}
        )
        assert resp.status_code == 404

    def test_other_tenant_gets_404(self, client, care_team, make_tenant):
        hillcrest = make_tenant("Hillcrest Clinic")
        cid = care_team["conversation"]["id"]

        assert client.get(f"/api/conversations/{cid}", headers=hillcrest["headers"]).status_code == 404
        resp = client.post(f"/api/conversations/{cid}/messages", headers=hillcrest["headers"], json={"content": "hi"})
        assert resp.status_code == 404

    def test_send_and_list_messages(self, client, care_team):
        cid = care_team["conversation"]["id"]
        staff = care_team["tenant"]["headers"]

        resp = client.post(
            f"/api/conversations/{cid}/messages",
            headers=care_team["patient_headers"],
            json={"content": "My knee is swollen", "priority": "urgent", "metadata": {"pain": 6}},
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["sender_type"] == "patient"
        assert body["metadata"] == {"pain": 6}
        assert body["delivered_at"] is not None

        client.post(f"/api/conversations/{cid}/messages", headers=staff, json={"content": "Ice and elevate"})
        client.post(f"/api/conversations/{cid}/messages", headers=staff, json={"content": "Call if it worsens"})

        messages = client.get(f"/api/conversations/{cid}/messages", headers=staff).json()
        assert [m["content"] for m in messages] == ["My knee is swollen", "Ice and elevate", "Call if it worsens"]

        older = client.get(
            f"/api/conversations/{cid}/messages",
            params={"before_id": messages[2]["id"], "limit": 1},
            headers=staff,
        ).json()
        assert [m["id"] for m in older] == [messages[1]["id"]]

    def test_only_sender_can_edit(self, client, care_team):
        cid = care_team["conversation"]["id"]
        staff = care_team["tenant"]["headers"]
        message = client.post(f"/api/conversations/{cid}/messages", headers=staff, json={"content": "Typo"}).json()
        url = f"/api/conversations/{cid}/messages/{message['id']}"

        assert client.patch(url, headers=care_team["patient_headers"], json={"content": "x"}).status_code == 403

        resp = client.patch(url, headers=staff, json={"content": "Fixed"})
        assert resp.status_code == 200
        assert resp.json()["content"] == "Fixed"
        assert resp.json()["is_edited"] is True
        assert resp.json()["edited_at"] is not None

    def test_mark_read_skips_own_messages(self, client, care_team):
        cid = care_team["conversation"]["id"]
        staff = care_team["tenant"]["headers"]
        patient_headers = care_team["patient_headers"]

        client.post(f"/api/conversations/{cid}/messages", headers=staff, json={"content": "How are you?"})
        client.post(f"/api/conversations/{cid}/messages", headers=patient_headers, json={"content": "Sore"})
        client.post(f"/api/conversations/{cid}/messages", headers=patient_headers, json={"content": "But ok"})

        resp = client.post(f"/api/conversations/{cid}/read", headers=staff)
        assert resp.status_code == 200
        assert resp.json()["marked"] == 2
        assert client.post(f"/api/conversations/{cid}/read", headers=staff).json()["marked"] == 0

        assert client.post(f"/api/conversations/{cid}/read", headers=patient_headers).json()["marked"] == 1
        assert len(asyncio.run(_receipts())) == 3

        messages = client.get(f"/api/conversations/{cid}/messages", headers=staff).json()
        assert all(m["read_at"] is not None for m in messages)

    def test_closed_conversation_rejects_messages(self, client, care_team):
        cid = care_team["conversation"]["id"]
        staff = care_team["tenant"]["headers"]

        assert client.put(
            f"/api/conversations/{cid}/status", headers=care_team["patient_headers"], json={"status": "closed"}
        ).status_code == 403

        resp = client.put(f"/api/conversations/{cid}/status", headers=staff, json={"status": "closed"})
        assert resp.status_code == 200
        assert resp.json()["status"] == "closed"

        resp = client.post(f"/api/conversations/{cid}/messages", headers=staff, json={"content": "late"})
        assert resp.status_code == 409

        closed = client.get("/api/conversations/", params={"status": "closed"}, headers=staff).json()
        assert [c["id"] for c in closed] == [cid]

    def test_typing(self, client, care_team):
        cid = care_team["conversation"]["id"]
        resp = client.post(
            f"/api/conversations/{cid}/typing", headers=care_team["patient_headers"], json={"is_typing": True}
        )
        assert resp.status_code == 204
        assert client.app.state.hub.typing.is_typing(cid, care_team["patient"]["user_id"])

        client.post(f"/api/conversations/{cid}/typing", headers=care_team["patient_headers"], json={"is_typing": False})
        assert not client.app.state.hub.typing.is_typing(cid, care_team["patient"]["user_id"])


class TestConversationSocket:
    def test_streams_new_messages(self, client, care_team):
        cid = care_team["conversation"]["id"]
        token = bearer_token(care_team["tenant"]["headers"])

        with client.websocket_connect(f"/api/ws/conversations/{cid}?token={token}") as ws:
            subscribed = ws.receive_json()
            assert subscribed["type"] == "subscribed"
            assert subscribed["data"]["conversation_id"] == cid

            client.post(
                f"/api/conversations/{cid}/messages",
                headers=care_team["patient_headers"],
                json={"content": "Can I shower yet?"},
            )
            frame = ws.receive_json()
            assert frame["type"] == "new_message"
            assert frame["data"]["record"]["content"] == "Can I shower yet?"
            message_id = frame["data"]["record"]["id"]

            # read over the socket produces a receipt event for the same message
            ws.send_json({"type": "read_messages"})
            frame = ws.receive_json()
            assert frame["type"] == "message_read"
            assert frame["data"]["record"]["message_id"] == message_id

    def test_typing_from_other_participant(self, client, care_team):
        cid = care_team["conversation"]["id"]
        token = bearer_token(care_team["tenant"]["headers"])

        with client.websocket_connect(f"/api/ws/conversations/{cid}?token={token}") as ws:
            ws.receive_json()
            client.post(
                f"/api/conversations/{cid}/typing", headers=care_team["patient_headers"], json={"is_typing": True}
            )
            frame = ws.receive_json()
            assert frame["type"] == "typing_indicator"
            assert frame["data"]["record"]["is_typing"] is True

    def test_bad_token_rejected(self, client, care_team):
        cid = care_team["conversation"]["id"]
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/api/ws/conversations/{cid}?token=nonsense"):
                pass
        assert exc.value.code == 1008

    def test_other_tenant_rejected(self, client, care_team, make_tenant):
        hillcrest = make_tenant("Hillcrest Clinic")
        cid = care_team["conversation"]["id"]
        token = bearer_token(hillcrest["headers"])

        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect(f"/api/ws/conversations/{cid}?token={token}"):
                pass
        assert exc.value.code == 1008
