"""HTTP-level tests for the FastAPI app, with fake upstream services."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from conftest import FakeChatClient, FakeSender, server_error
from docbot.config import settings
from docbot.deps import Services, build_services
from docbot.main import create_app
from docbot.schemas import Credentials
from docbot.services import repository
from docbot.services.embedding import EmbeddingGateway
from docbot.services.llm import CompletionClient

BUSINESS = "+15550001"
CUSTOMER = "+15559999"
FAQ = "Our opening hours are 9am to 5pm. The price of a large cake is 25 dollars."


class StubRecognizer:
    def __init__(self, text: str = FAQ) -> None:
        self.text = text
        self.calls: list[tuple[str, str]] = []

    async def recognize(self, image: bytes, mime_type: str, mode: str = "ocr") -> str:
        self.calls.append((mime_type, mode))
        return self.text


@pytest.fixture()
def services(
    session_factory: async_sessionmaker, embedder: EmbeddingGateway,
    completion: CompletionClient, sender: FakeSender,
) -> Services:
    return build_services(session_factory, embedder=embedder, completion=completion,
                          sender=sender, recognizer=StubRecognizer())  # type: ignore[arg-type]


@pytest.fixture()
async def client(services: Services):
    transport = ASGITransport(app=create_app(services))
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


def webhook_body(message_id: str = "wamid.1", text: str = "What are your opening hours?") -> dict:
    return {
        "messageId": message_id,
        "channel": "whatsapp",
        "from": CUSTOMER,
        "to": BUSINESS,
        "content": {"contentType": "text", "text": text},
        "whatsapp": {"senderName": "Ann"},
        "event": "MoMessage",
    }


async def upload(client: AsyncClient, phone: str = BUSINESS, **form: str):
    data = {"phone_number": phone, "auth_token": "tok-123", "origin": "https://shop.example", **form}
    return await client.post("/v1/documents/upload", data=data,
                             files={"file": ("menu.png", b"\x89PNG fake", "image/png")})


async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


# ── Documents ───────────────────────────────────────────────────────────


class TestDocuments:
    async def test_upload_runs_job_to_completion(self, client: AsyncClient, services: Services) -> None:
        resp = await upload(client, intent="bakery", dev_mode="true", processing_mode="transcribe")
        assert resp.status_code == 202
        body = resp.json()
        assert body["file_type"] == "image"
        assert body["extracted_text"] == FAQ
        assert body["processing_mode"] == "transcribe"
        assert services.recognizer.calls == [("image/png", "transcribe")]

        job = (await client.get(f"/v1/documents/jobs/{body['job_id']}")).json()
        assert job["stage"] == "persisted"
        assert job["result"]["chunk_count"] == 1
        assert job["error"] is None

    async def test_upload_hides_text_without_dev_mode(self, client: AsyncClient) -> None:
        body = (await upload(client)).json()
        assert body["extracted_text"] is None
        assert body["processing_mode"] is None

    async def test_upload_requires_phone(self, client: AsyncClient) -> None:
        resp = await upload(client, phone="")
        assert resp.status_code == 400

    async def test_upload_requires_credentials(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/documents/upload", data={"phone_number": BUSINESS},
                                 files={"file": ("menu.png", b"img", "image/png")})
        assert resp.status_code == 400
        assert "auth_token" in resp.json()["detail"]

    async def test_upload_rejects_unsupported_type(self, client: AsyncClient) -> None:
        resp = await client.post(
            "/v1/documents/upload",
            data={"phone_number": BUSINESS, "auth_token": "t", "origin": "o"},
            files={"file": ("notes.txt", b"hello", "text/plain")},
        )
        assert resp.status_code == 400
        assert "Unsupported file type" in resp.json()["detail"]

    async def test_failed_job_reported(self, client: AsyncClient, services: Services) -> None:
        services.recognizer.text = "   "
        body = (await upload(client)).json()
        job = (await client.get(f"/v1/documents/jobs/{body['job_id']}")).json()
        assert job["stage"] == "failed"
        assert job["error"]

    async def test_unknown_job(self, client: AsyncClient) -> None:
        assert (await client.get("/v1/documents/jobs/nope")).status_code == 404

    async def test_list_and_delete(self, client: AsyncClient) -> None:
        await upload(client)
        docs = (await client.get("/v1/documents")).json()
        assert len(docs) == 1
        assert docs[0]["name"] == "menu.png"
        assert docs[0]["chunk_count"] == 1

        doc_id = docs[0]["id"]
        assert (await client.delete(f"/v1/documents/{doc_id}")).json() == {"success": True}
        assert (await client.get("/v1/documents")).json() == []
        assert (await client.delete(f"/v1/documents/{doc_id}")).status_code == 404


# ── Phones ──────────────────────────────────────────────────────────────


class TestPhones:
    async def test_groups_files_by_phone(self, client: AsyncClient) -> None:
        await upload(client, intent="bakery")
        groups = (await client.get("/v1/phones")).json()
        assert len(groups) == 1
        group = groups[0]
        assert group["phone_number"] == BUSINESS
        assert group["intent"] == "bakery"
        assert group["auth_token"] == "tok-123"
        assert [f["name"] for f in group["files"]] == ["menu.png"]

    async def test_settings_unknown_phone(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/phones/settings", json={"phone_number": "+10000000", "intent": "x"})
        assert resp.status_code == 404

    async def test_settings_update(self, client: AsyncClient) -> None:
        await upload(client)
        resp = await client.post("/v1/phones/settings",
                                 json={"phone_number": BUSINESS, "system_prompt": "You are CakeBot."})
        assert resp.status_code == 200
        group = (await client.get("/v1/phones")).json()[0]
        assert group["system_prompt"] == "You are CakeBot."

    async def test_prompt_before_and_after_upload(self, client: AsyncClient) -> None:
        first = await client.post("/v1/phones/prompt",
                                  json={"phone_number": BUSINESS, "intent": "support", "system_prompt": "Be kind."})
        assert first.json() == {"success": True, "created": True}
        group = (await client.get("/v1/phones")).json()[0]
        assert group["files"] == []

        await upload(client)
        group = (await client.get("/v1/phones")).json()[0]
        assert group["system_prompt"] == "Be kind."
        assert group["intent"] == "support"
        assert len(group["files"]) == 1

        second = await client.post("/v1/phones/prompt", json={"phone_number": BUSINESS, "system_prompt": "Be brief."})
        assert second.json() == {"success": True, "created": False}


# ── Webhook ─────────────────────────────────────────────────────────────


class TestWebhook:
    async def test_missing_fields(self, client: AsyncClient) -> None:
        body = webhook_body()
        del body["from"]
        resp = await client.post("/v1/webhook/whatsapp", json=body)
        assert resp.status_code == 400

    async def test_malformed_json(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/webhook/whatsapp", content=b"{not json",
                                 headers={"Content-Type": "application/json"})
        assert resp.status_code == 400

    async def test_no_documents(self, client: AsyncClient, sender: FakeSender) -> None:
        body = (await client.post("/v1/webhook/whatsapp", json=webhook_body())).json()
        assert body["success"] is True
        assert body["outcome"] == "no_documents"
        assert body["delivered"] is False
        assert sender.sent == []

    async def test_delivered_then_duplicate(
        self, client: AsyncClient, services: Services, sender: FakeSender, chat_client: FakeChatClient,
        credentials: Credentials,
    ) -> None:
        await services.ingestion.ingest(FAQ, BUSINESS, credentials, name="faq.pdf")

        first = (await client.post("/v1/webhook/whatsapp", json=webhook_body())).json()
        assert first["outcome"] == "delivered"
        assert first["delivered"] is True
        assert first["response"] == "Our opening hours are 9 to 5."
        assert sender.sent == [(CUSTOMER, "Our opening hours are 9 to 5.", credentials)]

        second = (await client.post("/v1/webhook/whatsapp", json=webhook_body())).json()
        assert second == {"success": True, "message": "Message already processed", "duplicate": True}
        assert len(chat_client.completions.calls) == 1

    async def test_storage_failure_reported(self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
        async def broken_record_inbound(*args, **kwargs):
            raise OperationalError("INSERT inbound_messages", {}, Exception("database is locked"))

        monkeypatch.setattr(repository, "record_inbound", broken_record_inbound)
        resp = await client.post("/v1/webhook/whatsapp", json=webhook_body())
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is False
        assert body["outcome"] == "storage_failed"
        assert "database is locked" in body["error"]

    async def test_verify(self, client: AsyncClient, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(settings, "WHATSAPP_VERIFY_TOKEN", "s3cret")
        params = {"hub.mode": "subscribe", "hub.verify_token": "s3cret", "hub.challenge": "42"}
        resp = await client.get("/v1/webhook/whatsapp", params=params)
        assert resp.status_code == 200
        assert resp.text == "42"

        params["hub.verify_token"] = "wrong"
        assert (await client.get("/v1/webhook/whatsapp", params=params)).status_code == 403


# ── Web chat ────────────────────────────────────────────────────────────


class TestChat:
    async def test_chat_answers_and_records_turns(
        self, client: AsyncClient, services: Services, credentials: Credentials, chat_client: FakeChatClient,
    ) -> None:
        result = await services.ingestion.ingest(FAQ, BUSINESS, credentials, name="faq.pdf")
        resp = await client.post("/v1/chat", json={
            "session_id": "s1", "message": "What are the hours?", "document_ids": [str(result.document_id)],
        })
        assert resp.status_code == 200
        body = resp.json()
        assert body["reply"] == "Our opening hours are 9 to 5."
        assert body["model"] == "fake-llm"
        assert body["sources"][0]["document_id"] == str(result.document_id)
        assert "opening hours" in chat_client.completions.calls[0]["messages"][0]["content"]

        turns = (await client.get("/v1/chat/messages", params={"session_id": "s1"})).json()
        assert [(t["role"], t["content"]) for t in turns] == [
            ("user", "What are the hours?"),
            ("assistant", "Our opening hours are 9 to 5."),
        ]

    async def test_empty_message(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/chat", json={"session_id": "s1", "message": "  "})
        assert resp.status_code == 400

    async def test_llm_failure_maps_to_502(self, client: AsyncClient, chat_client: FakeChatClient) -> None:
        chat_client.completions.error = server_error()
        resp = await client.post("/v1/chat", json={"session_id": "s1", "message": "hi"})
        assert resp.status_code == 502
        assert (await client.get("/v1/chat/messages", params={"session_id": "s1"})).json() == []

    async def test_manual_message_save(self, client: AsyncClient) -> None:
        resp = await client.post("/v1/chat/messages", json={"session_id": "s2", "role": "user", "content": "hello"})
        assert resp.json() == {"success": True}
        turns = (await client.get("/v1/chat/messages", params={"session_id": "s2"})).json()
        assert [(t["role"], t["content"]) for t in turns] == [("user", "hello")]
        assert turns[0]["created_at"] is not None
