"""
Tests for the Evolution API client.

Tests cover:
- Request shape and apikey header for sends
- Chat pagination and de-duplication
- Response unwrapping for message listings
- Retry with backoff on retryable statuses, no retry for sends
- Every httpx error surfaced as GatewayError
"""

import json

import httpx
import pytest

from chatsync.gateway import CHATS_PAGE_SIZE, EvolutionClient, GatewayError


class Recorder:
    def __init__(self, handler):
        self.handler = handler
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request, len(self.requests))


def make_client(handler, sleeps=None, max_retries=3):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    recorder = Recorder(handler)
    client = EvolutionClient(
        "http://gateway.test/",
        "secret-key",
        max_retries=max_retries,
        transport=httpx.MockTransport(recorder),
        sleep=fake_sleep,
    )
    return client, recorder


@pytest.mark.anyio
async def test_send_message_posts_text():
    client, recorder = make_client(lambda request, n: httpx.Response(201, json={"key": {"id": "GW-1"}}))

    response = await client.send_message("whatsapp_1_main", "+55 (11) 99999-0000", "hello")
    await client.close()

    assert response == {"key": {"id": "GW-1"}}
    request = recorder.requests[0]
    assert request.method == "POST"
    assert request.url.path == "/message/sendText/whatsapp_1_main"
    assert request.headers["apikey"] == "secret-key"
    assert json.loads(request.content) == {"number": "5511999990000", "text": "hello"}


@pytest.mark.anyio
async def test_send_message_is_not_retried():
    sleeps = []
    client, recorder = make_client(lambda request, n: httpx.Response(503), sleeps=sleeps)

    with pytest.raises(GatewayError):
        await client.send_message("inst", "5511999990000", "hello")
    await client.close()

    assert len(recorder.requests) == 1
    assert sleeps == []


@pytest.mark.anyio
async def test_list_recent_chats_paginates_and_dedups():
    def handler(request, n):
        offset = json.loads(request.content)["offset"]
        if offset == 0:
            chats = [{"remoteJid": f"55110000{i:05d}@s.whatsapp.net"} for i in range(CHATS_PAGE_SIZE)]
        else:
            chats = [
                {"remoteJid": "5511000000000@s.whatsapp.net"},
                {"remoteJid": "5599999999999@s.whatsapp.net"},
            ]
        return httpx.Response(200, json=chats)

    client, recorder = make_client(handler)
    chats = await client.list_recent_chats("inst")
    await client.close()

    assert len(recorder.requests) == 2
    assert len(chats) == CHATS_PAGE_SIZE + 1
    assert recorder.requests[0].url.path == "/chat/findChats/inst"


@pytest.mark.anyio
async def test_list_chat_messages_unwraps_records():
    records = [{"key": {"id": "A"}}, {"key": {"id": "B"}}, "junk"]

    def handler(request, n):
        body = json.loads(request.content)
        assert body == {"where": {"key": {"remoteJid": "5511@s.whatsapp.net"}}, "limit": 5}
        return httpx.Response(200, json={"messages": {"total": 2, "records": records}})

    client, _ = make_client(handler)
    messages = await client.list_chat_messages("inst", "5511@s.whatsapp.net", 5)
    await client.close()

    assert messages == [{"key": {"id": "A"}}, {"key": {"id": "B"}}]


@pytest.mark.anyio
async def test_listing_retries_with_backoff():
    sleeps = []

    def handler(request, n):
        if n < 3:
            return httpx.Response(503)
        return httpx.Response(200, json={"messages": []})

    client, recorder = make_client(handler, sleeps=sleeps)
    assert await client.list_chat_messages("inst", "5511@s.whatsapp.net", 5) == []
    await client.close()

    assert len(recorder.requests) == 3
    assert sleeps == [0.5, 1.0]


@pytest.mark.anyio
async def test_listing_gives_up_after_max_retries():
    sleeps = []
    client, recorder = make_client(lambda request, n: httpx.Response(502), sleeps=sleeps, max_retries=2)

    with pytest.raises(GatewayError):
        await client.list_recent_chats("inst")
    await client.close()

    assert len(recorder.requests) == 3
    assert len(sleeps) == 2


@pytest.mark.anyio
async def test_transport_error_is_retried():
    def handler(request, n):
        if n == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json=[])

    client, recorder = make_client(handler)
    assert await client.list_recent_chats("inst") == []
    await client.close()

    assert len(recorder.requests) == 2


@pytest.mark.anyio
async def test_client_error_is_not_retried():
    client, recorder = make_client(lambda request, n: httpx.Response(404, json={"error": "instance not found"}))

    with pytest.raises(GatewayError):
        await client.list_recent_chats("missing")
    await client.close()

    assert len(recorder.requests) == 1


@pytest.mark.anyio
async def test_undecodable_response_raises_gateway_error():
    def handler(request, n):
        raise httpx.DecodingError("bad gzip", request=request)

    client, recorder = make_client(handler)

    with pytest.raises(GatewayError):
        await client.send_message("inst", "5511999990000", "hello")
    await client.close()

    assert len(recorder.requests) == 1
