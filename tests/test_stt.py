import httpx
import pytest

from chatmate.errors import ProviderError
from chatmate.stt import SttClient

API_BASE = "https://stt.example.com/openai/v1"


def make_client(handler, model="whisper-large-v3"):
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return SttClient("placeholder", API_BASE, model, client=http)


@pytest.mark.asyncio
async def test_transcribe_returns_stripped_text():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers["authorization"]
        seen["body"] = request.read()
        seen["type"] = request.headers["content-type"]
        return httpx.Response(200, text="  привет мир \n")

    client = make_client(handler)
    audio = b"OggS\x00fake-audio"
    text = await client.transcribe(audio, "voice.ogg")

    assert text == "привет мир"
    assert seen["url"] == API_BASE + "/audio/transcriptions"
    assert seen["auth"] == "Bearer placeholder"
    assert seen["type"].startswith("multipart/form-data")
    body = seen["body"]
    assert b'name="model"' in body
    assert b"whisper-large-v3" in body
    assert b'name="response_format"' in body
    assert b'filename="voice.ogg"' in body
    assert b"Content-Type: audio/ogg" in body
    assert audio in body


@pytest.mark.asyncio
async def test_transcribe_uses_given_filename_and_model():
    seen = {}

    def handler(request):
        seen["body"] = request.read()
        return httpx.Response(200, text="ok")

    client = make_client(handler, model="tiny-model")
    assert await client.transcribe(b"data", "note.ogg") == "ok"
    assert b'filename="note.ogg"' in seen["body"]
    assert b"tiny-model" in seen["body"]


@pytest.mark.asyncio
async def test_transcribe_error_status_raises():
    client = make_client(lambda request: httpx.Response(500, text="boom"))
    with pytest.raises(ProviderError) as info:
        await client.transcribe(b"data", "voice.ogg")
    message = str(info.value)
    assert "STT failed (500" in message
    assert "boom" in message


@pytest.mark.asyncio
async def test_transcribe_transport_error_raises():
    def handler(request):
        raise httpx.ConnectError("unreachable", request=request)

    client = make_client(handler)
    with pytest.raises(ProviderError) as info:
        await client.transcribe(b"data", "voice.ogg")
    assert "unreachable" in str(info.value)