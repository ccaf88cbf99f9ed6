"""Speech-to-text client for an OpenAI-compatible transcription endpoint."""

import httpx

from .errors import ProviderError


class SttClient:
    """Transcribes voice messages (OGG/Opus) through /audio/transcriptions."""

    def __init__(self, api_key: str, api_base: str, model: str,
                 client: httpx.AsyncClient | None = None) -> None:
        self.api_key = api_key
        self.api_base = api_base
        self.model = model
        self._client = client

    async def transcribe(self, audio_data: bytes, filename: str = "voice.ogg") -> str:
        """Return the transcript of the audio, stripped of surrounding whitespace."""
        url = f"{self.api_base}/audio/transcriptions"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        data = {"model": self.model, "response_format": "text"}
        files = {"file": (filename, bytes(audio_data), "audio/ogg")}

        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, data=data, files=files)
            else:
                async with httpx.AsyncClient(timeout=None) as client:
                    response = await client.post(url, headers=headers, data=data, files=files)
        except httpx.HTTPError as exc:
            raise ProviderError(f"STT request failed: {exc}") from exc

        if not response.is_success:
            raise ProviderError(
                f"STT failed ({response.status_code} {response.reason_phrase}): {response.text}"
            )
        return response.text.strip()