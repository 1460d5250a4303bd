"""Tests for transcript ingestion and formatting."""

import pytest

from tests.conftest import SEGMENTS
from tubelens.errors import TranscriptNotFoundError, ValidationError
from tubelens.models import Transcript
from tubelens.services.transcripts import format_timestamp, format_transcript_for_llm


class TestFormatting:
    @pytest.mark.parametrize("seconds,expected", [
        (0, "0:00"),
        (4.9, "0:04"),
        (65.5, "1:05"),
        (3599, "59:59"),
        (3725, "1:02:05"),
    ])
    def test_format_timestamp(self, seconds, expected):
        assert format_timestamp(seconds) == expected

    def test_format_transcript(self):
        assert format_transcript_for_llm(SEGMENTS) == (
            "[0:00] Welcome back to the channel.\n"
            "[0:04] Today we talk about event logs.\n"
            "[1:02:05] Thanks for watching."
        )


@pytest.mark.asyncio
class TestTranscriptStore:
    async def test_get_formats_for_the_llm(self, services):
        await services.transcripts.insert("abc123", "Event logs", SEGMENTS, channel_name="Systems Weekly")
        data = await services.transcripts.get("abc123")
        assert data.title == "Event logs"
        assert data.channel_name == "Systems Weekly"
        assert data.transcript.startswith("[0:00] Welcome back")

    async def test_missing_transcript(self, services):
        with pytest.raises(TranscriptNotFoundError):
            await services.transcripts.get("nothere")

    async def test_malformed_segments(self, services, session_factory):
        async with session_factory() as session:
            session.add(Transcript(video_id="broken", title="t", channel_name="", segments=[{"text": "no start"}]))
            await session.commit()
        with pytest.raises(ValidationError):
            await services.transcripts.get("broken")


@pytest.mark.asyncio
class TestTranscriptsAPI:
    async def test_create_and_read_back(self, client):
        payload = {
            "videoId": "abc123",
            "title": "Event logs explained",
            "channelName": "Systems Weekly",
            "segments": SEGMENTS,
        }
        resp = await client.post("/api/transcripts", json=payload)
        assert resp.status_code == 201
        body = resp.json()
        assert body["videoId"] == "abc123"
        assert body["createdAt"] is not None

        fetched = await client.get("/api/transcripts/abc123")
        assert fetched.status_code == 200
        assert fetched.json()["segments"] == SEGMENTS
        assert fetched.json()["channelName"] == "Systems Weekly"

    async def test_duplicate_is_a_conflict(self, client):
        payload = {"videoId": "abc123", "title": "t", "segments": SEGMENTS}
        assert (await client.post("/api/transcripts", json=payload)).status_code == 201
        resp = await client.post("/api/transcripts", json=payload)
        assert resp.status_code == 409
        assert resp.json()["code"] == "conflict"

    async def test_unknown_transcript(self, client):
        resp = await client.get("/api/transcripts/nothere")
        assert resp.status_code == 404
        assert resp.json()["code"] == "transcript_not_found"

    @pytest.mark.parametrize("payload", [
        {"videoId": "abc123", "title": "t", "segments": []},
        {"videoId": "bad id", "title": "t", "segments": SEGMENTS},
        {"videoId": "abc123", "title": "", "segments": SEGMENTS},
        {"videoId": "abc123", "title": "t", "segments": [{"start": -1, "end": 1, "text": "x"}]},
    ])
    async def test_invalid_payloads(self, client, payload):
        resp = await client.post("/api/transcripts", json=payload)
        assert resp.status_code == 422
