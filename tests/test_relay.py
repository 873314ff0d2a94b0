"""Tests for relay submission, polling and upscale requests."""
import httpx
import pytest
from structlog.testing import capture_logs

from mediagen.relay import (
    CHANGE_PATH,
    SUBMIT_PATH,
    decode_poll_response,
    is_terminal,
    poll_job,
    submit_job,
    submit_upscale,
)
from shared.credentials import RELAY_PROVIDER, IntegrationConfig
from shared.errors import (
    MissingJobIdError,
    ProtocolError,
    SubmissionError,
    TransportError,
)

from conftest import RELAY_TOKEN, assert_secret_masked

FETCH_PATH = "/mj/task/job-123/fetch"


class TestSubmitJob:

    async def test_submit_sends_prompt_and_auth_headers(self, remote, http_client, relay_credential):
        remote.add_json("POST", SUBMIT_PATH, {"code": 22, "description": "In queue", "result": "job-123"})

        job = await submit_job("a red fox in snow --ar 3:2", relay_credential, client=http_client)

        assert job.job_id == "job-123"
        assert job.status == "queued"
        assert job.code == 22
        assert job.description == "In queue"
        assert job.provider_id == RELAY_PROVIDER

        request = remote.calls_to(SUBMIT_PATH)[0]
        assert str(request.url) == "https://relay.test/mj/submit/imagine"
        assert request.headers["authorization"] == f"Bearer {RELAY_TOKEN}"
        assert request.headers["mj-api-secret"] == RELAY_TOKEN
        assert remote.body(request) == {"prompt": "a red fox in snow --ar 3:2"}

    @pytest.mark.parametrize("code,status", [
        (1, "submitted"),
        (21, "exists"),
        (22, "queued"),
        (23, "queue_full"),
        (24, "banned_prompt"),
        (99, "queued"),
        (None, "queued"),
    ])
    async def test_status_mapping(self, remote, http_client, relay_credential, code, status):
        remote.add_json("POST", SUBMIT_PATH, {"code": code, "result": "job-123"})

        job = await submit_job("fox", relay_credential, client=http_client)

        assert job.status == status

    async def test_numeric_job_id_is_stringified(self, remote, http_client, relay_credential):
        remote.add_json("POST", SUBMIT_PATH, {"code": 1, "result": 1712345})

        job = await submit_job("fox", relay_credential, client=http_client)

        assert job.job_id == "1712345"

    @pytest.mark.parametrize("payload", [
        {"code": 1, "description": "ok"},
        {"code": 1, "result": ""},
        {"code": 1, "result": None},
    ])
    async def test_missing_job_id(self, remote, http_client, relay_credential, payload):
        remote.add_json("POST", SUBMIT_PATH, payload)

        with pytest.raises(MissingJobIdError) as exc_info:
            await submit_job("fox", relay_credential, client=http_client)

        assert isinstance(exc_info.value, ProtocolError)
        assert exc_info.value.payload == payload

    async def test_non_2xx_is_submission_error(self, remote, http_client, relay_credential):
        remote.add("POST", SUBMIT_PATH, lambda request: httpx.Response(500, text="relay exploded"))

        with pytest.raises(SubmissionError) as exc_info:
            await submit_job("fox", relay_credential, client=http_client)

        error = exc_info.value
        assert error.status_code == 500
        assert error.body == "relay exploded"
        assert RELAY_TOKEN not in str(error)
        assert relay_credential.masked_token in str(error)

    async def test_timeout_is_transport_error(self, remote, http_client, relay_credential):
        def timeout(request):
            raise httpx.ReadTimeout("timed out", request=request)

        remote.add("POST", SUBMIT_PATH, timeout)

        with pytest.raises(TransportError) as exc_info:
            await submit_job("fox", relay_credential, client=http_client, timeout=0.5)

        assert not isinstance(exc_info.value, SubmissionError)
        assert RELAY_TOKEN not in str(exc_info.value)

    async def test_non_json_body_is_protocol_error(self, remote, http_client, relay_credential):
        remote.add("POST", SUBMIT_PATH, lambda request: httpx.Response(200, text="<html>ok</html>"))

        with pytest.raises(ProtocolError):
            await submit_job("fox", relay_credential, client=http_client)

    async def test_json_array_is_protocol_error(self, remote, http_client, relay_credential):
        remote.add_json("POST", SUBMIT_PATH, ["job-123"])

        with pytest.raises(ProtocolError):
            await submit_job("fox", relay_credential, client=http_client)

    async def test_trailing_slash_in_base_url(self, remote, http_client):
        credential = IntegrationConfig(
            provider_id=RELAY_PROVIDER,
            base_url="https://relay.test/",
            auth_token=RELAY_TOKEN,
        )
        remote.add_json("POST", SUBMIT_PATH, {"code": 1, "result": "job-123"})

        await submit_job("fox", credential, client=http_client)

        assert str(remote.requests[0].url) == "https://relay.test/mj/submit/imagine"

    async def test_injected_client_stays_open(self, remote, http_client, relay_credential):
        remote.add_json("POST", SUBMIT_PATH, {"code": 1, "result": "job-123"})

        await submit_job("fox", relay_credential, client=http_client)

        assert not http_client.is_closed


class TestPollJob:

    async def test_poll_normalizes_artifacts(self, remote, http_client, relay_credential):
        remote.add_json("GET", FETCH_PATH, {
            "status": "completed",
            "progress": "100%",
            "artifacts": [
                {"url": "https://x/1.png", "width": 1024, "height": 1024, "mime_type": "image/png"},
                {"url": 42},
                {"filename": "no-url.png"},
                "https://x/not-a-dict.png",
                {"url": "https://x/2.png"},
            ],
        })

        result = await poll_job("job-123", relay_credential, client=http_client)

        assert result.status == "completed"
        assert result.progress == 100.0
        assert [a.url for a in result.artifacts] == ["https://x/1.png", "https://x/2.png"]
        assert result.artifacts[0].width == 1024
        assert result.artifacts[0].mime_type == "image/png"
        assert all(a.job_id == "job-123" for a in result.artifacts)

        request = remote.requests[0]
        assert request.method == "GET"
        assert request.headers["mj-api-secret"] == RELAY_TOKEN

    async def test_poll_legacy_image_url(self, remote, http_client, relay_credential):
        remote.add_json("GET", FETCH_PATH, {"status": "completed", "imageUrl": "https://x/grid.png"})

        result = await poll_job("job-123", relay_credential, client=http_client)

        assert [a.url for a in result.artifacts] == ["https://x/grid.png"]
        assert result.artifacts[0].source == "imageUrl"

    async def test_poll_in_progress(self, remote, http_client, relay_credential):
        remote.add_json("GET", FETCH_PATH, {"status": "in_progress", "progress": 40})

        result = await poll_job("job-123", relay_credential, client=http_client)

        assert result.status == "in_progress"
        assert result.progress == 40.0
        assert result.artifacts == []
        assert result.error is None

    async def test_poll_failure_reason(self, remote, http_client, relay_credential):
        remote.add_json("GET", FETCH_PATH, {"status": "failed", "failReason": "moderation"})

        result = await poll_job("job-123", relay_credential, client=http_client)

        assert result.status == "failed"
        assert result.error == "moderation"

    async def test_poll_http_error(self, remote, http_client, relay_credential):
        remote.add("GET", FETCH_PATH, lambda request: httpx.Response(503, text="busy"))

        with pytest.raises(TransportError) as exc_info:
            await poll_job("job-123", relay_credential, client=http_client)

        assert exc_info.value.status_code == 503
        assert not isinstance(exc_info.value, SubmissionError)

    async def test_poll_requires_job_id(self, relay_credential, http_client):
        with pytest.raises(ValueError):
            await poll_job("", relay_credential, client=http_client)

    def test_missing_status_is_unknown(self):
        assert decode_poll_response({}, "job-123").status == "unknown"

    @pytest.mark.parametrize("status,terminal", [
        ("completed", True),
        ("SUCCESS", True),
        ("failed", True),
        ("in_progress", False),
        ("queued", False),
    ])
    def test_is_terminal(self, status, terminal):
        assert is_terminal(status) is terminal


class TestSubmitUpscale:

    async def test_upscale_request(self, remote, http_client, relay_credential):
        remote.add_json("POST", CHANGE_PATH, {"code": 1, "result": "job-up-1"})

        job = await submit_upscale("job-123", 2, relay_credential, client=http_client)

        assert job.job_id == "job-up-1"
        assert job.status == "submitted"
        assert remote.body(remote.requests[0]) == {"taskId": "job-123", "action": "UPSCALE", "index": 2}

    @pytest.mark.parametrize("index", [0, 5])
    async def test_upscale_index_range(self, remote, http_client, relay_credential, index):
        with pytest.raises(ValueError):
            await submit_upscale("job-123", index, relay_credential, client=http_client)

        assert remote.requests == []


class TestTokenInLogs:
    """Log lines carry the masked token only."""

    async def test_submit_success(self, remote, http_client, relay_credential):
        remote.add_json("POST", SUBMIT_PATH, {"code": 1, "result": "job-123"})

        with capture_logs() as logs:
            await submit_job("fox", relay_credential, client=http_client)

        assert_secret_masked(logs, RELAY_TOKEN)
        submitting = next(entry for entry in logs if entry["event"] == "relay_job_submitting")
        assert submitting["token"] == relay_credential.masked_token

    async def test_submit_http_error(self, remote, http_client, relay_credential):
        remote.add("POST", SUBMIT_PATH, lambda request: httpx.Response(401, text="bad token"))

        with capture_logs() as logs:
            with pytest.raises(SubmissionError):
                await submit_job("fox", relay_credential, client=http_client)

        assert_secret_masked(logs, RELAY_TOKEN)
        assert any(entry["log_level"] == "error" for entry in logs)

    async def test_submit_timeout(self, remote, http_client, relay_credential):
        def timeout(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        remote.add("POST", SUBMIT_PATH, timeout)

        with capture_logs() as logs:
            with pytest.raises(TransportError):
                await submit_job("fox", relay_credential, client=http_client)

        assert_secret_masked(logs, RELAY_TOKEN)

    async def test_poll_success(self, remote, http_client, relay_credential):
        remote.add_json("GET", FETCH_PATH, {"status": "completed", "imageUrl": "https://cdn.test/1.png"})

        with capture_logs() as logs:
            await poll_job("job-123", relay_credential, client=http_client)

        assert_secret_masked(logs, RELAY_TOKEN, expect_masked=False)
        assert any(entry["event"] == "relay_job_polled" for entry in logs)

    async def test_poll_http_error(self, remote, http_client, relay_credential):
        remote.add("GET", FETCH_PATH, lambda request: httpx.Response(502, text="upstream down"))

        with capture_logs() as logs:
            with pytest.raises(TransportError):
                await poll_job("job-123", relay_credential, client=http_client)

        assert_secret_masked(logs, RELAY_TOKEN)
