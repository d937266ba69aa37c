from __future__ import annotations

import base64
import io
import threading
import time
from typing import Callable, List
from urllib.parse import parse_qs

import httpx
import pytest
from PIL import Image

from backdrop import (
    CodecError,
    MatteServiceError,
    PipelineCancelledError,
    RawImage,
    RemoveBgClient,
    RetryPolicy,
    ThresholdMatteClient,
)


def _png_bytes(size: tuple[int, int] = (8, 8), color: tuple[int, ...] = (0, 0, 0, 0)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


MATTE_PNG = _png_bytes()


def ok_response() -> httpx.Response:
    return httpx.Response(200, json={"data": {"result_b64": base64.b64encode(MATTE_PNG).decode("ascii")}})


def rate_limited() -> httpx.Response:
    return httpx.Response(429, json={"errors": [{"title": "Rate limit exceeded"}]})


def build_client(
    responses: List[Callable[[], httpx.Response]],
    requests: List[httpx.Request],
    sleeps: List[float],
    api_key: str = "test-key",
) -> RemoveBgClient:
    pending = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return pending.pop(0)()

    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    policy = RetryPolicy(max_attempts=3, sleep=sleeps.append)
    return RemoveBgClient(api_key, retry_policy=policy, http_client=http_client)


def sample_image() -> RawImage:
    return RawImage(_png_bytes((4, 4), (255, 0, 0, 255)), "image/png", "photo.png")


def test_success_sends_base64_form_and_decodes_result() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    client = build_client([ok_response], requests, sleeps)
    image = sample_image()

    matte = client.remove_background(image)

    assert matte.data == MATTE_PNG
    assert matte.mime_type == "image/png"
    assert sleeps == []
    assert len(requests) == 1
    request = requests[0]
    assert request.headers["X-Api-Key"] == "test-key"
    form = parse_qs(request.content.decode("ascii"))
    assert base64.b64decode(form["image_file_b64"][0]) == image.data
    assert form["size"] == ["regular"]
    assert form["type"] == ["auto"]


def test_rate_limit_retries_with_exponential_backoff() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    client = build_client([rate_limited, rate_limited, ok_response], requests, sleeps)

    matte = client.remove_background(sample_image())

    assert matte.data == MATTE_PNG
    assert sleeps == [2.0, 4.0]
    assert len(requests) == 3


def test_rate_limit_exhausts_attempt_budget() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    client = build_client([rate_limited] * 3, requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "retries_exhausted"
    assert excinfo.value.upstream_status == 429
    assert sleeps == [2.0, 4.0]
    assert len(requests) == 3


def test_auth_failure_is_terminal_without_delay() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    forbidden = lambda: httpx.Response(403, json={"errors": [{"title": "API Key invalid"}]})  # noqa: E731
    client = build_client([forbidden, ok_response], requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "auth"
    assert excinfo.value.upstream_status == 403
    assert "API Key invalid" in excinfo.value.message
    assert sleeps == []
    assert len(requests) == 1


def test_server_error_uses_message_field() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    failing = lambda: httpx.Response(500, json={"message": "upstream exploded"})  # noqa: E731
    client = build_client([failing], requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "upstream_error"
    assert "upstream exploded" in excinfo.value.message
    assert sleeps == []


def test_empty_payload_counts_against_budget() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    empty = lambda: httpx.Response(200, json={"data": {"result_b64": ""}})  # noqa: E731
    client = build_client([empty, ok_response], requests, sleeps)

    matte = client.remove_background(sample_image())

    assert matte.data == MATTE_PNG
    assert sleeps == [2.0]
    assert len(requests) == 2


def test_empty_payload_every_time_exhausts_retries() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    missing = lambda: httpx.Response(200, json={"data": {}})  # noqa: E731
    client = build_client([missing] * 3, requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "retries_exhausted"
    assert len(requests) == 3


def test_malformed_body_is_terminal() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    garbled = lambda: httpx.Response(200, content=b"<html>oops</html>")  # noqa: E731
    client = build_client([garbled, ok_response], requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "malformed_response"
    assert len(requests) == 1


def test_invalid_base64_payload_is_terminal() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    bad = lambda: httpx.Response(200, json={"data": {"result_b64": "***"}})  # noqa: E731
    client = build_client([bad], requests, sleeps)

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "malformed_response"


def test_network_error_is_terminal() -> None:
    sleeps: List[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client = RemoveBgClient(
        "test-key",
        retry_policy=RetryPolicy(sleep=sleeps.append),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "network"
    assert sleeps == []


def test_missing_api_key_makes_no_request() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    client = build_client([ok_response], requests, sleeps, api_key="")

    with pytest.raises(MatteServiceError) as excinfo:
        client.remove_background(sample_image())

    assert excinfo.value.reason == "auth"
    assert requests == []


def test_cancel_during_backoff_stops_retries() -> None:
    requests: List[httpx.Request] = []
    cancel_event = threading.Event()

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return rate_limited()

    def sleep(delay: float) -> None:
        cancel_event.set()

    client = RemoveBgClient(
        "test-key",
        retry_policy=RetryPolicy(sleep=sleep),
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
    )

    with pytest.raises(PipelineCancelledError):
        client.remove_background(sample_image(), cancel_event=cancel_event)

    assert len(requests) == 1


def test_already_cancelled_run_makes_no_request() -> None:
    requests: List[httpx.Request] = []
    sleeps: List[float] = []
    client = build_client([ok_response], requests, sleeps)
    cancel_event = threading.Event()
    cancel_event.set()

    with pytest.raises(PipelineCancelledError):
        client.remove_background(sample_image(), cancel_event=cancel_event)

    assert requests == []


def test_retry_pause_returns_early_when_cancelled() -> None:
    cancel_event = threading.Event()
    cancel_event.set()

    started = time.monotonic()
    RetryPolicy().pause(30.0, cancel_event)

    assert time.monotonic() - started < 5.0


def test_retry_policy_requires_an_attempt() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)


def test_threshold_client_masks_bright_background() -> None:
    image = Image.new("RGB", (10, 10), (250, 250, 250))
    image.paste((20, 20, 20), (3, 3, 7, 7))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")

    matte = ThresholdMatteClient(threshold=200).remove_background(RawImage(buffer.getvalue(), "image/png"))

    with Image.open(io.BytesIO(matte.data)) as decoded:
        assert decoded.mode == "RGBA"
        assert decoded.getpixel((0, 0))[3] == 0
        assert decoded.getpixel((5, 5))[3] == 255


def test_threshold_client_reports_undecodable_input_as_codec_error() -> None:
    with pytest.raises(CodecError):
        ThresholdMatteClient().remove_background(RawImage(b"nope", "image/png"))
