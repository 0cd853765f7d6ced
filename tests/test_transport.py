"""
Transport tests.

The openai client is a MagicMock; failures are real openai exceptions built on
httpx request/response objects. Time only passes through FakeClock.sleep().
"""

import random
import threading
from unittest.mock import MagicMock

import httpx
import openai
import pytest

from chatloom.errors import (
    DispatchCancelled,
    TransportFatal,
    TransportTransient,
)
from chatloom.transactions import Request, Response, StreamResponse
from chatloom.transport import Transport, classify
from fakes import FakeClock, api_chunk, api_completion

URL = "https://api.openai.com/v1/chat/completions"
HTTP_REQUEST = httpx.Request("POST", URL)


def status_error(cls, status, body=None):
    return cls(
        f"HTTP {status}",
        response=httpx.Response(status, request=HTTP_REQUEST),
        body=body,
    )


def make_request(stream=True) -> Request:
    return Request(
        model="gpt-4",
        messages=({"role": "user", "content": "Hi"},),
        stream=stream,
        max_tokens=64,
        input_count=1,
    )


def make_transport(client, clock=None, **kwargs) -> Transport:
    clock = clock or FakeClock()
    return Transport(
        client, clock=clock, sleep=clock.sleep, rng=random.Random(42), **kwargs
    )


# 1. Classification


@pytest.mark.parametrize(
    "error, expected",
    [
        (openai.APITimeoutError(request=HTTP_REQUEST), TransportTransient),
        (openai.APIConnectionError(request=HTTP_REQUEST), TransportTransient),
        (status_error(openai.InternalServerError, 503), TransportTransient),
        (status_error(openai.RateLimitError, 429), TransportTransient),
        (
            status_error(openai.RateLimitError, 429, {"code": "insufficient_quota"}),
            TransportFatal,
        ),
        (status_error(openai.AuthenticationError, 401), TransportFatal),
        (status_error(openai.PermissionDeniedError, 403), TransportFatal),
        (status_error(openai.BadRequestError, 400), TransportFatal),
        (status_error(openai.NotFoundError, 404), TransportFatal),
    ],
)
def test_classify(error, expected):
    assert type(classify(error)) is expected


def test_fatal_errors_carry_the_status():
    error = classify(status_error(openai.AuthenticationError, 401), attempts=1)
    assert error.status == 401
    assert "status: 401" in str(error)


# 2. Retry


def test_transient_failures_stop_at_the_ceiling():
    clock = FakeClock()
    client = MagicMock()
    client.chat.completions.create.side_effect = status_error(
        openai.InternalServerError, 500
    )
    transport = make_transport(client, clock)

    with pytest.raises(TransportTransient) as exc:
        transport.dispatch(make_request(stream=False))

    assert 60 - 1e-6 <= clock.now <= 65
    assert exc.value.attempts == client.chat.completions.create.call_count
    assert exc.value.attempts > 1
    assert exc.value.elapsed >= 60 - 1e-6


def test_slow_attempts_are_bounded_by_the_ceiling():
    """A hanging endpoint times out at the remaining budget, not the SDK default."""
    clock = FakeClock()
    client = MagicMock()

    def hanging_create(**kwargs):
        clock.now += kwargs["timeout"]
        raise openai.APITimeoutError(request=HTTP_REQUEST)

    client.chat.completions.create.side_effect = hanging_create
    transport = make_transport(client, clock)

    with pytest.raises(TransportTransient):
        transport.dispatch(make_request(stream=False))

    assert 60 - 1e-6 <= clock.now <= 65
    first_call = client.chat.completions.create.call_args_list[0]
    assert first_call.kwargs["timeout"] == pytest.approx(60)


def test_backoff_wakes_on_cancel():
    client = MagicMock()
    client.chat.completions.create.side_effect = openai.APIConnectionError(
        request=HTTP_REQUEST
    )
    cancel = MagicMock(spec=threading.Event)
    # Clear for the first attempt, set by the time the backoff wait returns
    cancel.is_set.side_effect = [False, True]
    transport = Transport(client, clock=FakeClock(), rng=random.Random(42))

    with pytest.raises(DispatchCancelled):
        transport.dispatch(make_request(stream=False), cancel)

    cancel.wait.assert_called_once()
    assert 0.25 <= cancel.wait.call_args.args[0] <= 0.75
    assert client.chat.completions.create.call_count == 1


def test_fatal_errors_are_not_retried():
    clock = FakeClock()
    client = MagicMock()
    client.chat.completions.create.side_effect = status_error(
        openai.AuthenticationError, 401
    )
    with pytest.raises(TransportFatal):
        make_transport(client, clock).dispatch(make_request())
    assert client.chat.completions.create.call_count == 1
    assert clock.sleeps == []


def test_backoff_grows_by_the_multiplier():
    clock = FakeClock()
    client = MagicMock()
    timeout = openai.APITimeoutError(request=HTTP_REQUEST)
    client.chat.completions.create.side_effect = [timeout, timeout, timeout, api_completion()]
    transport = make_transport(client, clock, randomization=0.0)

    result = transport.dispatch(make_request(stream=False))

    assert isinstance(result, Response)
    assert clock.sleeps == pytest.approx([0.5, 0.75, 1.125])


def test_jitter_stays_within_half_the_interval():
    transport = make_transport(MagicMock())
    for attempt in range(1, 10):
        base = 0.5 * 1.5 ** (attempt - 1)
        assert 0.5 * base <= transport._interval(attempt) <= 1.5 * base


def test_attempts_are_reported():
    client = MagicMock()
    timeout = openai.APITimeoutError(request=HTTP_REQUEST)
    client.chat.completions.create.side_effect = [timeout, api_completion()]
    seen = []
    transport = make_transport(client, on_attempt=lambda n, e: seen.append((n, e)))

    transport.dispatch(make_request(stream=False))

    assert seen == [(1, timeout), (2, None)]


def test_canceled_dispatch_never_sends():
    client = MagicMock()
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DispatchCancelled):
        make_transport(client).dispatch(make_request(), cancel)
    client.chat.completions.create.assert_not_called()


# 3. Paths


def test_one_shot_returns_a_single_response():
    client = MagicMock()
    client.chat.completions.create.return_value = api_completion("Hello!")

    result = make_transport(client).dispatch(make_request(stream=False))

    assert result.choices[0].content == "Hello!"
    assert result.choices[0].finish_reason == "stop"
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is False
    assert kwargs["max_tokens"] == 64


def test_stream_yields_fragments_in_order():
    client = MagicMock()
    usage_only = api_chunk()
    usage_only.choices = []
    client.chat.completions.create.return_value = iter(
        [
            api_chunk("Hel", role="assistant"),
            usage_only,
            api_chunk("lo"),
            api_chunk(finish="stop"),
        ]
    )

    fragments = list(make_transport(client).dispatch(make_request()))

    assert all(isinstance(f, StreamResponse) for f in fragments)
    assert [f.choices[0].content for f in fragments] == ["Hel", "lo", None]
    assert fragments[-1].choices[0].finish_reason == "stop"


def test_stream_stops_and_closes_on_cancel():
    client = MagicMock()
    stream = MagicMock()
    stream.__iter__.return_value = iter([api_chunk("a"), api_chunk("b"), api_chunk("c")])
    client.chat.completions.create.return_value = stream
    cancel = threading.Event()

    fragments = []
    for f in make_transport(client).dispatch(make_request(), cancel):
        fragments.append(f)
        cancel.set()

    assert len(fragments) == 1
    stream.close.assert_called_once()


def test_mid_stream_errors_are_classified_not_retried():
    client = MagicMock()

    def broken_stream():
        yield api_chunk("partial", role="assistant")
        raise openai.APIConnectionError(request=HTTP_REQUEST)

    client.chat.completions.create.return_value = broken_stream()

    fragments = []
    with pytest.raises(TransportTransient):
        for f in make_transport(client).dispatch(make_request()):
            fragments.append(f)

    assert len(fragments) == 1
    assert client.chat.completions.create.call_count == 1
