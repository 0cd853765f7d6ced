"""Dispatches requests against the chat completions API with bounded exponential backoff."""

import logging
import random
import threading
import time
from typing import Callable, Iterator

import openai
from openai import OpenAI

from chatloom.errors import (
    DispatchCancelled,
    TransportError,
    TransportFatal,
    TransportTransient,
)
from chatloom.transactions import Request, Response, StreamResponse

# Backoff defaults, seconds
INITIAL_INTERVAL = 0.5
MULTIPLIER = 1.5
RANDOMIZATION = 0.5
MAX_ELAPSED = 60.0
MIN_ATTEMPT_TIMEOUT = 0.001


def classify(error: Exception, attempts: int = 1, elapsed: float = 0.0) -> TransportError:
    """Maps an openai exception onto TransportTransient or TransportFatal."""
    status = getattr(error, "status_code", None)
    message = str(error) or type(error).__name__
    if isinstance(error, openai.RateLimitError):
        # A 429 is either a rate limit (wait it out) or an exhausted quota (reconfigure)
        if getattr(error, "code", None) == "insufficient_quota":
            return TransportFatal(message, status, attempts, elapsed)
        return TransportTransient(message, status, attempts, elapsed)
    if isinstance(error, (openai.APITimeoutError, openai.APIConnectionError)):
        return TransportTransient(message, status, attempts, elapsed)
    if isinstance(error, openai.APIStatusError):
        if status is not None and (status >= 500 or status in (408, 409)):
            return TransportTransient(message, status, attempts, elapsed)
        return TransportFatal(message, status, attempts, elapsed)
    return TransportFatal(message, status, attempts, elapsed)


class Transport:
    """
    Stateless between calls. Each dispatch opens a fresh request.

    - Streaming requests return an iterator of StreamResponse fragments
    - One-shot requests return a single Response
    - Transient failures retry until max_elapsed seconds have passed
    """

    def __init__(
        self,
        client: OpenAI,
        max_elapsed: float = MAX_ELAPSED,
        initial_interval: float = INITIAL_INTERVAL,
        multiplier: float = MULTIPLIER,
        randomization: float = RANDOMIZATION,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
        rng: random.Random | None = None,
        on_attempt: Callable[[int, Exception | None], None] | None = None,
    ):
        self.client = client
        self.max_elapsed = max_elapsed
        self.initial_interval = initial_interval
        self.multiplier = multiplier
        self.randomization = randomization
        self.clock = clock
        self.sleep = sleep
        self.rng = rng or random.Random()
        self.on_attempt = on_attempt

    def dispatch(
        self, request: Request, cancel: threading.Event | None = None
    ) -> Response | Iterator[StreamResponse]:
        """Sends the request down the path selected by its stream flag."""
        if request.stream:
            stream = self._with_retry(request, cancel)
            return self._iter_stream(stream, cancel)
        completion = self._with_retry(request, cancel)
        return Response.from_completion(completion)

    # <~~RETRY~~>
    def _with_retry(self, request: Request, cancel: threading.Event | None):
        start = self.clock()
        attempt = 0
        while True:
            if cancel is not None and cancel.is_set():
                raise DispatchCancelled("Dispatch canceled before the request was sent.")
            attempt += 1
            # Each attempt may only spend what is left of the ceiling
            budget = max(self.max_elapsed - (self.clock() - start), MIN_ATTEMPT_TIMEOUT)
            try:
                result = self.client.chat.completions.create(
                    **request.api_kwargs(), timeout=budget
                )
            except openai.OpenAIError as e:
                elapsed = self.clock() - start
                error = classify(e, attempt, elapsed)
                self._observe(attempt, e)
                if isinstance(error, TransportFatal):
                    logging.error(f"Dispatch failed, not retrying: {error}")
                    raise error from e
                remaining = self.max_elapsed - elapsed
                if remaining <= 0:
                    logging.error(f"Dispatch retries exhausted: {error}")
                    raise error from e
                delay = min(self._interval(attempt), remaining)
                logging.warning(
                    f"Transient dispatch failure (attempt {attempt}), retrying in {delay:.2f}s: {e}"
                )
                self._pause(delay, cancel)
                continue
            self._observe(attempt, None)
            return result

    def _pause(self, delay: float, cancel: threading.Event | None):
        """Backoff wait. Without an injected sleep, a cancel token cuts it short."""
        if self.sleep is not None:
            self.sleep(delay)
        elif cancel is not None:
            cancel.wait(delay)
        else:
            time.sleep(delay)

    def _interval(self, attempt: int) -> float:
        """Randomized exponential interval for the given attempt number"""
        base = self.initial_interval * self.multiplier ** (attempt - 1)
        spread = base * self.randomization
        return max(0.0, self.rng.uniform(base - spread, base + spread))

    def _observe(self, attempt: int, error: Exception | None):
        if self.on_attempt:
            self.on_attempt(attempt, error)

    # <~~STREAMING~~>
    def _iter_stream(self, stream, cancel: threading.Event | None) -> Iterator[StreamResponse]:
        """Yields fragments in arrival order until the stream ends or is canceled."""
        try:
            for chunk in stream:
                if cancel is not None and cancel.is_set():
                    logging.warning("Stream canceled by the caller.")
                    return
                if not chunk.choices:
                    continue
                yield StreamResponse.from_chunk(chunk)
        except openai.OpenAIError as e:
            raise classify(e) from e
        finally:
            close = getattr(stream, "close", None)
            if close:
                close()
