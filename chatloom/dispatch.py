"""Background dispatch tasks and the messages they send back to the foreground."""

import logging
import queue
import threading
from dataclasses import dataclass

from chatloom.errors import ChatLoomError
from chatloom.transactions import Request, Response, Transaction
from chatloom.transport import Transport


@dataclass(frozen=True)
class EnterProcessing:
    pass


@dataclass(frozen=True)
class ProcessResponse:
    transaction: Transaction


@dataclass(frozen=True)
class DispatchFailed:
    error: Exception


@dataclass(frozen=True)
class ExitProcessing:
    pass


Message = EnterProcessing | ProcessResponse | DispatchFailed | ExitProcessing


def run_dispatch(
    transport: Transport,
    request: Request,
    outbox: queue.Queue,
    cancel: threading.Event,
):
    """
    Body of a dispatch task.\n
    Always brackets its output with EnterProcessing/ExitProcessing, whatever happens in between.
    """
    outbox.put(EnterProcessing())
    try:
        result = transport.dispatch(request, cancel)
        if isinstance(result, Response):
            outbox.put(ProcessResponse(result))
        else:
            for fragment in result:
                outbox.put(ProcessResponse(fragment))
    except Exception as e:
        if not isinstance(e, ChatLoomError):
            logging.exception("Unexpected dispatch failure")
        outbox.put(DispatchFailed(e))
    finally:
        outbox.put(ExitProcessing())


def spawn_dispatch(
    transport: Transport,
    request: Request,
    outbox: queue.Queue,
    cancel: threading.Event,
) -> threading.Thread:
    """Starts a daemon thread for one dispatch. Daemon threads are abandoned on exit."""
    worker = threading.Thread(
        target=run_dispatch,
        args=(transport, request, outbox, cancel),
        name="chatloom-dispatch",
        daemon=True,
    )
    worker.start()
    return worker
