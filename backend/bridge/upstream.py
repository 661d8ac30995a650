"""Upstream stream adapter: one bidirectional event channel per bridged session.

A handle owns three tasks: a writer draining the outbound replay window into
the connection, a reader decoding upstream payloads into a bounded queue, and
a consumer delivering those events in order to the session's ``on_event``
callback. Transport failures surface once through ``on_error``; the adapter
never retries.
"""
from __future__ import annotations
import asyncio
import logging
from collections import deque
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, List, Optional, Protocol

from .codec import Event, decode_event, encode_event
from .config import BridgeSettings
from .errors import ProtocolDecodeError, UpstreamUnavailable, log_event

logger = logging.getLogger(__name__)

try:  # pragma: no cover - optional dependency environment
    from aws_sdk_bedrock_runtime.client import (  # type: ignore
        BedrockRuntimeClient,
        InvokeModelWithBidirectionalStreamOperationInput,
    )
    from aws_sdk_bedrock_runtime.config import Config as BedrockConfig  # type: ignore
    from aws_sdk_bedrock_runtime.models import (  # type: ignore
        BidirectionalInputPayloadPart,
        InvokeModelWithBidirectionalStreamInputChunk,
    )
    from smithy_aws_core.identity import EnvironmentCredentialsResolver  # type: ignore
except Exception as e:  # Do not raise; BedrockConnector reports UpstreamUnavailable instead
    BedrockRuntimeClient = None  # type: ignore
    logger.warning(f"Bedrock runtime SDK unavailable: {e}")


class UpstreamConnection(Protocol):
    async def send(self, payload: str) -> None: ...

    async def receive(self) -> Optional[str]:
        """Next raw payload, or None once upstream has finished its output."""
        ...

    async def close_input(self) -> None: ...

    async def close(self) -> None: ...


class UpstreamConnector(Protocol):
    async def connect(self, model_id: str, region: str) -> UpstreamConnection: ...


class BedrockConnection:
    """Bedrock Runtime bidirectional stream carrying one JSON event per chunk."""

    def __init__(self, stream: Any):
        self._stream = stream
        self._output: Any = None

    async def send(self, payload: str) -> None:
        chunk = InvokeModelWithBidirectionalStreamInputChunk(
            value=BidirectionalInputPayloadPart(bytes_=payload.encode("utf-8"))
        )
        await self._stream.input_stream.send(chunk)

    async def receive(self) -> Optional[str]:
        if self._output is None:
            _, self._output = await self._stream.await_output()
        while True:
            result = await self._output.receive()
            if result is None:
                return None
            value = getattr(result, "value", None)
            if value is not None and value.bytes_:
                return value.bytes_.decode("utf-8")

    async def close_input(self) -> None:
        await self._stream.input_stream.close()

    async def close(self) -> None:
        await self._stream.close()


class BedrockConnector:
    def __init__(self, credentials_resolver: Any = None):
        self._credentials_resolver = credentials_resolver

    def _client(self, region: str) -> Any:
        resolver = self._credentials_resolver or EnvironmentCredentialsResolver()
        config = BedrockConfig(
            endpoint_uri=f"https://bedrock-runtime.{region}.amazonaws.com",
            region=region,
            aws_credentials_identity_resolver=resolver,
        )
        return BedrockRuntimeClient(config=config)

    async def connect(self, model_id: str, region: str) -> BedrockConnection:
        if BedrockRuntimeClient is None:
            raise UpstreamUnavailable("aws_sdk_bedrock_runtime is not installed")
        client = self._client(region)
        stream = await client.invoke_model_with_bidirectional_stream(
            InvokeModelWithBidirectionalStreamOperationInput(model_id=model_id)
        )
        return BedrockConnection(stream)


class HandleState(str, Enum):
    OPEN = "OPEN"
    COMPLETED = "COMPLETED"
    ERRORED = "ERRORED"


_END_OF_STREAM = object()

EventCallback = Callable[[Event], Awaitable[None]]
ErrorCallback = Callable[[BaseException], None]
CompleteCallback = Callable[[], None]


class UpstreamHandle:
    def __init__(
        self,
        session_id: str,
        connection: UpstreamConnection,
        *,
        on_event: EventCallback,
        on_error: ErrorCallback,
        on_complete: CompleteCallback,
        replay_window: int = 1000,
        inbound_queue_size: int = 256,
        drain_timeout_s: float = 5.0,
    ):
        self.session_id = session_id
        self.state = HandleState.OPEN
        self.dropped_events = 0
        self.sent_events = 0
        self.received_events = 0
        self._connection = connection
        self._on_event = on_event
        self._on_error = on_error
        self._on_complete = on_complete
        self._drain_timeout_s = drain_timeout_s
        self._outbound: Deque[str] = deque(maxlen=replay_window)
        self._outbound_ready = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()
        self._inbound: asyncio.Queue = asyncio.Queue(maxsize=inbound_queue_size)
        self._closing = False
        self._released = False
        self._tasks: List[asyncio.Task] = []

    @property
    def active(self) -> bool:
        """True while sends are still accepted."""
        return self.state is HandleState.OPEN and not self._closing

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(self._write_loop(), name=f"upstream-writer-{self.session_id}"),
            asyncio.create_task(self._read_loop(), name=f"upstream-reader-{self.session_id}"),
            asyncio.create_task(self._consume_loop(), name=f"upstream-consumer-{self.session_id}"),
        ]

    def send(self, event: Event) -> None:
        """Queue an event; a no-op once the handle is completing or dead."""
        if not self.active:
            logger.debug(f"Session {self.session_id} - dropping {event.name} on {self.state.value} handle")
            return
        if len(self._outbound) == self._outbound.maxlen:
            self.dropped_events += 1
            logger.warning(f"Session {self.session_id} - replay window full, dropping oldest queued event")
        self._outbound.append(encode_event(event))
        self._idle.clear()
        self._outbound_ready.set()

    async def drain(self) -> None:
        await self._idle.wait()

    async def complete(self) -> None:
        """Flush what is queued, then close the upstream input side."""
        if not self.active:
            return
        self._closing = True
        try:
            await asyncio.wait_for(self.drain(), timeout=self._drain_timeout_s)
        except asyncio.TimeoutError:
            logger.warning(f"Session {self.session_id} - drain timed out with {len(self._outbound)} events queued")
        if self.state is not HandleState.OPEN:
            return
        self.state = HandleState.COMPLETED
        try:
            await self._connection.close_input()
        except Exception as e:
            logger.warning(f"Session {self.session_id} - error closing upstream input: {e}")

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._closing = True
        if self.state is HandleState.OPEN:
            self.state = HandleState.COMPLETED
        current = asyncio.current_task()
        others = [t for t in self._tasks if t is not current]
        for task in others:
            task.cancel()
        await asyncio.gather(*others, return_exceptions=True)
        self._outbound.clear()
        try:
            await self._connection.close()
        except Exception as e:
            logger.warning(f"Session {self.session_id} - error closing upstream connection: {e}")
        log_event(
            "upstream_released",
            session_id=self.session_id,
            state=self.state.value,
            sent=self.sent_events,
            received=self.received_events,
            dropped=self.dropped_events,
        )

    def _fail(self, exc: BaseException) -> None:
        if self.state is not HandleState.OPEN:
            return
        self.state = HandleState.ERRORED
        self._outbound.clear()
        self._idle.set()
        log_event("upstream_error", session_id=self.session_id, error=str(exc) or type(exc).__name__)
        self._on_error(exc)

    async def _write_loop(self) -> None:
        try:
            while True:
                await self._outbound_ready.wait()
                while self._outbound:
                    payload = self._outbound.popleft()
                    await self._connection.send(payload)
                    self.sent_events += 1
                self._outbound_ready.clear()
                self._idle.set()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(e)

    async def _read_loop(self) -> None:
        try:
            while True:
                payload = await self._connection.receive()
                if payload is None:
                    break
                try:
                    event = decode_event(payload)
                except ProtocolDecodeError as e:
                    log_event("upstream_decode_error", session_id=self.session_id, error=str(e))
                    continue
                self.received_events += 1
                await self._inbound.put(event)
            await self._inbound.put(_END_OF_STREAM)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._fail(e)

    async def _consume_loop(self) -> None:
        while True:
            item = await self._inbound.get()
            if item is _END_OF_STREAM:
                if self.state is HandleState.OPEN and not self._closing:
                    self.state = HandleState.COMPLETED
                    log_event("upstream_complete", session_id=self.session_id)
                    self._on_complete()
                return
            try:
                await self._on_event(item)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Session {self.session_id} - error handling {item.name}: {e}")


async def open_stream(
    connector: UpstreamConnector,
    session_id: str,
    settings: BridgeSettings,
    *,
    on_event: EventCallback,
    on_error: ErrorCallback,
    on_complete: CompleteCallback,
) -> UpstreamHandle:
    """Connect upstream and start a handle bound to one session."""
    try:
        connection = await asyncio.wait_for(
            connector.connect(settings.bridge_model_id, settings.bridge_region),
            timeout=settings.bridge_connect_timeout_s,
        )
    except UpstreamUnavailable:
        raise
    except asyncio.TimeoutError as e:
        raise UpstreamUnavailable(f"timed out after {settings.bridge_connect_timeout_s}s connecting upstream") from e
    except Exception as e:
        raise UpstreamUnavailable(f"cannot reach upstream: {e}") from e
    handle = UpstreamHandle(
        session_id,
        connection,
        on_event=on_event,
        on_error=on_error,
        on_complete=on_complete,
        replay_window=settings.bridge_replay_window,
        inbound_queue_size=settings.bridge_inbound_queue_size,
        drain_timeout_s=settings.bridge_drain_timeout_s,
    )
    handle.start()
    log_event("upstream_open", session_id=session_id, model_id=settings.bridge_model_id, region=settings.bridge_region)
    return handle
