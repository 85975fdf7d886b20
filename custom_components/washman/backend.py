"""
Backend session for the Washman integration.

Responsible for:
- Row reads (order, message history) and the message insert
- Realtime subscriptions: typed events queued per subscription and dispatched
  in arrival order by a single worker task
- Identity lookup for outgoing messages

SupabaseBackend is the only place that talks to the supabase client; the
tracker and order channel depend on the duck-typed contract only.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
from typing import Any, Callable

from supabase import AsyncClient, acreate_client

from .const import MESSAGES_TABLE, ORDERS_TABLE

_LOGGER = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when a backend read, write or subscribe call fails."""


class AuthenticationError(BackendError):
    """Raised when the backend rejects the configured credentials."""


class NotAuthenticatedError(BackendError):
    """Raised when an operation needs a signed-in user and there is none."""

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class SubscribeState(str, enum.Enum):
    SUBSCRIBED = "subscribed"
    CHANNEL_ERROR = "channel_error"
    TIMED_OUT = "timed_out"
    CLOSED = "closed"


@dataclasses.dataclass(frozen=True)
class EventBinding:
    """
    One event source on a topic.

    kind is "broadcast" (ad-hoc events, event = broadcast name) or
    "postgres_changes" (row changes, event = INSERT / UPDATE).
    """

    kind: str
    event: str
    table: str | None = None
    filter: str | None = None

    @classmethod
    def broadcast(cls, event: str) -> EventBinding:
        return cls(kind="broadcast", event=event)

    @classmethod
    def row_change(cls, event: str, table: str, filter: str) -> EventBinding:
        return cls(kind="postgres_changes", event=event.upper(), table=table, filter=filter)


@dataclasses.dataclass(frozen=True)
class RealtimeEvent:
    """A typed event delivered to a subscription handler."""

    kind: str
    event: str
    payload: dict
    table: str | None = None


@dataclasses.dataclass(frozen=True)
class _StatusChange:
    state: SubscribeState
    error: str | None = None


EventHandler = Callable[[RealtimeEvent], None]
StatusHandler = Callable[[SubscribeState, "str | None"], None]


class Subscription:
    """
    Handle for one realtime topic subscription.

    Transport callbacks call deliver() / report(); both only enqueue.  A single
    worker task dispatches queued items to the handlers in arrival order.
    close() cancels the worker synchronously and drops anything still queued.
    """

    def __init__(self, topic: str, handler: EventHandler, on_status: StatusHandler) -> None:
        self.topic = topic
        # Transport-side object (e.g. the realtime channel), set by the backend
        self.channel: Any = None
        self._handler = handler
        self._on_status = on_status
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._worker = asyncio.ensure_future(self._run())

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, event: RealtimeEvent) -> None:
        """Queue an event for the handler; ignored once closed."""
        if not self._closed:
            self._queue.put_nowait(event)

    def report(self, state: SubscribeState, error: str | None = None) -> None:
        """Queue a subscription status change; ignored once closed."""
        if not self._closed:
            self._queue.put_nowait(_StatusChange(state, error))

    async def drain(self) -> None:
        """Wait until every queued item has been dispatched."""
        if not self._closed:
            await self._queue.join()

    def close(self) -> None:
        """Stop dispatching immediately.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._worker.cancel()
        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()

    async def _run(self) -> None:
        """Dispatch queued items indefinitely."""
        while True:
            item = await self._queue.get()
            try:
                if isinstance(item, _StatusChange):
                    self._on_status(item.state, item.error)
                else:
                    self._handler(item)
            except Exception:  # noqa: BLE001
                _LOGGER.exception("Error dispatching realtime item on %s", self.topic)
            finally:
                self._queue.task_done()


# Supabase realtime reports states as RealtimeSubscribeStates members
_SUPABASE_STATES = {
    "SUBSCRIBED": SubscribeState.SUBSCRIBED,
    "CHANNEL_ERROR": SubscribeState.CHANNEL_ERROR,
    "TIMED_OUT": SubscribeState.TIMED_OUT,
    "CLOSED": SubscribeState.CLOSED,
}


def _row_from_change(payload: dict) -> dict:
    """Extract the new row from a postgres_changes payload."""
    data = payload.get("data", payload)
    return data.get("record") or data.get("new") or {}


def _body_from_broadcast(payload: dict) -> dict:
    """Extract the user payload from a broadcast message."""
    body = payload.get("payload", payload)
    return body if isinstance(body, dict) else {}


class SupabaseBackend:
    """Backend session backed by an async Supabase client."""

    def __init__(self, client: AsyncClient, user_id: str | None = None) -> None:
        self._client = client
        self._user_id = user_id

    @classmethod
    async def connect(cls, url: str, key: str, email: str, password: str) -> SupabaseBackend:
        """
        Create a client and sign in with email and password.

        Raises AuthenticationError when the credentials are rejected and
        BackendError when the project cannot be reached.
        """
        try:
            client = await acreate_client(url, key)
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Cannot create Supabase client: {exc}") from exc

        try:
            response = await client.auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except Exception as exc:  # noqa: BLE001
            if getattr(exc, "status", None) in (400, 401, 403):
                raise AuthenticationError(f"Sign-in rejected: {exc}") from exc
            raise BackendError(f"Sign-in failed: {exc}") from exc

        user = getattr(response, "user", None)
        if user is None:
            raise AuthenticationError("Sign-in returned no user")
        _LOGGER.debug("Signed in to Washman backend as %s", user.id)
        return cls(client, user.id)

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> dict:
        try:
            response = await (
                self._client.table(ORDERS_TABLE)
                .select("*")
                .eq("id", order_id)
                .single()
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Failed to load order {order_id}: {exc}") from exc
        return response.data or {}

    async def get_messages(self, order_id: str) -> list[dict]:
        try:
            response = await (
                self._client.table(MESSAGES_TABLE)
                .select("*")
                .eq("order_id", order_id)
                .order("created_at")
                .execute()
            )
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Failed to load messages for order {order_id}: {exc}") from exc
        return list(response.data or [])

    async def insert_message(self, row: dict) -> None:
        try:
            await self._client.table(MESSAGES_TABLE).insert(row).execute()
        except Exception as exc:  # noqa: BLE001
            raise BackendError(f"Failed to send message: {exc}") from exc

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def subscribe(
        self,
        topic: str,
        bindings: list[EventBinding],
        handler: EventHandler,
        on_status: StatusHandler,
    ) -> Subscription:
        """Open one realtime channel with the given bindings."""
        subscription = Subscription(topic, handler, on_status)
        channel = self._client.channel(topic)

        for binding in bindings:
            if binding.kind == "broadcast":
                channel.on_broadcast(
                    binding.event,
                    lambda payload, b=binding: subscription.deliver(
                        RealtimeEvent(b.kind, b.event, _body_from_broadcast(payload))
                    ),
                )
            else:
                channel.on_postgres_changes(
                    binding.event,
                    lambda payload, b=binding: subscription.deliver(
                        RealtimeEvent(b.kind, b.event, _row_from_change(payload), b.table)
                    ),
                    table=binding.table,
                    schema="public",
                    filter=binding.filter,
                )

        def _status_callback(status, error=None) -> None:
            name = str(getattr(status, "value", status)).upper()
            state = _SUPABASE_STATES.get(name)
            if state is None:
                _LOGGER.debug("Ignoring unknown subscribe status %s on %s", status, topic)
                return
            subscription.report(state, str(error) if error else None)

        subscription.channel = channel
        try:
            await channel.subscribe(_status_callback)
        except Exception as exc:  # noqa: BLE001
            subscription.close()
            raise BackendError(f"Failed to subscribe to {topic}: {exc}") from exc
        return subscription

    async def unsubscribe(self, subscription: Subscription) -> None:
        subscription.close()
        if subscription.channel is None:
            return
        try:
            await self._client.remove_channel(subscription.channel)
        except Exception as exc:  # noqa: BLE001
            _LOGGER.warning("Failed to remove channel %s: %s", subscription.topic, exc)
        subscription.channel = None

    # ------------------------------------------------------------------
    # Identity / lifecycle
    # ------------------------------------------------------------------

    def get_current_user_id(self) -> str | None:
        return self._user_id

    async def close(self) -> None:
        """Drop all channels and sign out."""
        try:
            await self._client.remove_all_channels()
            await self._client.auth.sign_out()
        except Exception as exc:  # noqa: BLE001
            _LOGGER.debug("Error while closing Washman backend: %s", exc)
        self._user_id = None
