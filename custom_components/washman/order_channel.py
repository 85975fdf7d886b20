"""
OrderChannel: realtime status, ETA and chat log for one order.

Responsibilities:
- Subscribe to order-row updates and message inserts on the order topic,
  plus the washer location broadcast (independent of LocationTracker).
- Seed the message log with a one-time fetch and reconcile it with pushed
  inserts: messages are unique by id and ordered by created_at.
- Send customer messages; the pushed INSERT is what appends them locally.

State lives in an immutable OrderState snapshot replaced on every change.
"""
from __future__ import annotations

import asyncio
import bisect
import dataclasses
import logging
from datetime import datetime, timezone
from typing import Callable

from .backend import (
    BackendError,
    EventBinding,
    NotAuthenticatedError,
    RealtimeEvent,
    SubscribeState,
    Subscription,
)
from .const import (
    LOCATION_EVENT,
    LOCATION_TOPIC,
    MESSAGES_TABLE,
    ORDER_TOPIC,
    ORDERS_TABLE,
    SUBSCRIBE_TIMEOUT,
)
from .models import (
    ConnectionState,
    Message,
    OrderState,
    SenderType,
    WasherLocation,
    normalize_status,
)

_LOGGER = logging.getLogger(__name__)

CONNECT_ERROR = "Failed to connect to real-time updates"
TIMEOUT_ERROR = "Timed out connecting to real-time updates"

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _sort_key(message: Message) -> datetime:
    created = message.created
    if created is None:
        return _EPOCH
    if created.tzinfo is None:
        return created.replace(tzinfo=timezone.utc)
    return created


def insert_message(messages: tuple[Message, ...], message: Message) -> tuple[Message, ...]:
    """
    Return messages with message added at its created_at position.

    Returns the input unchanged when a message with the same id is present.
    Ties keep arrival order.
    """
    if any(m.id == message.id for m in messages):
        return messages
    key = _sort_key(message)
    if not messages or key >= _sort_key(messages[-1]):
        return messages + (message,)
    index = bisect.bisect_right([_sort_key(m) for m in messages], key)
    return messages[:index] + (message,) + messages[index:]


class OrderChannel:
    """Realtime order state for one order id."""

    def __init__(self, backend, order_id: str, *, ack_timeout: float = SUBSCRIBE_TIMEOUT) -> None:
        self._backend = backend
        self.order_id = order_id
        self._ack_timeout = ack_timeout

        self.state = OrderState()

        self._order_subscription: Subscription | None = None
        self._location_subscription: Subscription | None = None
        self._starting_order = False
        self._starting_location = False
        # Bumped by stop(); a subscribe call that returns under an older value is released
        self._generation = 0
        self._ack_timer: asyncio.TimerHandle | None = None
        self._listeners: list[Callable[[], None]] = []
        self._cleanup_tasks: set[asyncio.Task] = set()

        # Messages pushed while a load() is in flight; None when no load runs
        self._pushed_during_load: list[Message] | None = None
        self._loads_in_flight = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def order_status(self) -> str | None:
        return self.state.status

    @property
    def estimated_arrival(self) -> str | None:
        return self.state.estimated_arrival

    @property
    def messages(self) -> tuple[Message, ...]:
        return self.state.messages

    @property
    def washer_location(self) -> WasherLocation | None:
        return self.state.washer_location

    @property
    def is_connected(self) -> bool:
        return self.state.is_connected

    @property
    def error(self) -> str | None:
        return self.state.error

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def add_listener(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a change callback; returns a function that removes it."""
        self._listeners.append(callback)

        def _remove() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _remove

    def _replace(self, **changes) -> None:
        self.state = dataclasses.replace(self.state, **changes)
        for callback in list(self._listeners):
            callback()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Open the order and location subscriptions (when not already open),
        then load the current order and message history.

        Nothing is loaded when stop() runs before the subscriptions are in place.
        """
        generation = self._generation

        if self._order_subscription is None and not self._starting_order:
            self._starting_order = True
            try:
                await self._subscribe_order(generation)
            finally:
                self._starting_order = False
        if generation != self._generation:
            return

        if self._location_subscription is None and not self._starting_location:
            self._starting_location = True
            try:
                await self._subscribe_location(generation)
            finally:
                self._starting_location = False
        if generation != self._generation:
            return

        await self.load()

    async def _subscribe_order(self, generation: int) -> None:
        topic = ORDER_TOPIC.format(order_id=self.order_id)
        bindings = [
            EventBinding.row_change("UPDATE", ORDERS_TABLE, f"id=eq.{self.order_id}"),
            EventBinding.row_change("INSERT", MESSAGES_TABLE, f"order_id=eq.{self.order_id}"),
        ]
        try:
            subscription = await self._backend.subscribe(
                topic, bindings, self._handle_order_event, self._handle_order_status
            )
        except BackendError as exc:
            _LOGGER.warning("Order subscription for order %s failed: %s", self.order_id, exc)
            self._replace(connection=ConnectionState.ERRORED, error=CONNECT_ERROR)
            return

        if generation != self._generation:
            # stop() ran while the subscribe call was in flight
            await self._backend.unsubscribe(subscription)
            return

        self._order_subscription = subscription
        self._ack_timer = asyncio.get_running_loop().call_later(
            self._ack_timeout, self._handle_ack_timeout
        )

    async def _subscribe_location(self, generation: int) -> None:
        try:
            subscription = await self._backend.subscribe(
                LOCATION_TOPIC.format(order_id=self.order_id),
                [EventBinding.broadcast(LOCATION_EVENT)],
                self._handle_location_event,
                self._handle_location_status,
            )
        except BackendError as exc:
            _LOGGER.warning("Washer location subscription for order %s failed: %s", self.order_id, exc)
            return

        if generation != self._generation:
            await self._backend.unsubscribe(subscription)
            return
        self._location_subscription = subscription

    async def stop(self) -> None:
        """Close both subscriptions.  Safe to call more than once."""
        self._generation += 1
        self._cancel_ack_timer()
        subscriptions = [
            s for s in (self._order_subscription, self._location_subscription) if s is not None
        ]
        self._order_subscription = None
        self._location_subscription = None

        for subscription in subscriptions:
            subscription.close()
        for subscription in subscriptions:
            await self._backend.unsubscribe(subscription)

        if self.state.connection != ConnectionState.DISCONNECTED:
            self._replace(connection=ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Initial fetch / refetch
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """
        Fetch the order row and the message history in parallel.

        A failed fetch is logged and leaves its part of the state untouched.
        Messages pushed while the fetch was in flight are merged by id.
        """
        if self._pushed_during_load is None:
            self._pushed_during_load = []
        self._loads_in_flight += 1
        try:
            order_result, messages_result = await asyncio.gather(
                self._backend.get_order(self.order_id),
                self._backend.get_messages(self.order_id),
                return_exceptions=True,
            )
        finally:
            self._loads_in_flight -= 1
            pushed = self._pushed_during_load or []
            if self._loads_in_flight == 0:
                self._pushed_during_load = None

        changes: dict = {}

        if isinstance(order_result, BaseException):
            _LOGGER.warning("Error loading order %s: %s", self.order_id, order_result)
        elif order_result:
            changes["status"] = normalize_status(order_result.get("status"))
            changes["washer_id"] = order_result.get("washer_id")
            if "estimated_arrival" in order_result:
                changes["estimated_arrival"] = order_result.get("estimated_arrival")

        if isinstance(messages_result, BaseException):
            _LOGGER.warning("Error loading messages for order %s: %s", self.order_id, messages_result)
        else:
            merged: tuple[Message, ...] = ()
            for row in messages_result:
                try:
                    merged = insert_message(merged, Message.from_row(row))
                except (KeyError, TypeError) as exc:
                    _LOGGER.warning("Skipping malformed message row for order %s: %s", self.order_id, exc)
            for message in pushed:
                merged = insert_message(merged, message)
            changes["messages"] = merged

        if changes:
            self._replace(**changes)

    async def refetch(self) -> None:
        await self.load()

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    async def send_message(self, content: str, is_quick_reply: bool = False) -> None:
        """
        Persist a customer message for this order.

        The messages table has no quick-reply column, so is_quick_reply only
        affects logging.  Nothing is appended locally: the pushed INSERT
        event delivers the stored row.

        Raises NotAuthenticatedError before any network call when there is
        no signed-in user, and BackendError when the insert fails.
        """
        sender_id = self._backend.get_current_user_id()
        if sender_id is None:
            error = NotAuthenticatedError()
            self._replace(error=str(error))
            raise error

        row = {
            "order_id": self.order_id,
            "sender_id": sender_id,
            "sender_type": SenderType.CUSTOMER.value,
            "content": content,
        }
        try:
            await self._backend.insert_message(row)
        except BackendError as exc:
            _LOGGER.error("Failed to send message for order %s: %s", self.order_id, exc)
            self._replace(error=str(exc) or "Failed to send message")
            raise
        _LOGGER.debug(
            "Sent %s for order %s", "quick reply" if is_quick_reply else "message", self.order_id
        )

    # ------------------------------------------------------------------
    # Subscription callbacks
    # ------------------------------------------------------------------

    def _handle_order_event(self, event: RealtimeEvent) -> None:
        row = event.payload
        if event.table == ORDERS_TABLE:
            self._replace(
                status=normalize_status(row.get("status")),
                washer_id=row.get("washer_id", self.state.washer_id),
                estimated_arrival=row.get("estimated_arrival"),
            )
        elif event.table == MESSAGES_TABLE:
            try:
                message = Message.from_row(row)
            except (KeyError, TypeError) as exc:
                _LOGGER.warning("Malformed message event for order %s: %s", self.order_id, exc)
                return
            if self._pushed_during_load is not None:
                self._pushed_during_load.append(message)
            messages = insert_message(self.state.messages, message)
            if messages is self.state.messages:
                _LOGGER.debug("Ignoring duplicate message %s", message.id)
                return
            self._replace(messages=messages)
        else:
            _LOGGER.debug("Ignoring event for table %s", event.table)

    def _handle_order_status(self, state: SubscribeState, error: str | None = None) -> None:
        if state == SubscribeState.SUBSCRIBED:
            self._cancel_ack_timer()
            self._replace(connection=ConnectionState.CONNECTED, error=None)
        elif state in (SubscribeState.CHANNEL_ERROR, SubscribeState.TIMED_OUT):
            _LOGGER.warning(
                "Order channel for order %s reported %s: %s", self.order_id, state.value, error
            )
            self._release_order_subscription()
            message = CONNECT_ERROR if state == SubscribeState.CHANNEL_ERROR else TIMEOUT_ERROR
            self._replace(connection=ConnectionState.ERRORED, error=message)
        elif state == SubscribeState.CLOSED:
            _LOGGER.debug("Order channel for order %s closed by the server", self.order_id)
            self._release_order_subscription()
            self._replace(connection=ConnectionState.DISCONNECTED)

    def _handle_ack_timeout(self) -> None:
        self._ack_timer = None
        if self.state.is_connected or self._order_subscription is None:
            return
        _LOGGER.warning(
            "No acknowledgment for order %s updates after %s seconds", self.order_id, self._ack_timeout
        )
        self._release_order_subscription()
        self._replace(connection=ConnectionState.ERRORED, error=TIMEOUT_ERROR)

    def _handle_location_event(self, event: RealtimeEvent) -> None:
        try:
            location = WasherLocation.from_payload(event.payload)
        except (KeyError, TypeError, ValueError) as exc:
            _LOGGER.warning("Malformed washer location for order %s: %s", self.order_id, exc)
            return
        self._replace(washer_location=location)

    def _handle_location_status(self, state: SubscribeState, error: str | None = None) -> None:
        _LOGGER.debug("Washer location channel for order %s: %s %s", self.order_id, state.value, error or "")
        if state != SubscribeState.SUBSCRIBED:
            subscription, self._location_subscription = self._location_subscription, None
            self._discard(subscription)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _release_order_subscription(self) -> None:
        """Drop the order subscription so a later start() can resubscribe."""
        self._cancel_ack_timer()
        subscription, self._order_subscription = self._order_subscription, None
        self._discard(subscription)

    def _discard(self, subscription: Subscription | None) -> None:
        if subscription is None:
            return
        subscription.close()
        task = asyncio.ensure_future(self._backend.unsubscribe(subscription))
        self._cleanup_tasks.add(task)
        task.add_done_callback(self._cleanup_tasks.discard)

    def _cancel_ack_timer(self) -> None:
        if self._ack_timer is not None:
            self._ack_timer.cancel()
            self._ack_timer = None
