"""Realtime fan-out of message changes.

The store publishes a raw ``ChangeEvent`` for every insert and every read flip.
Each subscription opens its own channel on the feed, filtered to rows where the
viewer is sender or receiver, and re-fetches the row before invoking its
callback. Channels may redeliver; consumers dedupe by message id
(see ``MessageBuffer``).
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set, Union
from uuid import uuid4

import ulid
from redis import exceptions as redis_exceptions

from clstr.infra.redis import redis_client
from clstr.infra.resilience import backend_call
from clstr.obs import metrics as obs_metrics
from clstr.settings import settings

from .models import Message

logger = logging.getLogger(__name__)

EVENT_KINDS = frozenset({"insert", "update"})

MessageCallback = Callable[[Message], Union[None, Awaitable[None]]]
MessageLoader = Callable[[str], Awaitable[Optional[Message]]]


@dataclass(slots=True, frozen=True)
class ChangeEvent:
	kind: str
	message_id: str
	sender_id: str
	receiver_id: str
	entry_id: Optional[str] = None

	@classmethod
	def for_message(cls, kind: str, message: Message) -> "ChangeEvent":
		return cls(kind=kind, message_id=message.id, sender_id=message.sender_id, receiver_id=message.receiver_id)

	@classmethod
	def from_fields(cls, fields: Dict[str, str], entry_id: Optional[str] = None) -> "ChangeEvent":
		return cls(
			kind=fields["kind"],
			message_id=fields["message_id"],
			sender_id=fields["sender_id"],
			receiver_id=fields["receiver_id"],
			entry_id=entry_id,
		)

	def to_fields(self) -> Dict[str, str]:
		return {
			"kind": self.kind,
			"message_id": self.message_id,
			"sender_id": self.sender_id,
			"receiver_id": self.receiver_id,
		}


class Channel:
	"""One subscription's view of the feed: ``sender_id = viewer`` or ``receiver_id = viewer``."""

	def __init__(self, viewer_id: str) -> None:
		self.viewer_id = str(viewer_id)
		self.closed = False

	async def prime(self) -> None:
		"""Fix the read position; events published after this returns are delivered."""

	def accepts(self, event: ChangeEvent) -> bool:
		if event.kind not in EVENT_KINDS:
			return False
		return event.sender_id == self.viewer_id or event.receiver_id == self.viewer_id

	def events(self) -> AsyncIterator[ChangeEvent]:
		raise NotImplementedError

	def close(self) -> None:
		raise NotImplementedError


class ChangeFeed:
	"""Backing-store change channel."""

	async def publish(self, event: ChangeEvent) -> None:
		raise NotImplementedError

	def open_channel(self, viewer_id: str) -> Channel:
		raise NotImplementedError

	@property
	def open_channels(self) -> int:
		raise NotImplementedError


class _MemoryChannel(Channel):
	def __init__(self, feed: "InMemoryFeed", viewer_id: str) -> None:
		super().__init__(viewer_id)
		self._feed = feed
		self._queue: asyncio.Queue[Optional[ChangeEvent]] = asyncio.Queue()

	def deliver(self, event: ChangeEvent) -> None:
		if not self.closed and self.accepts(event):
			self._queue.put_nowait(event)

	async def events(self) -> AsyncIterator[ChangeEvent]:
		while not self.closed:
			event = await self._queue.get()
			if event is None:
				return
			yield event

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self._feed._channels.discard(self)
		self._queue.put_nowait(None)


class InMemoryFeed(ChangeFeed):
	"""Single-process feed used by tests and local runs without Redis."""

	def __init__(self) -> None:
		self._channels: Set[_MemoryChannel] = set()
		self.published: List[ChangeEvent] = []

	async def publish(self, event: ChangeEvent) -> None:
		event = replace(event, entry_id=event.entry_id or str(ulid.new()))
		self.published.append(event)
		self._fan(event)

	async def redeliver(self, event: ChangeEvent) -> None:
		"""Push an already published event again, as an at-least-once channel may."""
		self._fan(event)

	def _fan(self, event: ChangeEvent) -> None:
		for channel in list(self._channels):
			channel.deliver(event)

	def open_channel(self, viewer_id: str) -> Channel:
		channel = _MemoryChannel(self, viewer_id)
		self._channels.add(channel)
		return channel

	@property
	def open_channels(self) -> int:
		return len(self._channels)


class _StreamChannel(Channel):
	"""Tails the change stream with XREAD, resuming from the last acked entry."""

	def __init__(self, feed: "RedisStreamFeed", viewer_id: str) -> None:
		super().__init__(viewer_id)
		self._feed = feed
		self._read_from: Optional[str] = None
		self._acked: Optional[str] = None

	async def prime(self) -> None:
		if self._read_from is not None:
			return
		latest = await redis_client.xrevrange(self._feed.stream, count=1)
		self._read_from = latest[0][0] if latest else "0-0"
		self._acked = self._read_from

	async def read_batch(self, block_ms: Optional[int]) -> List[ChangeEvent]:
		await self.prime()
		response = await redis_client.xread({self._feed.stream: self._read_from}, count=100, block=block_ms)
		batch: List[ChangeEvent] = []
		for _stream, entries in response or []:
			for entry_id, fields in entries:
				self._read_from = entry_id
				event = ChangeEvent.from_fields(fields, entry_id)
				if self.accepts(event):
					batch.append(event)
				elif not batch:
					# nothing delivered yet in this batch, safe to skip past
					self._acked = entry_id
		return batch

	def ack(self, entry_id: str) -> None:
		self._acked = entry_id

	def rewind(self) -> None:
		"""Resume from the last acknowledged entry; unacked entries are read again."""
		self._read_from = self._acked

	async def events(self) -> AsyncIterator[ChangeEvent]:
		while not self.closed:
			try:
				batch = await self.read_batch(self._feed.block_ms)
			except (redis_exceptions.ConnectionError, redis_exceptions.TimeoutError):
				logger.warning("realtime_stream_reconnect", extra={"stream": self._feed.stream})
				self.rewind()
				await asyncio.sleep(self._feed.reconnect_delay)
				continue
			for event in batch:
				if self.closed:
					return
				yield event
				self.ack(event.entry_id or "")

	def close(self) -> None:
		if self.closed:
			return
		self.closed = True
		self._feed._channels.discard(self)


class RedisStreamFeed(ChangeFeed):
	def __init__(
		self,
		stream: Optional[str] = None,
		*,
		maxlen: Optional[int] = None,
		block_ms: Optional[int] = None,
		reconnect_delay: Optional[float] = None,
	) -> None:
		self.stream = stream or settings.realtime_stream
		self.maxlen = maxlen or settings.realtime_stream_maxlen
		self.block_ms = block_ms if block_ms is not None else settings.realtime_block_ms
		self.reconnect_delay = (
			reconnect_delay if reconnect_delay is not None else settings.realtime_reconnect_delay_seconds
		)
		self._channels: Set[_StreamChannel] = set()

	async def publish(self, event: ChangeEvent) -> None:
		await redis_client.xadd_capped(self.stream, event.to_fields(), maxlen=self.maxlen)

	def open_channel(self, viewer_id: str) -> Channel:
		channel = _StreamChannel(self, viewer_id)
		self._channels.add(channel)
		return channel

	@property
	def open_channels(self) -> int:
		return len(self._channels)


@dataclass(slots=True)
class _Subscription:
	key: str
	viewer_id: str
	channel: Channel
	callback: MessageCallback
	task: Optional["asyncio.Task[None]"] = None
	active: bool = True


class MessageFanout:
	"""Registry of live subscriptions; each one owns a channel and a pump task."""

	def __init__(self, feed: ChangeFeed, loader: MessageLoader) -> None:
		self._feed = feed
		self._loader = loader
		self._subscriptions: Dict[str, _Subscription] = {}

	@property
	def feed(self) -> ChangeFeed:
		return self._feed

	async def subscribe(self, viewer_id: str, on_message: MessageCallback) -> Callable[[], None]:
		"""Start delivering ``viewer_id``'s message changes; returns ``unsubscribe``.

		Every change published after this returns reaches ``on_message``.
		"""
		channel = self._feed.open_channel(str(viewer_id))
		try:
			async with backend_call("realtime.subscribe"):
				await channel.prime()
		except BaseException:
			channel.close()
			raise
		sub = _Subscription(
			key=uuid4().hex,
			viewer_id=str(viewer_id),
			channel=channel,
			callback=on_message,
		)
		self._subscriptions[sub.key] = sub
		sub.task = asyncio.get_running_loop().create_task(self._pump(sub))
		sub.task.add_done_callback(lambda task: self._on_pump_exit(sub, task))
		obs_metrics.realtime_subscribed()
		logger.debug("realtime_subscribed", extra={"viewer_id": sub.viewer_id, "subscription": sub.key})

		def unsubscribe() -> None:
			self._release(sub)

		return unsubscribe

	def _release(self, sub: _Subscription) -> None:
		if not sub.active:
			return
		sub.active = False
		self._subscriptions.pop(sub.key, None)
		sub.channel.close()
		if sub.task is not None and not sub.task.done():
			sub.task.cancel()
		obs_metrics.realtime_unsubscribed()
		logger.debug("realtime_unsubscribed", extra={"viewer_id": sub.viewer_id, "subscription": sub.key})

	def subscription_count(self, viewer_id: Optional[str] = None) -> int:
		if viewer_id is None:
			return len(self._subscriptions)
		return sum(1 for sub in self._subscriptions.values() if sub.viewer_id == str(viewer_id))

	async def close(self) -> None:
		subs = list(self._subscriptions.values())
		for sub in subs:
			self._release(sub)
		tasks = [sub.task for sub in subs if sub.task is not None]
		if tasks:
			await asyncio.gather(*tasks, return_exceptions=True)

	def _on_pump_exit(self, sub: _Subscription, task: "asyncio.Task[None]") -> None:
		if not sub.active:
			return
		# pump ended while still subscribed: drop the dead registration
		if task.cancelled():
			logger.warning("realtime_pump_cancelled", extra={"subscription": sub.key})
		elif task.exception() is not None:
			logger.error(
				"realtime_pump_failed",
				extra={"subscription": sub.key, "error": type(task.exception()).__name__},
				exc_info=task.exception(),
			)
		else:
			logger.warning("realtime_pump_stopped", extra={"subscription": sub.key})
		self._release(sub)

	async def _pump(self, sub: _Subscription) -> None:
		async for event in sub.channel.events():
			if not sub.active:
				return
			try:
				message = await self._loader(event.message_id)
			except Exception:
				logger.warning(
					"realtime_refetch_failed",
					extra={"message_id": event.message_id, "subscription": sub.key},
					exc_info=True,
				)
				continue
			if message is None or not sub.active:
				continue
			try:
				result = sub.callback(message)
				if inspect.isawaitable(result):
					await result
			except Exception:
				logger.exception("realtime_callback_failed", extra={"subscription": sub.key})
				continue
			obs_metrics.inc_realtime_delivery(event.kind)


class MessageBuffer:
	"""Consumer-side view of one thread: upsert by id, chronological order.

	Redelivered or out-of-order events collapse onto a single entry. Optimistic
	sends are held as pending entries until confirmed or rolled back.
	"""

	def __init__(self) -> None:
		self._items: Dict[str, Message] = {}
		self._pending: Dict[str, Message] = {}

	def upsert(self, message: Message) -> bool:
		"""Insert or refresh ``message``; False when nothing changed."""
		existing = self._items.get(message.id)
		if existing is not None:
			newer = message.updated_at > existing.updated_at
			read_flip = message.read and not existing.read
			if not (newer or read_flip):
				return False
		self._items[message.id] = message
		return True

	def add_pending(self, sender_id: str, receiver_id: str, content: str) -> str:
		temp_id = f"pending:{ulid.new()}"
		now = datetime.now(timezone.utc)
		self._pending[temp_id] = Message(
			id=temp_id,
			sender_id=str(sender_id),
			receiver_id=str(receiver_id),
			content=content,
			read=False,
			created_at=now,
			updated_at=now,
		)
		return temp_id

	def confirm(self, temp_id: str, message: Message) -> None:
		self._pending.pop(temp_id, None)
		self.upsert(message)

	def rollback(self, temp_id: str) -> Optional[Message]:
		return self._pending.pop(temp_id, None)

	def messages(self) -> List[Message]:
		combined = list(self._items.values()) + list(self._pending.values())
		return sorted(combined, key=lambda m: (m.created_at, m.id))

	@property
	def pending_count(self) -> int:
		return len(self._pending)

	def __len__(self) -> int:
		return len(self._items)

	def __contains__(self, message_id: object) -> bool:
		return message_id in self._items


_FEED: Optional[ChangeFeed] = None


def get_feed() -> ChangeFeed:
	global _FEED
	if _FEED is None:
		_FEED = RedisStreamFeed()
	return _FEED


def set_feed(feed: Optional[ChangeFeed]) -> None:
	global _FEED
	_FEED = feed
