"""Direct messaging service: gated sends, history, read state and aggregates."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, Optional

from clstr.api.pagination import decode_cursor, encode_cursor
from clstr.domain.common.errors import (
	ClstrError,
	DomainMismatchError,
	EmptyMessageError,
	InvalidIdentifierError,
	MessageTooLongError,
	MissingDomainError,
	NotConnectedError,
	OperationFailedError,
	SelfMessagingError,
	assert_valid_uuid,
)
from clstr.domain.connections.models import ConnectionStatus
from clstr.domain.connections.service import ConnectionService, get_service as get_connection_service
from clstr.domain.identity import IdentityResolver, MessageUser, get_resolver
from clstr.infra.auth import AuthenticatedUser
from clstr.infra.resilience import TRANSIENT_ERRORS, retry_read
from clstr.obs import metrics as obs_metrics
from clstr.settings import settings

from . import eligibility, realtime
from .models import Conversation, Eligibility, Message, MessagePage
from .realtime import ChangeEvent, ChangeFeed, MessageCallback, MessageFanout
from .repo import MessageRepository

logger = logging.getLogger(__name__)

INVARIANT_EVENT = "messaging.invariant_violation"


def _invariant_violation(invariant: str, sender_id: str, receiver_id: str) -> None:
	logger.warning(
		INVARIANT_EVENT,
		extra={"invariant": invariant, "sender_id": sender_id, "receiver_id": receiver_id},
	)


def clamp_limit(limit: Optional[int]) -> int:
	if limit is None:
		return settings.history_default_limit
	return max(1, min(int(limit), settings.history_max_limit))


class MessagingService:
	def __init__(
		self,
		repository: MessageRepository | None = None,
		resolver: IdentityResolver | None = None,
		connections: ConnectionService | None = None,
		feed: ChangeFeed | None = None,
	) -> None:
		self._repo = repository or MessageRepository()
		self._identity = resolver or get_resolver()
		self._connections = connections or get_connection_service()
		self._feed = feed
		self._fanout: Optional[MessageFanout] = None

	@property
	def feed(self) -> ChangeFeed:
		return self._feed or realtime.get_feed()

	@property
	def fanout(self) -> MessageFanout:
		if self._fanout is None:
			self._fanout = MessageFanout(self.feed, self.load_message)
		return self._fanout

	async def _live_fanout(self) -> MessageFanout:
		"""Fan-out bound to the current feed; a fan-out on a replaced feed is closed first."""
		stale = self._fanout
		if stale is not None and stale.feed is not self.feed:
			self._fanout = None
			await stale.close()
		return self.fanout

	async def reset_realtime(self) -> None:
		if self._fanout is not None:
			await self._fanout.close()
		self._fanout = None

	async def _enrich(self, messages: List[Message]) -> List[Message]:
		ids: List[str] = []
		for message in messages:
			ids.extend((message.sender_id, message.receiver_id))
		users = await self._identity.profiles(dict.fromkeys(ids))
		return [m.with_users(users[m.sender_id], users[m.receiver_id]) for m in messages]

	async def load_message(self, message_id: str) -> Optional[Message]:
		"""Re-fetch a row and its counterpart identities."""
		message = await self._repo.get(message_id)
		if message is None:
			return None
		return (await self._enrich([message]))[0]

	async def _publish(self, kind: str, messages: Iterable[Message]) -> None:
		feed = self.feed
		for message in messages:
			try:
				await feed.publish(ChangeEvent.for_message(kind, message))
			except TRANSIENT_ERRORS:
				# Row is committed; subscribers catch up on their next history fetch.
				logger.warning("realtime_publish_failed", extra={"kind": kind, "message_id": message.id})

	async def touch_presence(self, user_id: str) -> None:
		"""Refresh ``last_seen``; a failed write only costs presence accuracy."""
		try:
			await self._identity.touch_last_seen(user_id)
		except OperationFailedError:
			logger.warning("presence_touch_failed", extra={"target_user": user_id})

	async def check_eligibility(self, auth_user: AuthenticatedUser, partner_id: str) -> Eligibility:
		me = await self._identity.current(auth_user)
		return await eligibility.check(me, assert_valid_uuid(partner_id, label="partner_id"), self._connections)

	async def send(self, auth_user: AuthenticatedUser, receiver_id: str, content: Optional[str]) -> Message:
		me = await self._identity.current(auth_user)
		target_id = assert_valid_uuid(receiver_id, label="receiver_id")
		try:
			if me.id == target_id:
				raise SelfMessagingError()
			text = (content or "").strip()
			if not text:
				_invariant_violation("empty_content", me.id, target_id)
				raise EmptyMessageError()
			if len(text) > settings.message_max_length:
				raise MessageTooLongError()
			decision = await eligibility.check(me, target_id, self._connections)
			if not decision.allowed:
				raise NotConnectedError(decision)
			receiver_domain = await self._identity.domain_of(target_id)
			if not me.domain or not receiver_domain:
				raise MissingDomainError()
			if me.domain != receiver_domain:
				_invariant_violation("domain_mismatch", me.id, target_id)
				raise DomainMismatchError()
		except ClstrError as exc:
			obs_metrics.inc_message_send_reject(exc.reason)
			raise
		# Not retried: a blind retry could duplicate the send.
		message = await self._repo.insert(me.id, target_id, text, me.domain)
		gate = "connected" if decision.connection_status is ConnectionStatus.ACCEPTED else "privileged"
		obs_metrics.inc_message_sent(gate)
		await self._publish("insert", [message])
		await self.touch_presence(me.id)
		return (await self._enrich([message]))[0]

	async def history(
		self,
		auth_user: AuthenticatedUser,
		partner_id: str,
		*,
		limit: Optional[int] = None,
		cursor: Optional[str] = None,
	) -> MessagePage:
		me = await self._identity.current(auth_user)
		partner = assert_valid_uuid(partner_id, label="partner_id")
		if partner == me.id:
			raise SelfMessagingError()
		page_size = clamp_limit(limit)
		position = None
		if cursor:
			try:
				position = decode_cursor(cursor)
			except ValueError:
				raise InvalidIdentifierError(detail={"reason": InvalidIdentifierError.reason, "field": "cursor"}) from None
		rows = await retry_read(
			"messages.history",
			lambda: self._repo.history(me.id, partner, cursor=position, limit=page_size + 1),
		)
		has_more = len(rows) > page_size
		newest_first = rows[:page_size]
		next_cursor = None
		if has_more and newest_first:
			oldest = newest_first[-1]
			next_cursor = encode_cursor(oldest.created_at, oldest.id)
		messages = await self._enrich(list(reversed(newest_first)))
		return MessagePage(messages=messages, has_more=has_more, next_cursor=next_cursor)

	async def mark_read(self, auth_user: AuthenticatedUser, partner_id: str) -> List[str]:
		me = await self._identity.current(auth_user)
		partner = assert_valid_uuid(partner_id, label="partner_id")
		if partner == me.id:
			raise SelfMessagingError()
		flipped = await self._repo.mark_read(me.id, partner)
		if flipped:
			obs_metrics.inc_message_read(len(flipped))
			await self._publish("update", flipped)
		return [message.id for message in flipped]

	async def list_conversations(self, auth_user: AuthenticatedUser) -> List[Conversation]:
		me = await self._identity.current(auth_user)
		rows = await retry_read("messages.conversations", lambda: self._repo.conversations(me.id))
		if not rows:
			return []
		users: Dict[str, MessageUser] = await self._identity.profiles([me.id] + [pid for pid, _, _ in rows])
		conversations: List[Conversation] = []
		for partner_id, message, unread_count in rows:
			last = message.with_users(users[message.sender_id], users[message.receiver_id])
			conversations.append(Conversation(partner=users[partner_id], last_message=last, unread_count=unread_count))
		return conversations

	async def unread_total(self, auth_user: AuthenticatedUser) -> int:
		me = await self._identity.current(auth_user)
		return await retry_read("messages.unread_total", lambda: self._repo.unread_total(me.id))

	async def subscribe(self, auth_user: AuthenticatedUser, on_message: MessageCallback) -> Callable[[], None]:
		me = await self._identity.current(auth_user)
		fanout = await self._live_fanout()
		return await fanout.subscribe(me.id, on_message)


_SERVICE = MessagingService()


def get_service() -> MessagingService:
	return _SERVICE


async def check_eligibility(auth_user: AuthenticatedUser, partner_id: str) -> Eligibility:
	return await _SERVICE.check_eligibility(auth_user, partner_id)


async def send_message(auth_user: AuthenticatedUser, receiver_id: str, content: Optional[str]) -> Message:
	return await _SERVICE.send(auth_user, receiver_id, content)


async def get_history(
	auth_user: AuthenticatedUser,
	partner_id: str,
	*,
	limit: Optional[int] = None,
	cursor: Optional[str] = None,
) -> MessagePage:
	return await _SERVICE.history(auth_user, partner_id, limit=limit, cursor=cursor)


async def mark_read(auth_user: AuthenticatedUser, partner_id: str) -> List[str]:
	return await _SERVICE.mark_read(auth_user, partner_id)


async def list_conversations(auth_user: AuthenticatedUser) -> List[Conversation]:
	return await _SERVICE.list_conversations(auth_user)


async def unread_count(auth_user: AuthenticatedUser) -> int:
	return await _SERVICE.unread_total(auth_user)


async def subscribe(auth_user: AuthenticatedUser, on_message: MessageCallback) -> Callable[[], None]:
	return await _SERVICE.subscribe(auth_user, on_message)
