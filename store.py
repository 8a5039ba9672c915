"""Durable message log with read-state and recency queries.

Every public method opens its own SQLAlchemy session, so a store instance can
be shared by the HTTP routes and the realtime relay, and called from worker
threads.
"""
import threading
from datetime import datetime, timedelta

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import sessionmaker

from models import Message, MessageType, User, utcnow
from schemas import ChatSummary, MessageResponse


def _between(a: str, b: str):
    return or_(
        and_(Message.sender_id == a, Message.receiver_id == b),
        and_(Message.sender_id == b, Message.receiver_id == a),
    )


class MessageStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._lock = threading.Lock()
        self._last_created: datetime | None = None

    def _next_timestamp(self) -> datetime:
        # strictly increasing so creation order equals insertion order
        now = utcnow()
        if self._last_created is not None and now <= self._last_created:
            now = self._last_created + timedelta(microseconds=1)
        self._last_created = now
        return now

    def create_message(self, sender_id: str, receiver_id: str, content: str | None,
                       message_type: str = MessageType.TEXT.value) -> MessageResponse:
        with self._lock, self.session_factory() as db:
            msg = Message(
                sender_id=sender_id,
                receiver_id=receiver_id,
                content=content,
                type=MessageType(message_type).value,
                created_at=self._next_timestamp(),
            )
            db.add(msg)
            db.commit()
            db.refresh(msg)
            return MessageResponse.model_validate(msg)

    def mark_read(self, sender_id: str, receiver_id: str) -> int:
        """Stamp every unread sender -> receiver message as read. Returns how many changed."""
        with self._lock, self.session_factory() as db:
            result = db.execute(
                update(Message)
                .where(
                    Message.sender_id == sender_id,
                    Message.receiver_id == receiver_id,
                    Message.read_at.is_(None),
                )
                .values(read_at=utcnow())
            )
            db.commit()
            return result.rowcount or 0

    def get_conversation(self, a: str, b: str) -> list[MessageResponse]:
        with self._lock, self.session_factory() as db:
            rows = db.scalars(
                select(Message)
                .where(_between(a, b))
                .order_by(Message.created_at, Message.id)
            ).all()
            return [MessageResponse.model_validate(m) for m in rows]

    def recent_conversations(self, user_id: str) -> list[ChatSummary]:
        with self._lock, self.session_factory() as db:
            counterpart = case(
                (Message.sender_id == user_id, Message.receiver_id), else_=Message.sender_id
            )
            ranked = (
                select(
                    Message.id.label("id"),
                    counterpart.label("counterpart"),
                    func.row_number().over(
                        partition_by=counterpart,
                        order_by=(Message.created_at.desc(), Message.id.desc()),
                    ).label("rank"),
                )
                .where(or_(Message.sender_id == user_id, Message.receiver_id == user_id))
                .subquery()
            )
            # one row per counterpart, newest first
            latest = db.execute(
                select(Message, ranked.c.counterpart)
                .join(ranked, ranked.c.id == Message.id)
                .where(ranked.c.rank == 1)
                .order_by(Message.created_at.desc(), Message.id.desc())
            ).all()
            if not latest:
                return []

            unread = dict(
                db.execute(
                    select(Message.sender_id, func.count())
                    .where(Message.receiver_id == user_id, Message.read_at.is_(None))
                    .group_by(Message.sender_id)
                ).all()
            )
            others = [other for _, other in latest]
            users = {u.id: u for u in db.scalars(select(User).where(User.id.in_(others))).all()}

            chats = []
            for m, other in latest:
                user = users.get(other)
                chats.append(ChatSummary(
                    id=other,
                    username=user.username if user else None,
                    avatar_url=user.avatar_url if user else None,
                    last_message=MessageResponse.model_validate(m),
                    unread_count=unread.get(other, 0),
                ))
            return chats
