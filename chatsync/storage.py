import logging
from collections import OrderedDict
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

from chatsync.config import settings
from chatsync.domain import (
    ConnectionInfo,
    ConnectionStatus,
    Conversation,
    Direction,
    MessageRecord,
    MessageStatus,
    as_utc,
    can_transition,
    utcnow,
)

logger = logging.getLogger(__name__)

# Upper bound on optimistic placeholders remembered in memory
TEMP_REGISTRY_SIZE = 1000


def _engine_kwargs(url: str) -> Dict[str, Any]:
    # check_same_thread=False is required for SQLite to work with FastAPI's async
    if not url.startswith("sqlite"):
        return {"pool_pre_ping": True}
    kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
        # One shared connection, otherwise every session sees an empty database
        kwargs["poolclass"] = StaticPool
    return kwargs


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_kwargs(settings.DATABASE_URL),
)

# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {engine.url.render_as_string(hide_password=True)}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("connections", "messages"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Row <-> domain conversion
# =============================================================================

def _to_record(row, temp_id: Optional[str] = None) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        connection_id=row.connection_id,
        counterparty_number=row.counterparty_number,
        message_id=row.message_id,
        direction=Direction(row.direction),
        body=row.body,
        status=MessageStatus(row.status),
        timestamp=as_utc(row.timestamp),
        temp_id=temp_id,
    )


def _to_connection(row) -> ConnectionInfo:
    return ConnectionInfo(
        id=row.id,
        name=row.name,
        description=row.description,
        instance_name=row.instance_name or default_instance_name(row.id, row.name),
        status=ConnectionStatus(row.status),
        phone_number=row.phone_number,
        last_activity=as_utc(row.last_activity) if row.last_activity else None,
        created_at=as_utc(row.created_at) if row.created_at else None,
    )


def default_instance_name(connection_id: int, name: str) -> str:
    """Gateway instance naming convention: whatsapp_<id>_<name>."""
    return f"whatsapp_{connection_id}_{name}"


# =============================================================================
# Message Store
# =============================================================================

class MessageStore:
    """
    Durable log of messages plus the connections that own them.

    The store is the only shared mutable resource. Writes are limited to
    appends, status transitions and placeholder replacement. Callers that
    need read-decide-write atomicity hold a per-conversation lock (see
    merge.ConversationLocks) around the store calls.

    Optimistic placeholders are tracked in an in-memory registry keyed by
    (connection_id, temp_id); temp ids never reach the database.
    """

    def __init__(self, session_factory=SessionLocal, temp_registry_size: int = TEMP_REGISTRY_SIZE):
        self._session_factory = session_factory
        self._temp_registry_size = temp_registry_size
        self._temp_ids: "OrderedDict[Tuple[int, str], int]" = OrderedDict()
        self._temp_by_pk: Dict[int, str] = {}

    # -------------------------------------------------------------------------
    # Temp id registry
    # -------------------------------------------------------------------------

    def _register_temp(self, connection_id: int, temp_id: str, pk: int) -> None:
        key = (connection_id, temp_id)
        self._temp_ids[key] = pk
        self._temp_ids.move_to_end(key)
        self._temp_by_pk[pk] = temp_id
        while len(self._temp_ids) > self._temp_registry_size:
            (_, evicted_temp), evicted_pk = self._temp_ids.popitem(last=False)
            self._temp_by_pk.pop(evicted_pk, None)
            logger.debug(f"Evicted temp id {evicted_temp} from registry")

    def _forget_temp(self, connection_id: int, temp_id: str) -> Optional[int]:
        pk = self._temp_ids.pop((connection_id, temp_id), None)
        if pk is not None:
            self._temp_by_pk.pop(pk, None)
        return pk

    def temp_id_for(self, pk: int) -> Optional[str]:
        return self._temp_by_pk.get(pk)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def append(self, record: MessageRecord, temp_id: Optional[str] = None) -> MessageRecord:
        """
        Persist a new message and return it with its assigned id.

        Raises:
            sqlalchemy.exc.IntegrityError: gateway message_id already stored
                for this connection.
        """
        from chatsync.models import Message

        temp_id = temp_id or record.temp_id
        logger.debug(
            f"Appending message: connection={record.connection_id}, "
            f"counterparty={record.counterparty_number}, direction={record.direction.value}"
        )
        with self._session_factory() as db:
            row = Message(
                connection_id=record.connection_id,
                counterparty_number=record.counterparty_number,
                message_id=record.message_id,
                direction=record.direction.value,
                body=record.body,
                status=record.status.value,
                timestamp=record.timestamp,
                created_at=utcnow(),
            )
            db.add(row)
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            if temp_id:
                self._register_temp(record.connection_id, temp_id, row.id)
            stored = _to_record(row, temp_id=temp_id)
        logger.info(f"Message stored: id={stored.id}, message_id={stored.message_id}")
        return stored

    def update_status(
        self,
        pk: int,
        status: MessageStatus,
        message_id: Optional[str] = None,
    ) -> Optional[MessageRecord]:
        """
        Move a message to ``status`` and optionally adopt a gateway id.

        Returns the updated record, or None when the message does not exist
        or nothing changed (backward transitions are ignored).
        """
        from chatsync.models import Message

        status = MessageStatus(status)
        with self._session_factory() as db:
            row = db.get(Message, pk)
            if row is None:
                logger.warning(f"Status update for unknown message id={pk}")
                return None
            changed = False
            if can_transition(MessageStatus(row.status), status):
                row.status = status.value
                changed = True
            if message_id and not row.message_id:
                row.message_id = message_id
                changed = True
            if not changed:
                logger.debug(f"Status update ignored: id={pk}, {row.status} -> {status.value}")
                return None
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            updated = _to_record(row, temp_id=self.temp_id_for(pk))
        logger.info(f"Message status updated: id={pk}, status={updated.status.value}")
        return updated

    def replace(
        self,
        connection_id: int,
        temp_id: str,
        authoritative: MessageRecord,
    ) -> Optional[MessageRecord]:
        """
        Supersede the placeholder registered under ``temp_id``.

        The row keeps its primary key (and therefore its place in the log)
        and adopts the authoritative message_id, status and timestamp.
        Returns None when no placeholder is registered.
        """
        from chatsync.models import Message

        pk = self._temp_ids.get((connection_id, temp_id))
        if pk is None:
            logger.warning(f"No placeholder registered for temp id {temp_id}")
            return None
        with self._session_factory() as db:
            row = db.get(Message, pk)
            if row is None:
                self._forget_temp(connection_id, temp_id)
                return None
            if authoritative.message_id:
                row.message_id = authoritative.message_id
            row.status = authoritative.status.value
            row.timestamp = authoritative.timestamp
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            replaced = _to_record(row, temp_id=temp_id)
        self._forget_temp(connection_id, temp_id)
        logger.info(f"Placeholder {temp_id} replaced by message_id={replaced.message_id} (id={pk})")
        return replaced

    def get(self, pk: int) -> Optional[MessageRecord]:
        from chatsync.models import Message

        with self._session_factory() as db:
            row = db.get(Message, pk)
            return _to_record(row, temp_id=self.temp_id_for(pk)) if row else None

    def find_by_message_id(self, connection_id: int, message_id: str) -> Optional[MessageRecord]:
        from chatsync.models import Message

        with self._session_factory() as db:
            row = (
                db.query(Message)
                .filter(Message.connection_id == connection_id, Message.message_id == message_id)
                .first()
            )
            return _to_record(row, temp_id=self.temp_id_for(row.id)) if row else None

    def list_by_connection(self, connection_id: int, limit: Optional[int] = None) -> List[MessageRecord]:
        """
        Messages of one connection, oldest first.
        With ``limit`` only the most recent ``limit`` messages are returned.
        """
        from chatsync.models import Message

        with self._session_factory() as db:
            query = db.query(Message).filter(Message.connection_id == connection_id)
            if limit:
                rows = query.order_by(Message.timestamp.desc(), Message.id.desc()).limit(limit).all()
                rows.reverse()
            else:
                rows = query.order_by(Message.timestamp.asc(), Message.id.asc()).all()
            return [_to_record(row, temp_id=self.temp_id_for(row.id)) for row in rows]

    def list_by_conversation(self, connection_id: int, counterparty_number: str) -> List[MessageRecord]:
        """Messages of one conversation ordered by timestamp, then id."""
        from chatsync.models import Message

        with self._session_factory() as db:
            rows = (
                db.query(Message)
                .filter(
                    Message.connection_id == connection_id,
                    Message.counterparty_number == counterparty_number,
                )
                .order_by(Message.timestamp.asc(), Message.id.asc())
                .all()
            )
            return [_to_record(row, temp_id=self.temp_id_for(row.id)) for row in rows]

    def list_conversations(self, connection_id: int) -> List[Conversation]:
        """
        Project the connection's messages into conversations, most recent first.

        unread_count is the number of received messages newer than the
        latest sent message of that conversation.
        """
        conversations: Dict[str, Conversation] = {}
        last_sent: Dict[str, datetime] = {}
        messages = self.list_by_connection(connection_id)
        for message in messages:
            number = message.counterparty_number
            conversation = conversations.get(number)
            if conversation is None:
                conversation = Conversation(
                    connection_id=connection_id,
                    counterparty_number=number,
                    last_message=message.body,
                    last_message_time=message.timestamp,
                )
                conversations[number] = conversation
            conversation.message_count += 1
            conversation.last_message = message.body
            conversation.last_message_time = message.timestamp
            if message.direction == Direction.SENT:
                last_sent[number] = message.timestamp

        for message in messages:
            if message.direction != Direction.RECEIVED:
                continue
            cutoff = last_sent.get(message.counterparty_number)
            if cutoff is None or message.timestamp > cutoff:
                conversations[message.counterparty_number].unread_count += 1

        return sorted(conversations.values(), key=lambda c: c.last_message_time, reverse=True)

    # -------------------------------------------------------------------------
    # Connections
    # -------------------------------------------------------------------------

    def create_connection(
        self,
        name: str,
        description: Optional[str] = None,
        instance_name: Optional[str] = None,
        status: ConnectionStatus = ConnectionStatus.DISCONNECTED,
        phone_number: Optional[str] = None,
    ) -> ConnectionInfo:
        """
        Create a connection row.

        Raises:
            sqlalchemy.exc.IntegrityError: name or instance_name already used.
        """
        from chatsync.models import Connection

        logger.info(f"Creating connection: name={name}")
        with self._session_factory() as db:
            row = Connection(
                name=name,
                description=description,
                instance_name=instance_name,
                status=ConnectionStatus(status).value,
                phone_number=phone_number,
                created_at=utcnow(),
            )
            db.add(row)
            try:
                db.flush()
                if not row.instance_name:
                    row.instance_name = default_instance_name(row.id, row.name)
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            return _to_connection(row)

    def get_connection(self, connection_id: int) -> Optional[ConnectionInfo]:
        from chatsync.models import Connection

        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            return _to_connection(row) if row else None

    def get_connection_by_name(self, name: str) -> Optional[ConnectionInfo]:
        from chatsync.models import Connection

        with self._session_factory() as db:
            row = db.query(Connection).filter(Connection.name == name).first()
            return _to_connection(row) if row else None

    def get_connection_by_instance(self, instance_name: str) -> Optional[ConnectionInfo]:
        from chatsync.models import Connection

        with self._session_factory() as db:
            row = db.query(Connection).filter(Connection.instance_name == instance_name).first()
            return _to_connection(row) if row else None

    def list_connections(self, status: Optional[ConnectionStatus] = None) -> List[ConnectionInfo]:
        from chatsync.models import Connection

        with self._session_factory() as db:
            query = db.query(Connection)
            if status is not None:
                query = query.filter(Connection.status == ConnectionStatus(status).value)
            return [_to_connection(row) for row in query.order_by(Connection.id.asc()).all()]

    def update_connection(self, connection_id: int, **updates: Any) -> Optional[ConnectionInfo]:
        from chatsync.models import Connection

        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            if row is None:
                return None
            for key, value in updates.items():
                if key == "status":
                    value = ConnectionStatus(value).value
                setattr(row, key, value)
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
            db.refresh(row)
            logger.info(f"Connection updated: id={connection_id}, fields={sorted(updates)}")
            return _to_connection(row)

    def touch_connection(self, connection_id: int) -> None:
        self.update_connection(connection_id, last_activity=utcnow())

    def delete_connection(self, connection_id: int) -> bool:
        from chatsync.models import Connection

        with self._session_factory() as db:
            row = db.get(Connection, connection_id)
            if row is None:
                return False
            db.delete(row)
            db.commit()
        logger.info(f"Connection deleted: id={connection_id}")
        return True

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def get_stats(self) -> dict:
        """
        Dashboard statistics.

        Computes:
        - total_connections: count of all connections
        - active_connections: connections in 'connected' status
        - today_messages: messages with a timestamp since UTC midnight
        - last_activity: most recent connection activity (null if none)
        """
        from chatsync.models import Connection, Message

        logger.info("Computing dashboard statistics")
        midnight = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        with self._session_factory() as db:
            total_connections = db.query(func.count(Connection.id)).scalar() or 0
            active_connections = (
                db.query(func.count(Connection.id))
                .filter(Connection.status == ConnectionStatus.CONNECTED.value)
                .scalar()
                or 0
            )
            today_messages = (
                db.query(func.count(Message.id)).filter(Message.timestamp >= midnight).scalar() or 0
            )
            last_activity = db.query(func.max(Connection.last_activity)).scalar()

        return {
            "total_connections": total_connections,
            "active_connections": active_connections,
            "today_messages": today_messages,
            "last_activity": as_utc(last_activity) if last_activity else None,
        }
