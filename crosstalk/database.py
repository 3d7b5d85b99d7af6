"""
Collection persistence (SQLAlchemy async ORM).

Three tables: ``tracks`` (unique ``spotify_id``), ``chat_messages`` and the
single-row ``nucleus_metadata``.  ``added_at`` and ``timestamp`` are assigned
here at insert time and never updated.

Usage:
    db = CollectionDatabase("sqlite+aiosqlite:///crosstalk.db")
    await db.connect()
    track = await db.insert_track(new_track)
    await db.disconnect()
"""

from datetime import datetime, timezone
from typing import List, Optional

from loguru import logger
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    delete,
    func,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from .errors import DuplicateTrackError
from .models import ChatMessage, NewTrack, NucleusMetadata, Track

DEFAULT_NUCLEUS_NAME = "The Nucleus"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ---------------------------------------------------------------------------
# ORM models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


class TrackRow(Base):
    __tablename__ = "tracks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    spotify_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    spotify_url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    artist: Mapped[Optional[str]] = mapped_column(Text)
    lyrics: Mapped[Optional[str]] = mapped_column(Text)
    genius_url: Mapped[Optional[str]] = mapped_column(Text)
    has_audio_preview: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    emotion: Mapped[str] = mapped_column(String(16), nullable=False, index=True)
    valence: Mapped[Optional[float]] = mapped_column(Float)
    energy: Mapped[Optional[float]] = mapped_column(Float)
    tempo: Mapped[Optional[int]] = mapped_column(Integer)
    genre: Mapped[Optional[str]] = mapped_column(Text)
    mood_description: Mapped[Optional[str]] = mapped_column(Text)
    dominant_instruments: Mapped[Optional[str]] = mapped_column(Text)
    vocal_characteristics: Mapped[Optional[str]] = mapped_column(Text)
    duration: Mapped[Optional[int]] = mapped_column(Integer)
    thumbnail_url: Mapped[Optional[str]] = mapped_column(Text)
    preview_url: Mapped[Optional[str]] = mapped_column(Text)
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


class ChatMessageRow(Base):
    __tablename__ = "chat_messages"
    __table_args__ = (CheckConstraint("role IN ('user', 'assistant')", name="ck_chat_role"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    role: Mapped[str] = mapped_column(String(16), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)
    nucleus_name: Mapped[Optional[str]] = mapped_column(Text)
    emotion: Mapped[Optional[str]] = mapped_column(String(16), index=True)


class NucleusRow(Base):
    __tablename__ = "nucleus_metadata"
    __table_args__ = (CheckConstraint("id = 1", name="ck_nucleus_singleton"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False, default=DEFAULT_NUCLEUS_NAME)
    description: Mapped[Optional[str]] = mapped_column(Text)
    dominant_emotion: Mapped[Optional[str]] = mapped_column(String(16))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utc_now, nullable=False)


def _to_track(row: TrackRow) -> Track:
    track = Track.model_validate(row)
    track.added_at = ensure_utc(track.added_at)
    return track


def _to_message(row: ChatMessageRow) -> ChatMessage:
    message = ChatMessage.model_validate(row)
    message.timestamp = ensure_utc(message.timestamp)
    return message


def _to_nucleus(row: NucleusRow) -> NucleusMetadata:
    nucleus = NucleusMetadata.model_validate(row)
    nucleus.updated_at = ensure_utc(nucleus.updated_at)
    return nucleus


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

class CollectionDatabase:
    """Async access to the track collection, chat history and nucleus row."""

    def __init__(self, url: str):
        self.url = url
        engine_kwargs = {}
        if ":memory:" in url:
            # One shared connection, otherwise every session gets an empty database.
            engine_kwargs = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        self._engine = create_async_engine(url, **engine_kwargs)
        self._sessions = async_sessionmaker(self._engine, expire_on_commit=False, class_=AsyncSession)

    async def connect(self) -> None:
        """Create tables if needed and make sure the nucleus row exists."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        async with self._sessions() as session:
            if await session.get(NucleusRow, 1) is None:
                session.add(NucleusRow(id=1, name=DEFAULT_NUCLEUS_NAME))
                await session.commit()
        logger.info(f"Collection database ready ({self.url})")

    async def disconnect(self) -> None:
        await self._engine.dispose()

    # ------------------------------------------------------------------
    # Tracks
    # ------------------------------------------------------------------

    async def get_all_tracks(self) -> List[Track]:
        """All tracks, most recently added first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(TrackRow).order_by(TrackRow.added_at.desc(), TrackRow.id.desc())
            )
            return [_to_track(r) for r in result.scalars()]

    async def get_tracks_by_emotion(self, emotion: str) -> List[Track]:
        async with self._sessions() as session:
            result = await session.execute(
                select(TrackRow)
                .where(TrackRow.emotion == emotion)
                .order_by(TrackRow.added_at.desc(), TrackRow.id.desc())
            )
            return [_to_track(r) for r in result.scalars()]

    async def get_track(self, track_id: int) -> Optional[Track]:
        async with self._sessions() as session:
            row = await session.get(TrackRow, track_id)
            return _to_track(row) if row is not None else None

    async def get_track_by_spotify_id(self, spotify_id: str) -> Optional[Track]:
        async with self._sessions() as session:
            result = await session.execute(select(TrackRow).where(TrackRow.spotify_id == spotify_id))
            row = result.scalar_one_or_none()
            return _to_track(row) if row is not None else None

    async def count_tracks(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(select(func.count(TrackRow.id)))
            return int(result.scalar_one())

    async def insert_track(self, track: NewTrack) -> Track:
        """
        Insert a track and return the row as re-read by its new id.

        Raises:
            DuplicateTrackError: a track with the same ``spotify_id`` exists.
        """
        async with self._sessions() as session:
            row = TrackRow(**track.model_dump(), added_at=utc_now())
            session.add(row)
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise DuplicateTrackError(track.spotify_id) from exc
            new_id = row.id

        stored = await self.get_track(new_id)
        if stored is None:
            raise LookupError(f"Track {new_id} vanished after insert")
        return stored

    async def delete_track(self, track_id: int) -> bool:
        async with self._sessions() as session:
            result = await session.execute(delete(TrackRow).where(TrackRow.id == track_id))
            await session.commit()
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    async def add_messages(self, messages: List[dict]) -> List[ChatMessage]:
        """
        Persist several messages in one transaction, in order.

        Each dict carries ``role``, ``content`` and optionally ``nucleus_name``
        and ``emotion``.
        """
        async with self._sessions() as session:
            rows = [ChatMessageRow(**m, timestamp=utc_now()) for m in messages]
            for row in rows:
                session.add(row)
                await session.flush()
            await session.commit()
            return [_to_message(r) for r in rows]

    async def get_messages(self, emotion: Optional[str] = None) -> List[ChatMessage]:
        """Messages of one channel (``None`` = global nucleus chat), oldest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ChatMessageRow)
                .where(ChatMessageRow.emotion.is_(None) if emotion is None else ChatMessageRow.emotion == emotion)
                .order_by(ChatMessageRow.timestamp.asc(), ChatMessageRow.id.asc())
            )
            return [_to_message(r) for r in result.scalars()]

    async def get_recent_messages(self, limit: int, emotion: Optional[str] = None) -> List[ChatMessage]:
        """The ``limit`` newest messages of one channel, returned oldest first."""
        async with self._sessions() as session:
            result = await session.execute(
                select(ChatMessageRow)
                .where(ChatMessageRow.emotion.is_(None) if emotion is None else ChatMessageRow.emotion == emotion)
                .order_by(ChatMessageRow.timestamp.desc(), ChatMessageRow.id.desc())
                .limit(limit)
            )
            rows = list(result.scalars())
        rows.reverse()
        return [_to_message(r) for r in rows]

    async def clear_messages(self, emotion: Optional[str] = None, all_channels: bool = False) -> int:
        async with self._sessions() as session:
            stmt = delete(ChatMessageRow)
            if not all_channels:
                stmt = stmt.where(
                    ChatMessageRow.emotion.is_(None) if emotion is None else ChatMessageRow.emotion == emotion
                )
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    # ------------------------------------------------------------------
    # Nucleus
    # ------------------------------------------------------------------

    async def get_nucleus(self) -> NucleusMetadata:
        async with self._sessions() as session:
            row = await session.get(NucleusRow, 1)
            if row is None:
                row = NucleusRow(id=1, name=DEFAULT_NUCLEUS_NAME)
                session.add(row)
                await session.commit()
            return _to_nucleus(row)

    async def update_nucleus(
        self,
        name: Optional[str] = None,
        description: Optional[str] = None,
        dominant_emotion: Optional[str] = None,
    ) -> NucleusMetadata:
        """Mutate the singleton row in place; ``None`` leaves a field unchanged."""
        async with self._sessions() as session:
            row = await session.get(NucleusRow, 1)
            if row is None:
                row = NucleusRow(id=1, name=DEFAULT_NUCLEUS_NAME)
                session.add(row)
            if name is not None:
                row.name = name
            if description is not None:
                row.description = description
            if dominant_emotion is not None:
                row.dominant_emotion = dominant_emotion
            row.updated_at = utc_now()
            await session.commit()
            return _to_nucleus(row)
