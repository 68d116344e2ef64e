"""
Database models and operations for the key directory.

Uses SQLAlchemy with SQLite for storing published public keys and wrapped
group keys. Messages are NOT stored on the server - only relayed.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional
from sqlalchemy import Column, Integer, String, DateTime, Text, delete, select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PublicKey(Base):
    """Current key-agreement public key of a user"""
    __tablename__ = "public_keys"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(50), unique=True, index=True, nullable=False)
    public_key = Column(String(128), nullable=False)  # X25519 public key (base64)
    version = Column(Integer, nullable=False, default=1)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)


class GroupKey(Base):
    """One member's wrapped copy of a group key"""
    __tablename__ = "group_keys"

    id = Column(Integer, primary_key=True, index=True)
    group_id = Column(String(100), index=True, nullable=False)
    member_id = Column(String(50), index=True, nullable=False)
    wrapped_key = Column(Text, nullable=False)  # base64 envelope
    version = Column(Integer, nullable=False, default=1)


class Database:
    """Database manager for async operations"""

    def __init__(self, database_url: str = "sqlite+aiosqlite:///./chat.db"):
        """
        Initialize database connection.

        Args:
            database_url: SQLAlchemy database URL
        """
        self.engine = create_async_engine(database_url, echo=False)
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        """Create all tables"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def put_public_key(self, user_id: str, public_key: str) -> PublicKey:
        """
        Store or replace a user's public key.

        Publishing a different key bumps the version; republishing the same
        key keeps it.

        Returns:
            The stored row
        """
        async with self.async_session() as session:
            result = await session.execute(select(PublicKey).where(PublicKey.user_id == user_id))
            row = result.scalar_one_or_none()

            if row is None:
                row = PublicKey(user_id=user_id, public_key=public_key, version=1)
                session.add(row)
            elif row.public_key != public_key:
                row.public_key = public_key
                row.version += 1
                row.updated_at = _utcnow()

            await session.commit()
            await session.refresh(row)
            return row

    async def get_public_key(self, user_id: str) -> Optional[PublicKey]:
        async with self.async_session() as session:
            result = await session.execute(select(PublicKey).where(PublicKey.user_id == user_id))
            return result.scalar_one_or_none()

    async def put_group_keys(self, group_id: str, version: int, wrapped: Dict[str, str]):
        """
        Replace every wrapped copy of a group key.

        Members missing from the new set lose their copy, which is how a
        removed member is cut off.
        """
        async with self.async_session() as session:
            await session.execute(delete(GroupKey).where(GroupKey.group_id == group_id))
            for member_id, wrapped_key in wrapped.items():
                session.add(GroupKey(
                    group_id=group_id,
                    member_id=member_id,
                    wrapped_key=wrapped_key,
                    version=version
                ))
            await session.commit()

    async def get_group_key(self, group_id: str, member_id: str) -> Optional[GroupKey]:
        async with self.async_session() as session:
            result = await session.execute(
                select(GroupKey).where(GroupKey.group_id == group_id, GroupKey.member_id == member_id)
            )
            return result.scalar_one_or_none()

    async def group_members(self, group_id: str) -> List[str]:
        async with self.async_session() as session:
            result = await session.execute(select(GroupKey.member_id).where(GroupKey.group_id == group_id))
            return [row[0] for row in result.all()]
