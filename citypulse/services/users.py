import logging
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from citypulse.auth import Actor
from citypulse.database import models
from citypulse.database.config import utcnow
from citypulse.errors import Conflict, NotFound
from citypulse.schemas import UserCreate, UserRole, UserUpdate

logger = logging.getLogger(__name__)


class UserDirectory:
    """Lookup and creation of users. Credentials are handled upstream."""

    async def get(self, session: AsyncSession, user_id: str) -> models.User:
        user = await session.get(models.User, user_id)
        if not user:
            raise NotFound("User not found")
        return user

    async def resolve_actor(self, session: AsyncSession, user_id: Optional[str]) -> Optional[Actor]:
        if not user_id:
            return None
        user = await session.get(models.User, user_id)
        if not user:
            return None
        return Actor(id=user.id, role=UserRole(user.role))

    async def create(self, session: AsyncSession, payload: UserCreate) -> models.User:
        now = utcnow()
        user = models.User(
            id=str(uuid.uuid4()),
            name=payload.name,
            email=payload.email.strip().lower(),
            role=payload.role,
            phone=payload.phone,
            address=payload.address,
            avg_rating=0.0,
            feedback_count=0,
            created_at=now,
            updated_at=now,
        )
        session.add(user)
        try:
            await session.flush()
        except IntegrityError:
            raise Conflict("A user with this email already exists")
        logger.info("User created", extra={"user_id": user.id, "role": user.role.value})
        return user

    async def officers(self, session: AsyncSession) -> list[models.User]:
        result = await session.execute(
            select(models.User)
            .where(models.User.role == UserRole.OFFICER)
            .order_by(models.User.avg_rating.desc(), models.User.name)
        )
        return list(result.scalars().all())

    async def update(self, session: AsyncSession, user_id: str, payload: UserUpdate) -> models.User:
        """Apply the fields the caller sent; role and rating aggregates are not editable here."""
        user = await self.get(session, user_id)
        changes = payload.model_dump(exclude_unset=True)

        if changes.get("name") is not None:
            user.name = changes["name"].strip()
        if changes.get("email") is not None:
            user.email = changes["email"].strip().lower()
        if "phone" in changes:
            user.phone = changes["phone"]
        if "address" in changes:
            user.address = changes["address"]
        if "profile_image" in changes:
            user.profile_image = changes["profile_image"]
        user.updated_at = utcnow()

        try:
            await session.flush()
        except IntegrityError:
            raise Conflict("A user with this email already exists")
        logger.info("User profile updated", extra={"user_id": user.id, "fields": sorted(changes)})
        return user
