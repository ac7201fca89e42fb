import uuid

from sqlalchemy.exc import IntegrityError
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.exceptions import ConflictError, NotFoundError
from app.models import User, UserCreate


class UserService:
    @staticmethod
    async def create_user(user_data: UserCreate, db: AsyncSession):
        email = user_data.email.lower()
        existing = await db.exec(select(User).where(User.email == email))
        if existing.first():
            raise ConflictError(f"User with email {email} already exists")

        user = User(email=email, name=user_data.name)
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Lost a race with a concurrent registration
            await db.rollback()
            raise ConflictError(f"User with email {email} already exists")
        await db.refresh(user)
        return user

    @staticmethod
    async def get_user(user_id: uuid.UUID, db: AsyncSession):
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError(f"User with ID {user_id} not found")
        return user
