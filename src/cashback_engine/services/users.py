"""User service layer."""

from __future__ import annotations

import secrets

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models import User

MAX_CODE_ATTEMPTS = 10


def _generate_referral_code() -> str:
    return secrets.token_hex(4).upper()


class UserService:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def register(self, *, name: str, email: str, referral_code: str | None = None) -> User:
        user = User(
            name=name,
            email=email.strip().lower(),
            referral_code=await self._unique_referral_code(),
        )
        self.session.add(user)
        await self.session.flush()
        if referral_code:
            await self._bind_referral(user, referral_code)
        return user

    async def get_by_referral_code(self, code: str) -> User | None:
        stmt = select(User).where(User.referral_code == code.strip().upper())
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _unique_referral_code(self) -> str:
        for _ in range(MAX_CODE_ATTEMPTS):
            code = _generate_referral_code()
            if await self.get_by_referral_code(code) is None:
                return code
        return secrets.token_hex(6).upper()

    async def _bind_referral(self, user: User, code: str) -> None:
        if code.strip().upper() == user.referral_code:
            return
        referrer = await self.get_by_referral_code(code)
        if not referrer:
            return
        user.referred_by_id = referrer.id
        await self.session.execute(
            update(User)
            .where(User.id == referrer.id)
            .values(referrals_count=User.referrals_count + 1)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()


__all__ = ["UserService"]
