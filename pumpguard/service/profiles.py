from __future__ import annotations

from typing import Any, Dict, Optional, Protocol

from pumpguard.service.identity import IdentityProvider
from pumpguard.service.retry import RetryableCall
from pumpguard.storage.models import ProviderSession, UserProfile


class ProfileStore(Protocol):
    """Profile rows keyed by the identity provider's user id."""

    async def read_profile(self, user_id: str) -> Dict[str, Any]: ...

    async def write_profile(self, user_id: str, partial: Dict[str, Any]) -> None: ...


class ProfileLoader:
    """Fetches a profile row and joins it with the provider's email."""

    def __init__(
        self,
        profiles: ProfileStore,
        identity: IdentityProvider,
        retry: RetryableCall,
    ) -> None:
        self.profiles = profiles
        self.identity = identity
        self.retry = retry

    async def load(self, user_id: str, *, session: Optional[ProviderSession] = None) -> UserProfile:
        row = await self.retry.call(lambda: self.profiles.read_profile(user_id))
        email = session.email if session else None
        if not email:
            ambient = await self.identity.get_ambient_session()
            if ambient and ambient.user_id == user_id:
                email = ambient.email
        return UserProfile.from_row(row, email=email)

    async def write(self, user_id: str, partial: Dict[str, Any]) -> None:
        await self.retry.call(lambda: self.profiles.write_profile(user_id, partial))


__all__ = ["ProfileLoader", "ProfileStore"]
