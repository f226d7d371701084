# calsync/infrastructure/accounts_repo.py
from typing import Optional, List
from sqlmodel.ext.asyncio.session import AsyncSession
from sqlmodel import select
from calsync.models.account import Account, STATUS_CONNECTED
from datetime import datetime


class AccountsRepository:
    """
    Repository for Account records, keyed by (uid, provider).
    All methods are async and expect an AsyncSession to be injected from the outside.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, uid: str, provider: str) -> Optional[Account]:
        q = select(Account).where(Account.uid == uid, Account.provider == provider)
        res = await self.session.execute(q)
        return res.scalars().one_or_none()

    async def list_connected(self, provider: str) -> List[Account]:
        q = select(Account).where(
            Account.provider == provider,
            Account.connection_status == STATUS_CONNECTED,
        )
        res = await self.session.execute(q)
        return list(res.scalars().all())

    async def save(self, account: Account) -> Account:
        """
        Persist a new or mutated Account and return the refreshed instance.
        """
        account.updated_at = datetime.utcnow()
        self.session.add(account)
        await self.session.commit()
        await self.session.refresh(account)
        return account

    async def update_tokens(
        self,
        account: Account,
        access_token_enc: Optional[str],
        refresh_token_enc: Optional[str],
        expires_at: Optional[datetime],
        scope: Optional[str] = None,
    ) -> Account:
        """
        Overwrite token fields. A None refresh token keeps the stored one,
        since providers usually omit it on refresh.
        """
        account.encrypted_access_token = access_token_enc
        if refresh_token_enc is not None:
            account.encrypted_refresh_token = refresh_token_enc
        account.expires_at = expires_at
        if scope is not None:
            account.scope = scope
        return await self.save(account)

    async def set_status(self, account: Account, status: str, last_error: Optional[str] = None) -> Account:
        account.connection_status = status
        if last_error is not None:
            account.last_error = last_error
        return await self.save(account)

    async def record_sync_success(self, account: Account, now: datetime) -> Account:
        account.last_sync_at = now
        account.last_error = None
        account.consecutive_errors = 0
        account.backoff_until = None
        return await self.save(account)

    async def record_sync_failure(
        self,
        account: Account,
        error: str,
        backoff_until: Optional[datetime],
        status: Optional[str] = None,
    ) -> Account:
        account.last_error = error
        account.consecutive_errors = (account.consecutive_errors or 0) + 1
        account.backoff_until = backoff_until
        if status is not None:
            account.connection_status = status
        return await self.save(account)

    async def delete(self, account: Account) -> None:
        await self.session.delete(account)
        await self.session.commit()
