from __future__ import annotations

from typing import List, Optional

from admauth.logging import get_logger
from admauth.service.errors import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from admauth.service.passwords import PasswordManager, password_strength_errors
from admauth.service.permissions import AuthorizationResolver
from admauth.service.sessions import SessionRegistry
from admauth.storage.errors import ConstraintViolation
from admauth.storage.models import Account, Rank

logger = get_logger(__name__)


class AccountService:
    """Account administration governed by the rank hierarchy.

    An actor manages only strictly junior accounts and hands out only the
    ranks it may assign. The very first account is created without an actor
    and always becomes a Developer.
    """

    def __init__(
        self,
        store,
        passwords: PasswordManager,
        resolver: AuthorizationResolver,
        sessions: SessionRegistry,
    ) -> None:
        self.store = store
        self.passwords = passwords
        self.resolver = resolver
        self.sessions = sessions

    def _parse_rank(self, value) -> Rank:
        try:
            return Rank.parse(value)
        except ValueError as exc:
            raise BadRequestError("Invalid rank", detail={"rank": str(value)}) from exc

    def _check_password(self, password: str) -> None:
        errors = password_strength_errors(password or "")
        if errors:
            raise ValidationError("; ".join(errors), detail={"errors": errors})

    def _require(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("User not found")
        return account

    def needs_bootstrap(self) -> bool:
        return self.store.count_accounts() == 0

    def list_visible(self, effective_rank: Rank) -> List[Account]:
        accounts = self.store.list_accounts(ranks=self.resolver.visible_ranks(effective_rank))
        return sorted(accounts, key=lambda a: (-a.rank.level, a.name.lower()))

    def get_visible(self, effective_rank: Rank, account_id: str) -> Account:
        account = self._require(account_id)
        if account.rank not in self.resolver.visible_ranks(effective_rank):
            raise NotFoundError("User not found")
        return account

    def create(
        self,
        actor: Optional[Account],
        *,
        name: str,
        email: str,
        password: str,
        rank=None,
    ) -> Account:
        name = (name or "").strip()
        if not name or not (email or "").strip():
            raise BadRequestError("Name and email are required")
        self._check_password(password)
        if actor is None:
            if not self.needs_bootstrap():
                raise ForbiddenError("Authentication required to create accounts")
            target_rank = Rank.DEVELOPER
        else:
            target_rank = self._parse_rank(rank) if rank is not None else Rank.WERKNEMER
            if target_rank not in self.resolver.assignable_ranks(actor.rank):
                raise ForbiddenError(
                    "Cannot assign this rank", detail={"rank": target_rank.value}
                )
        try:
            account = self.store.create_account(
                name, email, self.passwords.hash(password), target_rank
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already in use", detail=exc.detail) from exc
        logger.info(
            "account_created",
            user_id=account.id,
            rank=account.rank.value,
            actor_id=actor.id if actor else None,
        )
        return account

    async def update(
        self,
        actor: Account,
        account_id: str,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
        rank=None,
        password: Optional[str] = None,
    ) -> Account:
        target = self._require(account_id)
        is_self = target.id == actor.id
        if not is_self and not self.resolver.can_manage_user(actor.rank, target.rank):
            raise ForbiddenError("Cannot manage a user of equal or higher rank")
        new_rank = None
        if rank is not None:
            new_rank = self._parse_rank(rank)
            if new_rank != target.rank:
                if is_self:
                    raise ForbiddenError("Cannot change your own rank")
                if new_rank not in self.resolver.assignable_ranks(actor.rank):
                    raise ForbiddenError(
                        "Cannot assign this rank", detail={"rank": new_rank.value}
                    )
        password_hash = None
        if password is not None:
            self._check_password(password)
            password_hash = self.passwords.hash(password)
        try:
            updated = self.store.update_account(
                target.id,
                name=name.strip() if name else None,
                email=email,
                rank=new_rank,
                password_hash=password_hash,
            )
        except ConstraintViolation as exc:
            raise ConflictError("Email already in use", detail=exc.detail) from exc
        if updated is None:
            raise NotFoundError("User not found")
        if password_hash is not None and not is_self:
            await self.sessions.invalidate_user(target.id, reason="force_logout")
        logger.info("account_updated", user_id=target.id, actor_id=actor.id)
        return updated

    async def delete(self, actor: Account, account_id: str) -> None:
        if account_id == actor.id:
            raise BadRequestError("Cannot delete your own account")
        target = self._require(account_id)
        if not self.resolver.can_manage_user(actor.rank, target.rank):
            raise ForbiddenError("Cannot manage a user of equal or higher rank")
        await self.sessions.invalidate_user(target.id, reason="force_logout")
        self.store.delete_account(target.id)
        logger.info("account_deleted", user_id=target.id, actor_id=actor.id)
