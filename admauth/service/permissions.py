from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Optional

from admauth.logging import get_logger
from admauth.storage.models import Rank

logger = get_logger(__name__)


class Permission(str, Enum):
    # Developer only
    MANAGE_DEVELOPERS = "MANAGE_DEVELOPERS"
    SYSTEM_ADMIN = "SYSTEM_ADMIN"
    VIEW_ERROR_LOGS = "VIEW_ERROR_LOGS"

    # Session and security management
    VIEW_ALL_SESSIONS = "VIEW_ALL_SESSIONS"
    MANAGE_USER_SESSIONS = "MANAGE_USER_SESSIONS"
    VIEW_LOGIN_HISTORY = "VIEW_LOGIN_HISTORY"
    FORCE_LOGOUT_USERS = "FORCE_LOGOUT_USERS"
    CONFIGURE_SESSION_TIMEOUT = "CONFIGURE_SESSION_TIMEOUT"

    DELETE_ITEMS = "DELETE_ITEMS"
    DELETE_USERS = "DELETE_USERS"
    DELETE_FAQ = "DELETE_FAQ"
    MANAGE_SETTINGS = "MANAGE_SETTINGS"

    EDIT_ITEMS = "EDIT_ITEMS"
    EDIT_USERS = "EDIT_USERS"
    EDIT_FAQ = "EDIT_FAQ"
    ADD_ITEMS = "ADD_ITEMS"
    ADD_USERS = "ADD_USERS"
    ADD_FAQ = "ADD_FAQ"

    VIEW_ITEMS = "VIEW_ITEMS"
    VIEW_USERS = "VIEW_USERS"
    VIEW_FAQ = "VIEW_FAQ"
    VIEW_DASHBOARD = "VIEW_DASHBOARD"


_DEVELOPER_ONLY = frozenset(
    {Permission.MANAGE_DEVELOPERS, Permission.SYSTEM_ADMIN, Permission.VIEW_ERROR_LOGS}
)

# Each rank's capability set is authored explicitly; seniority does not imply
# inheritance.
RANK_PERMISSIONS: Dict[Rank, FrozenSet[Permission]] = {
    Rank.DEVELOPER: frozenset(Permission),
    Rank.ADMIN: frozenset(Permission) - _DEVELOPER_ONLY,
    Rank.MODERATOR: frozenset(
        {
            Permission.EDIT_ITEMS,
            Permission.EDIT_FAQ,
            Permission.ADD_ITEMS,
            Permission.ADD_FAQ,
            Permission.VIEW_ITEMS,
            Permission.VIEW_USERS,
            Permission.VIEW_FAQ,
            Permission.VIEW_DASHBOARD,
        }
    ),
    Rank.WERKNEMER: frozenset(
        {
            Permission.VIEW_ITEMS,
            Permission.VIEW_USERS,
            Permission.VIEW_FAQ,
            Permission.VIEW_DASHBOARD,
        }
    ),
}

# Ranks whose accounts (and their sessions/history) a rank may list.
# Inclusive of the rank itself, never senior to it.
VISIBLE_RANKS: Dict[Rank, FrozenSet[Rank]] = {
    Rank.DEVELOPER: frozenset({Rank.DEVELOPER, Rank.ADMIN, Rank.MODERATOR, Rank.WERKNEMER}),
    Rank.ADMIN: frozenset({Rank.ADMIN, Rank.MODERATOR, Rank.WERKNEMER}),
    Rank.MODERATOR: frozenset({Rank.MODERATOR, Rank.WERKNEMER}),
    Rank.WERKNEMER: frozenset({Rank.WERKNEMER}),
}

# Ranks a rank may hand out when creating or editing accounts
ASSIGNABLE_RANKS: Dict[Rank, FrozenSet[Rank]] = {
    Rank.DEVELOPER: frozenset(Rank),
    Rank.ADMIN: frozenset({Rank.MODERATOR, Rank.WERKNEMER}),
    Rank.MODERATOR: frozenset(),
    Rank.WERKNEMER: frozenset(),
}

SIMULATION_RANK = Rank.DEVELOPER


def ordered(ranks) -> list[Rank]:
    """Senior-first ordering for presentation."""
    return sorted(ranks, key=lambda r: r.level, reverse=True)


class AuthorizationResolver:
    """Rank → capability and rank → visibility lookups.

    Permission checks must always be given the actor's *actual* rank. The
    effective (possibly simulated) rank only narrows what read endpoints
    list.
    """

    def __init__(self, simulation_header: str = "x-simulated-rank") -> None:
        self.simulation_header = simulation_header.lower()

    def has_permission(self, rank: Rank, permission: Permission) -> bool:
        return permission in RANK_PERMISSIONS.get(rank, frozenset())

    def permissions(self, rank: Rank) -> FrozenSet[Permission]:
        return RANK_PERMISSIONS.get(rank, frozenset())

    def can_manage_user(self, actor_rank: Rank, target_rank: Rank) -> bool:
        return actor_rank.outranks(target_rank)

    def visible_ranks(self, effective_rank: Rank) -> FrozenSet[Rank]:
        return VISIBLE_RANKS.get(effective_rank, frozenset())

    def assignable_ranks(self, rank: Rank) -> FrozenSet[Rank]:
        return ASSIGNABLE_RANKS.get(rank, frozenset())

    def can_simulate(self, actual_rank: Rank) -> bool:
        return actual_rank is SIMULATION_RANK

    def simulated_rank(self, actual_rank: Rank, header_value: Optional[str]) -> Optional[Rank]:
        """Return the requested simulated rank when the actor may simulate.

        Unknown labels are ignored rather than rejected so a stale client
        header never locks a developer out of the console.
        """
        if not header_value or not self.can_simulate(actual_rank):
            return None
        try:
            return Rank.parse(header_value)
        except ValueError:
            logger.warning("simulated_rank_ignored", header_value=header_value[:32])
            return None

    def effective_rank(self, actual_rank: Rank, header_value: Optional[str]) -> Rank:
        return self.simulated_rank(actual_rank, header_value) or actual_rank
