"""Actor identities and bearer-token resolution."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Mapping, Protocol

logger = logging.getLogger(__name__)


class Role(str, Enum):
    """Supported roles."""

    CUSTOMER = "customer"
    AGENT = "agent"


class User:
    """Simple representation of an authenticated user."""

    def __init__(self, id: str, roles: tuple[Role, ...], email: str | None = None):
        self.id = id
        self.roles = roles
        self.email = email

    def has_role(self, role: Role) -> bool:
        return role in self.roles

    @property
    def is_agent(self) -> bool:
        return self.has_role(Role.AGENT)

    @property
    def is_customer(self) -> bool:
        return self.has_role(Role.CUSTOMER) and not self.is_agent

    @property
    def primary_role(self) -> Role:
        return Role.AGENT if self.is_agent else Role.CUSTOMER

    def __repr__(self) -> str:
        return f"User(id={self.id!r}, roles={[role.value for role in self.roles]!r})"


class InvalidCredentialsError(PermissionError):
    """Raised when a bearer token does not map to a known user."""


class IdentityResolver(Protocol):
    def resolve(self, token: str | None) -> User | None:
        ...


class StaticTokenResolver:
    """Resolve bearer tokens against a fixed ``token -> "role:user_id"`` table.

    Token issuance lives outside this service; deployments hand the table in
    through settings.
    """

    def __init__(self, tokens: Mapping[str, str]) -> None:
        self._users: dict[str, User] = {}
        for token, entry in tokens.items():
            role_name, _, user_id = entry.partition(":")
            if not user_id:
                raise ValueError(f"Token entry for {role_name!r} is missing a user id")
            self._users[token] = User(user_id, (Role(role_name.strip().lower()),))

    def resolve(self, token: str | None) -> User | None:
        """Return the user behind ``token``; ``None`` means an anonymous request."""

        if token is None:
            return None
        user = self._users.get(token)
        if user is None:
            logger.info("Rejected unknown bearer token")
            raise InvalidCredentialsError("Invalid authentication credentials")
        return user
