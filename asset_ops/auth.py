"""Users, privilege tiers and authorization results."""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, List, Optional

VIEWER = "viewer"          # read-only
EDITOR = "editor"          # read-write
SUPERADMIN = "superadmin"  # administrator

ROLES = (VIEWER, EDITOR, SUPERADMIN)

# The built-in administrator account cannot be deleted or demoted
PROTECTED_USERNAME = "admin"


class AuthenticationError(Exception):
    """Raised when a username/password pair does not match any user."""


@dataclass
class User:
    username: str
    password: str
    role: str = VIEWER

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "User":
        role = data.get("role", VIEWER)
        return cls(
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
            role=role if role in ROLES else VIEWER,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def can_edit(self) -> bool:
        return self.role in (EDITOR, SUPERADMIN)

    @property
    def can_manage(self) -> bool:
        return self.role == SUPERADMIN


DEFAULT_USERS = (
    User("admin", "password", SUPERADMIN),
    User("staff", "123", EDITOR),
    User("guest", "guest", VIEWER),
)


@dataclass(frozen=True)
class AuthorizationResult:
    granted: bool
    reason: str = ""
    # "forbidden" for privilege denials, "invalid" for rejected input
    kind: str = "forbidden"

    def __bool__(self) -> bool:
        return self.granted

    def to_dict(self) -> Dict[str, Any]:
        return {"granted": self.granted, "reason": self.reason, "kind": self.kind}


GRANTED = AuthorizationResult(True)


def denied(reason: str) -> AuthorizationResult:
    return AuthorizationResult(False, reason)


def invalid(reason: str) -> AuthorizationResult:
    return AuthorizationResult(False, reason, kind="invalid")


def require_editor(actor: Optional[User]) -> AuthorizationResult:
    if actor is None:
        return denied("Not logged in.")
    if not actor.can_edit:
        return denied(f"Role '{actor.role}' cannot modify records.")
    return GRANTED


def require_admin(actor: Optional[User]) -> AuthorizationResult:
    if actor is None:
        return denied("Not logged in.")
    if not actor.can_manage:
        return denied(f"Role '{actor.role}' cannot change configuration or users.")
    return GRANTED


class UserDirectory:
    """Plaintext user list; mutations require an administrator."""

    def __init__(self, users: Optional[Iterable[User]] = None, on_change=None) -> None:
        source = DEFAULT_USERS if users is None else users
        self.users: List[User] = [User(u.username, u.password, u.role) for u in source]
        self.on_change = on_change

    def _changed(self) -> None:
        if self.on_change:
            self.on_change(self.to_list())

    def load(self, raw_users: Iterable[Dict[str, Any]]) -> None:
        self.users = [User.from_dict(u) for u in raw_users]

    def to_list(self) -> List[Dict[str, Any]]:
        return [u.to_dict() for u in self.users]

    def find(self, username: str) -> Optional[User]:
        for user in self.users:
            if user.username == username:
                return user
        return None

    def authenticate(self, username: str, password: str) -> User:
        wanted = (username or "").lower()
        for user in self.users:
            if user.username.lower() == wanted and user.password == password:
                return user
        raise AuthenticationError("Invalid credentials.")

    def create_user(self, actor: Optional[User], username: str, password: str, role: str = VIEWER) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        username = (username or "").strip()
        if not username:
            return invalid("Username required.")
        if role not in ROLES:
            return invalid(f"Unknown role '{role}'.")
        if self.find(username):
            return invalid("Username already exists")
        self.users.append(User(username, password, role))
        self._changed()
        return GRANTED

    def delete_user(self, actor: Optional[User], username: str) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        if username == PROTECTED_USERNAME:
            return denied("Cannot delete Super Admin.")
        remaining = [u for u in self.users if u.username != username]
        if len(remaining) == len(self.users):
            return invalid(f"Unknown user '{username}'.")
        self.users = remaining
        self._changed()
        return GRANTED

    def update_role(self, actor: Optional[User], username: str, new_role: str) -> AuthorizationResult:
        check = require_admin(actor)
        if not check:
            return check
        if new_role not in ROLES:
            return invalid(f"Unknown role '{new_role}'.")
        if username == PROTECTED_USERNAME and new_role != SUPERADMIN:
            return denied("Cannot demote Super Admin.")
        user = self.find(username)
        if not user:
            return invalid(f"Unknown user '{username}'.")
        user.role = new_role
        self._changed()
        return GRANTED
