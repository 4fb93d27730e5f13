from __future__ import annotations

from dataclasses import dataclass, field
from functools import wraps
from typing import Any, Dict, FrozenSet, Optional

from flask import current_app, jsonify, session
from werkzeug.security import check_password_hash

SADMIN = "SADMIN"
ADMIN = "ADMIN"
USER = "USER"
PUBLIC = "PUBLIC"

ROLES = (SADMIN, ADMIN, USER, PUBLIC)
ADMIN_ROLES = (SADMIN, ADMIN)


def _codes(value: Any) -> FrozenSet[str]:
    """Assignment codes from users.json; a single code may be given as a plain string."""
    if value is None:
        return frozenset()
    if isinstance(value, str):
        value = [value]
    return frozenset(str(c).strip() for c in value if str(c).strip())


@dataclass(frozen=True)
class CallerIdentity:
    username: str
    role: str
    departments: FrozenSet[str] = field(default_factory=frozenset)
    cells: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def public(cls) -> "CallerIdentity":
        return cls(username="", role=PUBLIC)

    @classmethod
    def from_user(cls, u: Dict[str, Any]) -> "CallerIdentity":
        role = str(u.get("role") or USER).strip().upper()
        if role not in ROLES or role == PUBLIC:
            # Unknown roles get the most restricted authenticated scope.
            role = USER
        return cls(
            username=str(u.get("username") or ""),
            role=role,
            departments=_codes(u.get("departments")),
            cells=_codes(u.get("cells")),
        )

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    @property
    def has_assignments(self) -> bool:
        return bool(self.departments or self.cells)


def _users() -> list:
    store = current_app.extensions["tabulation"].store
    users = store.load_json("users.json", default=[])
    return users if isinstance(users, list) else []


def get_user(username: str) -> Optional[Dict[str, Any]]:
    for u in _users():
        if u.get("username") == username:
            return u
    return None


def authenticate(username: str, password: str) -> Optional[Dict[str, Any]]:
    u = get_user(username)
    if not u or not u.get("is_active", True):
        return None
    if check_password_hash(u.get("password_hash", ""), password):
        return u
    return None


def current_identity() -> CallerIdentity:
    """Identity of the session user; anonymous callers are PUBLIC."""
    username = session.get("username")
    if not username:
        return CallerIdentity.public()
    u = get_user(username)
    if not u or not u.get("is_active", True):
        session.clear()
        return CallerIdentity.public()
    return CallerIdentity.from_user(u)


def _deny(message: str, status: int):
    return jsonify({"success": False, "error": "forbidden", "message": message}), status


def login_required(view):
    @wraps(view)
    def wrapped(*args, **kwargs):
        if current_identity().role == PUBLIC:
            return _deny("Authentification requise.", 401)
        return view(*args, **kwargs)
    return wrapped


def role_required(*roles):
    def decorator(view):
        @wraps(view)
        def wrapped(*args, **kwargs):
            ident = current_identity()
            if ident.role == PUBLIC:
                return _deny("Authentification requise.", 401)
            if ident.role not in roles:
                return _deny("Accès refusé.", 403)
            return view(*args, **kwargs)
        return wrapped
    return decorator
