from __future__ import annotations

"""Role-based permissions for chat and stream routes."""
from enum import Enum
from typing import Set, Callable
from fastapi import Depends, HTTPException, status

from .auth import User, get_current_user


class Permission(str, Enum):
    CHAT_READ = "chat:read"
    CHAT_WRITE = "chat:write"
    STREAM_READ = "stream:read"
    STREAM_WRITE = "stream:write"
    ADMIN = "admin:*"


ROLE_PERMISSIONS = {
    "viewer": {Permission.CHAT_READ, Permission.STREAM_READ},
    "member": {Permission.CHAT_READ, Permission.CHAT_WRITE, Permission.STREAM_READ, Permission.STREAM_WRITE},
    "admin": {Permission.ADMIN},
}


def _user_permissions(user: User) -> Set[Permission]:
    perms: Set[Permission] = set()
    for role in user.roles:
        perms |= ROLE_PERMISSIONS.get(role, set())
    return perms


def is_authorized(user: User, required: Permission) -> bool:
    perms = _user_permissions(user)
    if Permission.ADMIN in perms:
        return True
    return required in perms


def require_permission(required: Permission) -> Callable[[User], User]:
    """FastAPI dependency to enforce a single permission on a route."""

    def dependency(user: User = Depends(get_current_user)) -> User:
        if not is_authorized(user, required):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Insufficient permissions")
        return user

    return dependency
