from __future__ import annotations

from typing import Dict, List, Optional

from src.chatrelay.security.auth import User, create_access_token


def auth_headers(user_id: str = "user-1", *, roles: Optional[List[str]] = None, email: Optional[str] = None) -> Dict[str, str]:
    """Bearer headers for a token minted with the test secret."""
    user = User(id=user_id, email=email or f"{user_id}@example.com", name=user_id, roles=roles or ["member"])
    return {"Authorization": f"Bearer {create_access_token(user)}"}


def admin_headers() -> Dict[str, str]:
    return auth_headers("admin-1", roles=["admin"])


def viewer_headers(user_id: str = "viewer-1") -> Dict[str, str]:
    return auth_headers(user_id, roles=["viewer"])
