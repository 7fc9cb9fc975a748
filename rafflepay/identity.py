from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .helpers import ct_equal


@dataclass(frozen=True)
class Principal:
    user_id: str
    role: str = "user"


class SessionIdentity:
    """Principal stored in the signed cookie session by the login endpoint."""

    key = "principal"

    def __call__(self, request: Request) -> Optional[Principal]:
        data = request.session.get(self.key)
        if not data or not data.get("user_id"):
            return None
        return Principal(user_id=data["user_id"], role=data.get("role", "user"))

    def login(self, request: Request, principal: Principal) -> None:
        request.session[self.key] = {"user_id": principal.user_id,
                                     "role": principal.role}

    def logout(self, request: Request) -> None:
        request.session.clear()


class HeaderIdentity(SessionIdentity):
    """
    Trusts ``x-user-id`` / ``x-user-role`` set by an upstream auth proxy.
    Falls back to the cookie session when the headers are absent.
    """

    def __call__(self, request: Request) -> Optional[Principal]:
        user_id = (request.headers.get("x-user-id") or "").strip()
        if user_id:
            role = (request.headers.get("x-user-role") or "user").strip()
            return Principal(user_id=user_id, role=role.lower())
        return super().__call__(request)


def check_admin_credentials(username: str, password: str,
                            admin_username: str, admin_password: str) -> bool:
    # both comparisons always run
    ok_user = ct_equal(username.strip(), admin_username)
    ok_pass = ct_equal(password, admin_password)
    return ok_user and ok_pass


def new_identity(backend: str) -> SessionIdentity:
    if backend == "session":
        return SessionIdentity()
    if backend == "header":
        return HeaderIdentity()
    raise RuntimeError(f"unknown identity backend: {backend!r}")
