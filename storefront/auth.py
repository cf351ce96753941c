"""Cookie sessions (signed JWT) and the admin authorization gate."""
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Depends, Request, Response
from sqlalchemy.orm import Session

from . import models
from .config import ConfigState, get_config
from .db import get_db
from .errors import AuthenticationError, AuthorizationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionData:
    user_id: int
    email: str


class SessionManager:
    """Issues, reads and revokes the session cookie for one request.

    The manager is bound to the incoming request (cookie source) and the
    outgoing response (cookie sink). A token issued or revoked during the
    request is reflected by later `get_session()` calls on the same manager.
    """

    def __init__(self, config: ConfigState, request: Request, response: Response):
        self.config = config
        self.response = response
        self._cookies = dict(request.cookies)

    @property
    def cookie_name(self) -> str:
        return self.config.session_cookie_name

    def has_cookie(self) -> bool:
        return bool(self._cookies.get(self.cookie_name))

    def create_session(self, user_id: int, email: str) -> str:
        now = int(time.time())
        payload = {
            "sub": str(user_id),
            "email": email,
            "iat": now,
            "exp": now + self.config.session_max_age,
            "jti": uuid.uuid4().hex,
        }
        token = jwt.encode(payload, self.config.auth_secret, algorithm=ALGORITHM)
        self.response.set_cookie(
            self.cookie_name,
            token,
            max_age=self.config.session_max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.config.cookie_secure,
        )
        self._cookies[self.cookie_name] = token
        return token

    def get_session(self) -> Optional[SessionData]:
        token = self._cookies.get(self.cookie_name)
        if not token:
            return None
        try:
            payload = jwt.decode(
                token,
                self.config.auth_secret,
                algorithms=[ALGORITHM],
                options={"require": ["sub", "exp"]},
            )
            return SessionData(user_id=int(payload["sub"]), email=str(payload.get("email", "")))
        except (jwt.PyJWTError, KeyError, TypeError, ValueError):
            return None

    def destroy_session(self):
        self.response.delete_cookie(
            self.cookie_name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=self.config.cookie_secure,
        )
        self._cookies.pop(self.cookie_name, None)


def get_session_manager(
    request: Request,
    response: Response,
    config: ConfigState = Depends(get_config),
) -> SessionManager:
    return SessionManager(config, request, response)


def require_user(db: Session, sessions: SessionManager) -> models.User:
    session = sessions.get_session()
    if session is None:
        raise AuthenticationError("authentication required")
    user = db.get(models.User, session.user_id)
    if user is None:
        raise AuthenticationError("authentication required")
    return user


def require_admin(db: Session, sessions: SessionManager) -> models.User:
    """Return the calling admin or raise.

    AuthenticationError when there is no valid session, AuthorizationError
    when the session belongs to a non-admin.
    """
    user = require_user(db, sessions)
    if user.role != models.Role.admin.value:
        logger.warning("admin access denied for user %s", user.id)
        raise AuthorizationError("admin access required")
    return user


# FastAPI dependency wrappers

def current_user(
    db: Session = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
) -> models.User:
    return require_user(db, sessions)


def current_admin(
    db: Session = Depends(get_db),
    sessions: SessionManager = Depends(get_session_manager),
) -> models.User:
    return require_admin(db, sessions)
