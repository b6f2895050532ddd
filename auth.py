"""Bearer-token identity for the API.

Callers authenticate with ``Authorization: Bearer <token>``, a PyJWT token
signed with ``JWT_SECRET`` whose ``sub`` claim is the user id. Issuing those
tokens belongs to the account service; :func:`issue_access_token` exists for
the seed command and the tests.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from functools import wraps
from typing import Any, Callable

import jwt
from flask import current_app, g, request
from werkzeug.exceptions import Unauthorized

from app_logging import get_logger, merge_request_context
from errors import AuthorizationError
from models import User, db

_logger = get_logger(__name__)

ACCESS_TOKEN_LIFETIME = timedelta(hours=12)


def issue_access_token(user: User, secret: str, algorithm: str = 'HS256',
                       lifetime: timedelta = ACCESS_TOKEN_LIFETIME) -> str:
    now = datetime.now(timezone.utc)
    claims = {'sub': str(user.id), 'role': user.role, 'iat': now, 'exp': now + lifetime}
    return jwt.encode(claims, secret, algorithm=algorithm)


def _bearer_token() -> str:
    header = request.headers.get('Authorization', '')
    scheme, _, token = header.partition(' ')
    if scheme.lower() != 'bearer' or not token.strip():
        raise Unauthorized('Authorization token is missing')
    return token.strip()


def current_user() -> User:
    """Authenticate the request and return the calling user."""
    user = g.get('current_user')
    if user is not None:
        return user
    try:
        claims = jwt.decode(
            _bearer_token(),
            current_app.config['JWT_SECRET'],
            algorithms=[current_app.config.get('JWT_ALGORITHM', 'HS256')],
        )
    except jwt.ExpiredSignatureError as exc:
        raise Unauthorized('Token has expired') from exc
    except jwt.InvalidTokenError as exc:
        raise Unauthorized('Token is invalid') from exc

    subject = claims.get('sub')
    user = db.session.get(User, int(subject)) if isinstance(subject, str) and subject.isdigit() else None
    if user is None or not user.is_active:
        _logger.info('authentication rejected', extra={'subject': subject})
        raise Unauthorized('Unknown or inactive user')
    g.current_user = user
    merge_request_context(actor_id=user.id)
    return user


def require_roles(*roles: str) -> Callable:
    """Reject callers that are unauthenticated (401) or lack one of ``roles`` (403)."""

    def decorator(view: Callable) -> Callable:
        @wraps(view)
        def wrapped(*args: Any, **kwargs: Any):
            user = current_user()
            if roles and user.role not in roles:
                raise AuthorizationError(f"Requires role {' or '.join(roles)}")
            return view(*args, **kwargs)

        return wrapped

    return decorator


__all__ = ['ACCESS_TOKEN_LIFETIME', 'current_user', 'issue_access_token', 'require_roles']
