import hashlib
import logging
import secrets
from datetime import timedelta
from typing import List

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.orm import Session

from . import models
from .errors import ConflictError, NotFoundError, ValidationError
from .models import utcnow
from .passwords import hash_password
from .utils import normalize_email

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 6


def check_password_length(password: str):
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")


# -------------------- users --------------------

def get_user_by_email(db: Session, email: str) -> models.User | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return db.execute(select(models.User).where(models.User.email == normalized)).scalar_one_or_none()


def create_user(db: Session, email: str, password: str, name: str | None = None,
                role: str = models.Role.user.value) -> models.User:
    normalized = normalize_email(email)
    if not normalized:
        raise ValidationError("email required")
    check_password_length(password)
    if get_user_by_email(db, normalized):
        raise ConflictError("email already registered")

    db_user = models.User(email=normalized, name=name, password_hash=hash_password(password), role=role)
    db.add(db_user)
    try:
        db.commit()
    except DBIntegrityError as e:
        # lost a race against a concurrent registration of the same email
        db.rollback()
        raise ConflictError("email already registered") from e
    db.refresh(db_user)
    return db_user


def list_users(db: Session) -> List[models.User]:
    return db.query(models.User).order_by(models.User.id).all()


def list_customers(db: Session) -> List[dict]:
    """Non-admin users with their order count and spend (cancelled orders excluded), newest first."""
    spent = func.coalesce(func.sum(case(
        (models.Order.status != models.OrderStatus.cancelled.value, models.Order.total_cents),
        else_=0,
    )), 0)
    stmt = (
        select(
            models.User.id,
            models.User.email,
            models.User.name,
            models.User.created_at,
            func.count(func.distinct(models.Order.id)).label("total_orders"),
            spent.label("total_spent_cents"),
        )
        .outerjoin(models.Order, models.Order.user_id == models.User.id)
        .where(models.User.role == models.Role.user.value)
        .group_by(models.User.id, models.User.email, models.User.name, models.User.created_at)
        .order_by(models.User.created_at.desc(), models.User.id.desc())
    )
    return [dict(row._mapping) for row in db.execute(stmt)]


def has_admin(db: Session) -> bool:
    stmt = select(models.User.id).where(models.User.role == models.Role.admin.value).limit(1)
    return db.execute(stmt).first() is not None


def set_password(db: Session, user: models.User, new_password: str) -> models.User:
    check_password_length(new_password)
    user.password_hash = hash_password(new_password)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def update_email(db: Session, user: models.User, new_email: str) -> models.User:
    normalized = normalize_email(new_email)
    if not normalized:
        raise ValidationError("email required")
    existing = get_user_by_email(db, normalized)
    if existing and existing.id != user.id:
        raise ConflictError("email already in use")
    user.email = normalized
    db.add(user)
    try:
        db.commit()
    except DBIntegrityError as e:
        db.rollback()
        raise ConflictError("email already in use") from e
    db.refresh(user)
    return user


def update_user_role(db: Session, email: str, role: str) -> models.User:
    if role not in (models.Role.user.value, models.Role.admin.value):
        raise ValidationError("role must be 'user' or 'admin'")
    user = get_user_by_email(db, email)
    if not user:
        raise NotFoundError("user not found")
    user.role = role
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def provision_admin(db: Session, email: str, password: str) -> tuple[models.User, bool]:
    """Create an admin account, or promote an existing one. Returns (user, created)."""
    user = get_user_by_email(db, email)
    if user is None:
        return create_user(db, email, password, role=models.Role.admin.value), True
    check_password_length(password)
    user.password_hash = hash_password(password)
    user.role = models.Role.admin.value
    db.add(user)
    db.commit()
    db.refresh(user)
    return user, False


# -------------------- password reset --------------------

def _token_digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def create_reset_token(db: Session, user: models.User, ttl_seconds: int) -> str:
    """Store a hashed reset token for `user` and return the plaintext token."""
    token = secrets.token_urlsafe(32)
    db.add(models.PasswordResetToken(
        user_id=user.id,
        token_hash=_token_digest(token),
        expires_at=utcnow() + timedelta(seconds=ttl_seconds),
    ))
    db.commit()
    return token


def consume_reset_token(db: Session, token: str) -> models.User | None:
    """Mark a live token as used and return its user; None if unknown, expired or used."""
    if not token:
        return None
    now = utcnow()
    record = db.execute(
        select(models.PasswordResetToken).where(
            models.PasswordResetToken.token_hash == _token_digest(token),
            models.PasswordResetToken.used_at.is_(None),
            models.PasswordResetToken.expires_at > now,
        )
    ).scalar_one_or_none()
    if record is None:
        return None
    # single use: only the caller that flips used_at gets the user
    claimed = db.execute(
        update(models.PasswordResetToken)
        .where(models.PasswordResetToken.id == record.id, models.PasswordResetToken.used_at.is_(None))
        .values(used_at=now)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != 1:
        return None
    return db.get(models.User, record.user_id)


# -------------------- settings --------------------

def get_settings(db: Session) -> dict[str, str | None]:
    rows = db.execute(select(models.Setting).order_by(models.Setting.key)).scalars().all()
    return {row.key: row.value for row in rows}


def get_setting(db: Session, key: str, default: str | None = None) -> str | None:
    row = db.execute(select(models.Setting).where(models.Setting.key == key)).scalar_one_or_none()
    if row is None or row.value is None:
        return default
    return row.value


def upsert_setting(db: Session, key: str, value: str | None) -> models.Setting:
    if not key:
        raise ValidationError("key required")
    row = db.execute(select(models.Setting).where(models.Setting.key == key)).scalar_one_or_none()
    if row is None:
        row = models.Setting(key=key, value=value)
    else:
        row.value = value
        row.updated_at = utcnow()
    db.add(row)
    db.commit()
    db.refresh(row)
    return row
