"""Authentication service - JWT token handling and one-time sign-in codes"""

from datetime import datetime, timedelta
from typing import Optional
import logging
import secrets
import uuid

from jose import JWTError, jwt
import bcrypt
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from app.config import settings
from app.db.models import User
from app.errors import Unauthorized
from app.services.credit_ledger import CreditLedger, get_credit_ledger

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    """Hash a secret using bcrypt directly."""
    return bcrypt.hashpw(
        secret.encode("utf-8"),
        bcrypt.gensalt(),
    ).decode("utf-8")


def verify_secret(plain: str, hashed: str) -> bool:
    """Verify a secret against a bcrypt hash."""
    return bcrypt.checkpw(
        plain.encode("utf-8"),
        hashed.encode("utf-8"),
    )


def generate_otp(length: Optional[int] = None) -> str:
    """Numeric one-time code, zero-padded"""
    length = length or settings.otp_length
    return str(secrets.randbelow(10 ** length)).zfill(length)


def create_access_token(user_id: str) -> str:
    """Create a JWT access token"""
    expire = datetime.utcnow() + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode = {
        "sub": user_id,
        "exp": expire,
        "iat": datetime.utcnow(),
        "jti": str(uuid.uuid4()),  # Unique token ID
    }
    return jwt.encode(
        to_encode,
        settings.jwt_secret,
        algorithm=settings.jwt_algorithm
    )


def decode_access_token(token: str) -> Optional[str]:
    """Decode a JWT token and return the user ID"""
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm]
        )
        return payload.get("sub")
    except JWTError:
        return None


class OtpSender:
    """
    Delivers sign-in codes. The default implementation only logs; the code
    itself is logged in debug mode so local sign-in works without a mailer.
    """

    async def send(self, email: str, code: str) -> None:
        if settings.debug:
            logger.info(f"Sign-in code for {email}: {code}")
        else:
            logger.info(f"Sign-in code issued for {email}")


_otp_sender = OtpSender()


def get_otp_sender() -> OtpSender:
    return _otp_sender


async def get_user_by_id(db: AsyncSession, user_id: str) -> Optional[User]:
    """Get a user by ID"""
    result = await db.execute(
        select(User).where(User.id == user_id)
    )
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    """Get a user by email"""
    result = await db.execute(
        select(User).where(User.email == email)
    )
    return result.scalar_one_or_none()


async def create_user(
    db: AsyncSession,
    email: str,
    name: Optional[str] = None,
    ledger: Optional[CreditLedger] = None,
) -> User:
    """Create a new user and grant the signup credits"""
    user = User(email=email, name=name, credits=0)
    db.add(user)
    await db.commit()

    ledger = ledger or get_credit_ledger()
    await ledger.grant_credits(user.id, settings.signup_credits, reference="signup")
    await db.refresh(user)
    logger.info(f"Created user {user.id} with {user.credits} credit(s)")
    return user


async def initiate_signin(db: AsyncSession, email: str) -> str:
    """
    Issue a fresh one-time code for ``email``, creating the account on first
    sign-in. Returns the plain code for delivery; only its hash is stored.
    """
    email = email.strip().lower()
    user = await get_user_by_email(db, email)
    if user is None:
        user = await create_user(db, email=email)

    code = generate_otp()
    user.otp_hash = hash_secret(code)
    user.otp_expires_at = datetime.utcnow() + timedelta(minutes=settings.otp_ttl_minutes)
    user.otp_attempts = 0
    await db.commit()
    return code


async def verify_signin(db: AsyncSession, email: str, code: str) -> User:
    """Check a one-time code; the code is single use. Raises Unauthorized."""
    user = await get_user_by_email(db, email.strip().lower())
    if user is None or not user.otp_hash or not user.is_active:
        raise Unauthorized("Invalid or expired code")

    if user.otp_expires_at is None or user.otp_expires_at < datetime.utcnow():
        user.otp_hash = None
        await db.commit()
        raise Unauthorized("Invalid or expired code")

    if user.otp_attempts >= settings.otp_max_attempts:
        user.otp_hash = None
        await db.commit()
        raise Unauthorized("Too many attempts, request a new code")

    if not verify_secret(code.strip(), user.otp_hash):
        user.otp_attempts += 1
        await db.commit()
        raise Unauthorized("Invalid or expired code")

    user.otp_hash = None
    user.otp_expires_at = None
    user.otp_attempts = 0
    await db.commit()
    return user
