"""
Coral Manager Security Utilities

Encryption for OAuth tokens, JWT handling, password hashing.
"""

import base64
import hashlib
import secrets
import string
from datetime import datetime, timedelta

from cryptography.fernet import Fernet
from jose import JWTError, jwt
from passlib.context import CryptContext

from core.config import DEFAULT_ENCRYPTION_KEY, get_settings

settings = get_settings()

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Fernet encryption for OAuth tokens and queued temporary passwords.
# Dev key must be deterministic so the API and the notification worker share it.
if settings.encryption_key == DEFAULT_ENCRYPTION_KEY:
    _dev_key = base64.urlsafe_b64encode(hashlib.sha256(b"coral-manager-dev-key-not-for-production").digest())
    _fernet = Fernet(_dev_key)
else:
    _fernet = Fernet(settings.encryption_key.encode())

TEMP_PASSWORD_SYMBOLS = "!@#$%^&*(),.?:{}|<>"


def encrypt(plaintext: str) -> str:
    """Encrypt sensitive data (OAuth tokens, temporary passwords)."""
    return _fernet.encrypt(plaintext.encode()).decode()


def decrypt(ciphertext: str) -> str:
    """Decrypt sensitive data."""
    return _fernet.decrypt(ciphertext.encode()).decode()


def hash_password(password: str) -> str:
    """Hash a password for storage."""
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against its hash."""
    return pwd_context.verify(plain_password, hashed_password)


def generate_temporary_password(length: int = 10) -> str:
    """Random password with at least one symbol, one digit and one letter."""
    rng = secrets.SystemRandom()
    chars = [
        rng.choice(TEMP_PASSWORD_SYMBOLS),
        rng.choice(string.digits),
        rng.choice(string.ascii_uppercase),
    ]
    chars += [rng.choice(string.ascii_letters) for _ in range(max(length - len(chars), 0))]
    rng.shuffle(chars)
    return "".join(chars)


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    runtime_settings = get_settings()
    to_encode = data.copy()
    expire = datetime.utcnow() + (expires_delta or timedelta(hours=runtime_settings.access_token_expire_hours))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, runtime_settings.jwt_secret, algorithm=runtime_settings.jwt_algorithm)


def decode_access_token(token: str) -> dict | None:
    """Decode and validate a locally issued access token."""
    runtime_settings = get_settings()
    try:
        return jwt.decode(
            token,
            runtime_settings.jwt_secret,
            algorithms=[runtime_settings.jwt_algorithm],
        )
    except JWTError:
        return None
