"""
Local identity provider: accounts, password hashing and bearer tokens.

The gateway only relies on the IdentityProvider protocol; this implementation
keeps accounts in the same key-value store under "account:<email>".
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr

from config import ACCESS_TOKEN_EXPIRE_MINUTES, JWT_ALGORITHM, JWT_SECRET, MIN_PASSWORD_LENGTH
from database import KeyValueStore
from errors import AuthError, IdentityError

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


class Identity(BaseModel):
    id: str
    email: EmailStr
    name: str


class IdentityProvider(Protocol):
    def create_user(self, email: str, password: str, name: str) -> Identity: ...

    def authenticate(self, email: str, password: str) -> str: ...

    def verify_token(self, token: str) -> Identity: ...


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return pwd_context.verify(password, hashed)


class LocalIdentityProvider:
    def __init__(
        self,
        store: KeyValueStore,
        secret: str = JWT_SECRET,
        algorithm: str = JWT_ALGORITHM,
        token_ttl: timedelta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    ):
        self.store = store
        self.secret = secret
        self.algorithm = algorithm
        self.token_ttl = token_ttl

    @staticmethod
    def _key(email: str) -> str:
        return f"account:{email.lower()}"

    def _get_account(self, email: str) -> Optional[dict]:
        return self.store.get(self._key(email))

    def create_user(self, email: str, password: str, name: str) -> Identity:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise IdentityError(f"Password should be at least {MIN_PASSWORD_LENGTH} characters")
        if self._get_account(email):
            raise IdentityError("A user with this email address has already been registered")
        account = {
            "id": str(uuid.uuid4()),
            "email": email,
            "name": name,
            "password_hash": hash_password(password),
            "created_at": datetime.now(timezone.utc).isoformat(),
        }
        self.store.set(self._key(email), account)
        logger.info("account created id=%s", account["id"])
        return Identity(id=account["id"], email=email, name=name)

    def create_token(self, identity: Identity) -> str:
        to_encode = {
            "sub": identity.id,
            "email": identity.email,
            "type": "access",
            "exp": datetime.now(timezone.utc) + self.token_ttl,
        }
        return jwt.encode(to_encode, self.secret, algorithm=self.algorithm)

    def authenticate(self, email: str, password: str) -> str:
        account = self._get_account(email)
        if not account or not verify_password(password, account.get("password_hash", "")):
            raise AuthError("Incorrect email or password")
        identity = Identity(id=account["id"], email=account["email"], name=account.get("name", ""))
        return self.create_token(identity)

    def verify_token(self, token: str) -> Identity:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except JWTError:
            raise AuthError("Invalid token")
        if payload.get("type") != "access":
            raise AuthError("Invalid token type")
        account = self._get_account(payload.get("email") or "")
        if not account or account.get("id") != payload.get("sub"):
            raise AuthError("User not found")
        return Identity(id=account["id"], email=account["email"], name=account.get("name", ""))
