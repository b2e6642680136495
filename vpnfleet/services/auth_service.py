"""
Operator authentication for the fleet controller
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from ..core.config import Settings, config
from ..core.exceptions import AuthenticationError
from ..core.logging import get_logger
from ..models.auth import Admin


logger = get_logger(__name__)


class AuthService:
    """Password verification and JWT handling for the operator account"""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or config.settings
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
        self._password_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, plain_password: str, hashed_password: str) -> bool:
        try:
            return self.pwd_context.verify(plain_password, hashed_password)
        except ValueError as e:
            logger.warning(f"Password verification failed: {e}")
            return False

    @property
    def admin_password_hash(self) -> Optional[str]:
        if self.settings.admin_password_hash:
            return self.settings.admin_password_hash
        if self._password_hash is None and self.settings.admin_password:
            self._password_hash = self.hash_password(self.settings.admin_password)
        return self._password_hash

    async def authenticate_user(self, username: str, password: str) -> Optional[Admin]:
        """Authenticate the operator with username and password"""
        hashed = self.admin_password_hash
        if not hashed:
            logger.warning("Login attempted but no admin password is configured")
            return None
        if not secrets.compare_digest(username, self.settings.admin_username):
            return None
        if not self.verify_password(password, hashed):
            logger.warning(f"Failed login for {username}")
            return None
        logger.info(f"Operator {username} logged in")
        return Admin(username=username)

    async def create_access_token(
        self,
        data: Dict[str, Any],
        expires_delta: Optional[timedelta] = None,
    ) -> str:
        """Create a JWT access token"""
        to_encode = data.copy()
        now = datetime.now(timezone.utc)
        expire = now + (expires_delta or timedelta(minutes=self.settings.access_token_expire_minutes))
        to_encode.update({"exp": expire, "iat": now, "jti": secrets.token_urlsafe(16)})
        return jwt.encode(to_encode, self.settings.SECRET_KEY, algorithm=self.settings.jwt_algorithm)

    async def verify_token(self, token: str) -> Admin:
        """Decode a token and return the operator it belongs to"""
        try:
            payload = jwt.decode(token, self.settings.SECRET_KEY, algorithms=[self.settings.jwt_algorithm])
        except JWTError as e:
            logger.warning(f"Invalid token: {e}")
            raise AuthenticationError("Invalid or expired token")
        username = payload.get("sub")
        if username != self.settings.admin_username:
            raise AuthenticationError("Invalid token subject")
        return Admin(username=username)
