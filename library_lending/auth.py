"""Authentication service.

Local accounts log in with a username and bcrypt-hashed password; the
administrator logs in with credentials configured out-of-band; federated
users arrive through an OpenID Connect provider. All three end up with the
same kind of server-side session, and each request resolves its cookie to
an ``Identity`` through ``AuthService.resolve``.
"""

import abc
import enum
import logging
import uuid
from datetime import datetime
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from library_lending import config
from library_lending.database import transaction
from library_lending.exceptions import (
    AuthenticationError,
    FederatedAuthError,
    UsernameTakenError,
)
from library_lending.guard import Identity
from library_lending.models import SessionKind, SessionRecord, User, UserRole
from library_lending.oidc import OIDCClient, TokenSet
from library_lending.repositories import SessionRepository, UserRepository
from library_lending.security import (
    hash_password,
    new_session_id,
    read_session_id,
    secrets_match,
    sign_session_id,
    verify_password,
)

logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid username or password"
USERNAME_TAKEN = "Username already exists"


class SessionState(str, enum.Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


def identity_from_user(user: User) -> Identity:
    return Identity(
        id=user.id,
        role=UserRole(user.role),
        username=user.username,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
    )


def session_claims(identity: Identity) -> Dict[str, Optional[str]]:
    return {
        "sub": identity.id,
        "email": identity.email,
        "first_name": identity.first_name,
        "last_name": identity.last_name,
        "role": identity.role.value,
    }


class CredentialVerifier(abc.ABC):
    """Decides whether a stored session still proves the caller's identity."""

    @abc.abstractmethod
    def verify(self, record: SessionRecord, now: datetime) -> SessionState:
        raise NotImplementedError


class LocalSessionVerifier(CredentialVerifier):
    """Local sessions are valid until their absolute expiry."""

    def verify(self, record: SessionRecord, now: datetime) -> SessionState:
        if now < record.expires_at:
            return SessionState.VALID
        return SessionState.EXPIRED


class FederatedSessionVerifier(CredentialVerifier):
    """Federated sessions renew themselves with the refresh-token grant.

    An expired session with a refresh token is refreshed in place (claims,
    tokens and expiry are overwritten). Without a refresh token, or when the
    provider refuses, the session is invalid and the user must log in again.
    """

    def __init__(self, oidc_client: Optional[OIDCClient]):
        self.oidc_client = oidc_client

    def verify(self, record: SessionRecord, now: datetime) -> SessionState:
        if now < record.expires_at:
            return SessionState.VALID
        if not record.refresh_token or self.oidc_client is None:
            return SessionState.INVALID
        try:
            token_set = self.oidc_client.refresh(record.refresh_token)
        except FederatedAuthError as e:
            logger.warning("Session refresh failed for user %s: %s", record.user_id, e)
            return SessionState.INVALID

        claims = dict(record.claims or {})
        for key in ("email", "first_name", "last_name"):
            if key in token_set.claims:
                claims[key] = token_set.claims[key]
        record.claims = claims
        record.access_token = token_set.access_token
        record.refresh_token = token_set.refresh_token
        record.expires_at = token_set.expires_at
        logger.info("Refreshed federated session for user %s", record.user_id)
        return SessionState.VALID


class AuthService:
    """Authenticates callers and manages their sessions.

    Args:
        db: Request-scoped SQLAlchemy session.
        oidc_client: Client for the identity provider, or None when
            federated login is not configured.
        clock: Returns the current time; replaced in tests.
    """

    def __init__(
        self,
        db: Session,
        oidc_client: Optional[OIDCClient] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.db = db
        self.users = UserRepository(db)
        self.sessions = SessionRepository(db)
        self.clock = clock
        self.verifiers: Dict[SessionKind, CredentialVerifier] = {
            SessionKind.LOCAL: LocalSessionVerifier(),
            SessionKind.FEDERATED: FederatedSessionVerifier(oidc_client),
        }

    # --- Credentials ---

    def authenticate(self, username: str, password: str) -> Identity:
        """Check a username/password pair.

        The configured administrator is checked first against the
        out-of-band secret; everyone else against the stored bcrypt hash.

        Raises:
            AuthenticationError: With the same message whatever was wrong.
            ConfigurationError: If the administrator is not configured.
        """
        config.validate_admin_settings()
        username_key = username.strip().lower()

        if username_key == config.ADMIN_USERNAME.lower():
            if not secrets_match(password, config.ADMIN_PASSWORD):
                logger.warning("Failed administrator login")
                raise AuthenticationError(INVALID_CREDENTIALS)
            admin = self.users.upsert(
                config.ADMIN_USER_ID,
                username=username_key,
                email=config.ADMIN_EMAIL,
                first_name=config.ADMIN_FIRST_NAME,
                last_name=config.ADMIN_LAST_NAME,
                role=UserRole.ADMIN,
            )
            self.db.commit()
            return identity_from_user(admin)

        user = self.users.get_by_username(username_key)
        if user is None or not user.hashed_password:
            logger.warning("Failed login for unknown username %r", username_key)
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not verify_password(password, user.hashed_password):
            logger.warning("Failed login for user %s", user.id)
            raise AuthenticationError(INVALID_CREDENTIALS)
        return identity_from_user(user)

    def add_local_user(
        self,
        username: str,
        password: str,
        email: str,
        first_name: str,
        last_name: str,
        role: UserRole = UserRole.USER,
    ) -> User:
        """Stage a local account in the current transaction without committing.

        Raises:
            UsernameTakenError: If the username (case-insensitive) is taken.
            IntegrityError: If a concurrent registration won the unique index.
        """
        username_key = username.strip().lower()
        if config.ADMIN_USERNAME and username_key == config.ADMIN_USERNAME.lower():
            raise UsernameTakenError(USERNAME_TAKEN)
        if self.users.get_by_username(username_key) is not None:
            raise UsernameTakenError(USERNAME_TAKEN)

        return self.users.add(
            User(
                id=f"local_{uuid.uuid4().hex}",
                username=username_key,
                hashed_password=hash_password(password),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
            )
        )

    def register(
        self,
        username: str,
        password: str,
        email: str,
        first_name: str,
        last_name: str,
    ) -> Identity:
        """Create a local account with the user role and commit it.

        Raises:
            UsernameTakenError: If the username (case-insensitive) is taken.
        """
        try:
            with transaction(self.db):
                user = self.add_local_user(username, password, email, first_name, last_name)
        except IntegrityError:
            # Lost the race against a concurrent registration
            raise UsernameTakenError(USERNAME_TAKEN)

        logger.info("Registered user %s (%s)", user.id, user.username)
        return identity_from_user(user)


    # --- Sessions ---

    def create_session(
        self,
        identity: Identity,
        kind: SessionKind = SessionKind.LOCAL,
        token_set: Optional[TokenSet] = None,
    ) -> Tuple[SessionRecord, str]:
        """Open a session for identity.

        Returns:
            The stored session and the signed cookie value pointing at it.
        """
        now = self.clock()
        self.sessions.purge_expired(now)
        record = SessionRecord(
            sid=new_session_id(),
            user_id=identity.id,
            kind=kind,
            claims=session_claims(identity),
            expires_at=token_set.expires_at if token_set else now + config.SESSION_TTL,
            access_token=token_set.access_token if token_set else None,
            refresh_token=token_set.refresh_token if token_set else None,
        )
        self.sessions.add(record)
        self.db.commit()
        return record, sign_session_id(record.sid)

    def verify(self, record: SessionRecord) -> SessionState:
        return self.verifiers[SessionKind(record.kind)].verify(record, self.clock())

    def resolve(self, cookie_value: Optional[str]) -> Identity:
        """Turn a session cookie into the caller's current identity.

        The role comes from the user row, not the session claims, so role
        changes apply on the next request.

        Raises:
            AuthenticationError: If the cookie is missing, forged, expired,
                or points at a terminated session or a deleted user.
        """
        sid = read_session_id(cookie_value) if cookie_value else None
        record = self.sessions.get(sid) if sid else None
        if record is None:
            raise AuthenticationError("Unauthorized")

        state = self.verify(record)
        if state != SessionState.VALID:
            logger.info("Terminating %s session for user %s", state.value, record.user_id)
            self.sessions.delete(record)
            self.db.commit()
            raise AuthenticationError("Unauthorized")

        user = self.users.get(record.user_id)
        if user is None:
            self.sessions.delete(record)
            self.db.commit()
            raise AuthenticationError("Unauthorized")

        if self.db.dirty:
            # A refresh rewrote the tokens
            self.db.commit()
        return identity_from_user(user)

    def logout(self, cookie_value: Optional[str]) -> None:
        sid = read_session_id(cookie_value) if cookie_value else None
        record = self.sessions.get(sid) if sid else None
        if record is not None:
            self.sessions.delete(record)
            self.db.commit()
            logger.info("User %s logged out", record.user_id)

    # --- Federated ---

    def login_federated(self, token_set: TokenSet) -> Tuple[Identity, str]:
        """Upsert the provider's user and open a federated session.

        An existing user's role is preserved; new users get the user role.

        Returns:
            The identity and the signed cookie value.
        """
        claims = token_set.claims
        subject = claims.get("sub")
        if not subject:
            raise FederatedAuthError("id_token has no subject")

        profile = {
            "email": claims.get("email"),
            "first_name": claims.get("first_name") or claims.get("given_name"),
            "last_name": claims.get("last_name") or claims.get("family_name"),
            "profile_image_url": claims.get("profile_image_url") or claims.get("picture"),
        }
        if self.users.get(subject) is None:
            profile["role"] = UserRole.USER
        user = self.users.upsert(subject, **profile)
        identity = identity_from_user(user)
        _, cookie_value = self.create_session(identity, SessionKind.FEDERATED, token_set)
        logger.info("Federated login for user %s", subject)
        return identity, cookie_value
