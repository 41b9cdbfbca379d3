"""
Identity Resolution Module
Maps external actor payloads to local developer records.
"""

from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from activity_sync.database.models import Developer
from activity_sync.utils.helpers import sanitize_string
from activity_sync.utils.logger import get_logger

logger = get_logger(__name__)

SENTINEL_NAME = 'Unknown Developer'
SENTINEL_LOGIN = 'unknown'
SENTINEL_EMAIL = 'unknown@example.com'
SENTINEL_EXTERNAL_ID = 'unknown'


@dataclass(frozen=True)
class ResolvedDeveloper:
    """Actor already known by local developer id."""
    developer_id: int


@dataclass(frozen=True)
class ExternalIdentity:
    """Raw actor payload from the platform that needs resolution."""
    external_id: Optional[str] = None
    login: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.external_id or self.login or self.email)


Actor = Union[ResolvedDeveloper, ExternalIdentity]


class IdentityResolutionError(Exception):
    """Raised when an identity cannot be matched or created."""


class IdentityResolver:
    """Resolves actors to developer ids, falling back to the sentinel developer."""

    def resolve_actor(self, session: Session, actor: Optional[Actor]) -> int:
        """
        Resolve an actor to a developer id.

        Resolution order: external id, then email or login, then a new
        developer. Any failure resolves to the sentinel developer.

        Args:
            session: Open session of the caller's transaction
            actor: Tagged actor input, or None when the payload had no author

        Returns:
            Developer id
        """
        if isinstance(actor, ResolvedDeveloper):
            return actor.developer_id

        if actor is None or actor.is_empty:
            return self.ensure_sentinel(session)

        try:
            with session.begin_nested():
                return self._resolve_identity(session, actor)
        except Exception as e:
            logger.warning(f"Identity resolution failed for {actor}, using sentinel developer: {e}")
            return self.ensure_sentinel(session)

    def _resolve_identity(self, session: Session, actor: ExternalIdentity) -> int:
        developer = self._find(session, actor)
        if developer is not None:
            self._link(developer, actor)
            return developer.id

        login = actor.login or actor.email or actor.external_id
        developer = Developer(
            external_id=actor.external_id,
            login=login,
            email=actor.email,
            name=sanitize_string(actor.display_name or login, 255)
        )
        try:
            with session.begin_nested():
                session.add(developer)
                session.flush()
            logger.debug(f"Created developer {developer.login}")
            return developer.id
        except IntegrityError:
            # Created concurrently by another writer
            developer = self._find(session, actor)
            if developer is None:
                raise IdentityResolutionError(f"Could not create or find developer for {actor}")
            return developer.id

    def _find(self, session: Session, actor: ExternalIdentity) -> Optional[Developer]:
        if actor.external_id:
            developer = session.query(Developer).filter(Developer.external_id == actor.external_id).first()
            if developer is not None:
                return developer

        if actor.email:
            developer = session.query(Developer).filter(
                func.lower(Developer.email) == actor.email.lower()
            ).order_by(Developer.id).first()
            if developer is not None:
                return developer

        if actor.login:
            return session.query(Developer).filter(Developer.login == actor.login).first()

        return None

    @staticmethod
    def _link(developer: Developer, actor: ExternalIdentity) -> None:
        """Fill identifiers the stored developer is missing."""
        if not developer.external_id and actor.external_id:
            developer.external_id = actor.external_id
        if not developer.email and actor.email:
            developer.email = actor.email

    def ensure_sentinel(self, session: Session) -> int:
        """Return the sentinel developer's id, creating the row if needed."""
        sentinel = session.query(Developer).filter(Developer.login == SENTINEL_LOGIN).first()
        if sentinel is not None:
            return sentinel.id

        sentinel = Developer(
            external_id=SENTINEL_EXTERNAL_ID,
            login=SENTINEL_LOGIN,
            email=SENTINEL_EMAIL,
            name=SENTINEL_NAME
        )
        try:
            with session.begin_nested():
                session.add(sentinel)
                session.flush()
            logger.info("Created sentinel developer")
            return sentinel.id
        except IntegrityError:
            return session.query(Developer).filter(Developer.login == SENTINEL_LOGIN).one().id
