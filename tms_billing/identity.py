import logging

from fastapi import Depends
from sqlalchemy.orm import Session

from tms_billing import models
from tms_billing.database import get_db
from tms_billing.errors import ProfileNotFound

logger = logging.getLogger(__name__)


class IdentityResolver:
    """
    Maps a caller-supplied user id to a canonical profile id.

    Callers pass either a profile id or an authentication identity id. A
    profile id wins outright; otherwise the most recently created profile of
    that identity is used (ties broken by the greater profile id).
    """

    def __init__(self, db: Session):
        self.db = db

    def find_profile_id(self, user_id: str) -> str | None:
        value = str(user_id or "").strip()
        if not value:
            return None

        direct = self.db.query(models.Profile.id).filter(models.Profile.id == value).first()
        if direct:
            return direct[0]

        latest = (
            self.db.query(models.Profile.id)
            .filter(models.Profile.auth_user_id == value)
            .order_by(models.Profile.created_at.desc(), models.Profile.id.desc())
            .first()
        )
        if latest:
            logger.info("Resolved auth user id to profile auth_user_id=%s profile_id=%s", value, latest[0])
            return latest[0]
        return None

    def resolve(self, user_id: str) -> str:
        profile_id = self.find_profile_id(user_id)
        if profile_id is None:
            raise ProfileNotFound(f"No profile found for user_id {user_id}")
        return profile_id


def get_identity_resolver(db: Session = Depends(get_db)) -> IdentityResolver:
    return IdentityResolver(db)
