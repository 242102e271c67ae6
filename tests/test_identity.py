from datetime import datetime

import pytest

from tms_billing import models
from tms_billing.errors import ProfileNotFound
from tms_billing.identity import IdentityResolver


def _add_profile(db, profile_id, auth_user_id, role, created_at):
    db.add(models.Profile(id=profile_id, auth_user_id=auth_user_id, role=role, created_at=created_at))
    db.commit()


def test_profile_id_resolves_to_itself(db_session, profile):
    assert IdentityResolver(db_session).resolve("profile-1") == "profile-1"


def test_auth_id_resolves_to_most_recent_profile(db_session):
    _add_profile(db_session, "p-old", "auth-9", "Startup", datetime(2024, 1, 1))
    _add_profile(db_session, "p-new", "auth-9", "Investor", datetime(2024, 6, 1))

    assert IdentityResolver(db_session).resolve("auth-9") == "p-new"


def test_created_at_tie_prefers_greater_profile_id(db_session):
    created = datetime(2024, 1, 1)
    _add_profile(db_session, "p-a", "auth-7", "Startup", created)
    _add_profile(db_session, "p-b", "auth-7", "Mentor", created)

    assert IdentityResolver(db_session).resolve("auth-7") == "p-b"


def test_unknown_identity_raises_not_found(db_session, profile):
    resolver = IdentityResolver(db_session)
    assert resolver.find_profile_id("nobody") is None
    assert resolver.find_profile_id("   ") is None
    with pytest.raises(ProfileNotFound) as excinfo:
        resolver.resolve("nobody")
    assert excinfo.value.status_code == 404
