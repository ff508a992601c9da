"""
Several users claim one external account at the same moment: one wins,
everybody else gets IdentityAlreadyLinkedException, never a raw
constraint error.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
import threading

from tutoring.core.exceptions import IdentityAlreadyLinkedException
from tutoring.models.identity import ExternalIdentityLink
from tutoring.services.identity_service import IdentityService


def test_one_claimant_wins(db, session_factory, students) -> None:
    db.commit()
    barrier = threading.Barrier(len(students))

    def _claim(user_id: str) -> str:
        session = session_factory()
        try:
            barrier.wait()
            IdentityService(session).link_atomic(user_id, "tg:contested")
            return "linked"
        except IdentityAlreadyLinkedException:
            return "already_linked"
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=len(students)) as pool:
        outcomes = list(pool.map(_claim, [student.id for student in students]))

    assert outcomes.count("linked") == 1
    assert outcomes.count("already_linked") == len(students) - 1
    db.expire_all()
    assert (
        db.query(ExternalIdentityLink)
        .filter(ExternalIdentityLink.external_id == "tg:contested")
        .count()
        == 1
    )


def test_same_user_retrying_gets_one_link(db, session_factory, student) -> None:
    db.commit()
    barrier = threading.Barrier(5)

    def _claim(_: int) -> str:
        session = session_factory()
        try:
            barrier.wait()
            return IdentityService(session).link_atomic(student.id, "tg:retry").id
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=5) as pool:
        link_ids = list(pool.map(_claim, range(5)))

    assert len(set(link_ids)) == 1
    db.expire_all()
    assert db.query(ExternalIdentityLink).count() == 1
