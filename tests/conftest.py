# tests/conftest.py
"""
Pytest configuration and fixtures.
"""

import os
from datetime import UTC, datetime, timedelta

import pytest

# Set test environment
os.environ.setdefault("STORE_URL", "sqlite:///:memory:")


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "store: tests running against the in-memory SQLite store")


def naive_utc(days_ago: float = 0) -> datetime:
    """Naive UTC timestamp, the way the store keeps them."""
    return (datetime.now(UTC) - timedelta(days=days_ago)).replace(tzinfo=None)


@pytest.fixture
def store_engine():
    """Fresh in-memory store with the mirror schema."""
    from patchkeeper.database import create_store_engine, init_schema

    engine = create_store_engine("sqlite:///:memory:")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(store_engine):
    from patchkeeper.store import StoreClient

    return StoreClient(store_engine, database_name="SUSDB")


@pytest.fixture
def seed(store_engine):
    """
    Factory inserting one update with a single latest revision.

    Returns (local_update_id, revision_id).
    """
    from patchkeeper.database import make_session_factory
    from patchkeeper.models import (
        DeploymentRow,
        RevisionRow,
        RevisionState,
        StatusRecordRow,
        SupersessionEdgeRow,
        UpdateRow,
    )

    Session = make_session_factory(store_engine)

    def _seed(
        update_id: str,
        title: str = "Cumulative Update",
        classification: str = "Security Updates",
        days_old: float = 1,
        state: RevisionState = RevisionState.ACTIVE,
        supersedes: tuple = (),
        status_targets: int = 0,
        approved_groups: tuple = (),
    ):
        with Session() as session:
            update = UpdateRow(
                update_id=update_id,
                title=title,
                classification=classification,
                creation_date=naive_utc(days_old),
            )
            session.add(update)
            session.flush()

            revision = RevisionRow(local_update_id=update.local_update_id, state=int(state), is_latest_revision=True)
            session.add(revision)
            session.flush()

            for superseded_id in supersedes:
                session.add(SupersessionEdgeRow(revision_id=revision.revision_id, superseded_update_id=superseded_id))
            for target in range(1, status_targets + 1):
                session.add(
                    StatusRecordRow(
                        target_id=target,
                        local_update_id=update.local_update_id,
                        revision_id=revision.revision_id,
                    )
                )
            for group in approved_groups:
                session.add(DeploymentRow(revision_id=revision.revision_id, target_group=group))

            session.commit()
            return update.local_update_id, revision.revision_id

    return _seed


@pytest.fixture
def make_update():
    """Factory for catalog Update values."""
    from patchkeeper.catalog.types import Update, UpdateClassification

    def _make(
        update_id: str,
        days_old: float = 1,
        classification: UpdateClassification = UpdateClassification.SECURITY,
        title: str = "Security Update for Windows",
        declined: bool = False,
        superseded: bool = False,
        expired: bool = False,
        approved_groups: frozenset = frozenset(),
        now: datetime | None = None,
    ) -> Update:
        now = now or datetime.now(UTC)
        return Update(
            update_id=update_id,
            title=title,
            classification=classification,
            creation_date=now - timedelta(days=days_old),
            is_declined=declined,
            is_superseded=superseded,
            is_expired=expired,
            approved_groups=approved_groups,
        )

    return _make
