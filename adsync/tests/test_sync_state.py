"""Tests for per-integration sync state tracking."""

from datetime import timedelta

from adsync.models import Integration, IntegrationSyncState
from adsync.services.sync_state import (
    ensure_sync_state,
    get_sync_state,
    is_due,
    record_success,
)


def test_missing_state_is_due(now):
    assert is_due(None, now) is True


def test_state_with_future_next_run_is_not_due(now):
    state = IntegrationSyncState(next_run_at=now + timedelta(minutes=1))
    assert is_due(state, now) is False


def test_state_exactly_at_next_run_is_due(now):
    state = IntegrationSyncState(next_run_at=now)
    assert is_due(state, now) is True


def test_naive_next_run_is_treated_as_utc(now):
    state = IntegrationSyncState(next_run_at=(now - timedelta(seconds=1)).replace(tzinfo=None))
    assert is_due(state, now) is True


def test_ensure_sync_state_creates_once(db_session, make_integration, now):
    integration = make_integration(provider="GoogleAds")

    first = ensure_sync_state(db_session, integration, now)
    db_session.commit()
    second = ensure_sync_state(db_session, integration, now + timedelta(hours=5))

    assert first.id == second.id
    assert first.provider == "google_ads"
    assert first.cursor == {}
    assert db_session.query(IntegrationSyncState).count() == 1
    assert is_due(second, now) is True


def test_ensure_sync_state_tolerates_concurrent_creation(session_factory, make_integration, now, monkeypatch):
    from adsync.services import sync_state

    integration = make_integration()
    winner, loser = session_factory(), session_factory()
    try:
        created = ensure_sync_state(winner, integration, now)

        # The losing tick looked before the winner committed
        real_get = sync_state.get_sync_state
        lookups = []

        def stale_then_real(db, integration_id):
            lookups.append(integration_id)
            return None if len(lookups) == 1 else real_get(db, integration_id)

        monkeypatch.setattr(sync_state, "get_sync_state", stale_then_real)

        found = ensure_sync_state(loser, loser.get(Integration, integration.id), now)

        assert found.id == created.id
        assert len(lookups) == 2
        assert loser.query(IntegrationSyncState).count() == 1
    finally:
        winner.close()
        loser.close()


def test_record_success_advances_by_fixed_interval(db_session, make_integration, now):
    integration = make_integration()

    record_success(
        db_session,
        integration_id=integration.id,
        tenant_id=integration.tenant_id,
        provider="facebook",
        cursor={"last_date": "2026-03-01"},
        now=now,
        interval=timedelta(hours=1),
    )
    db_session.commit()

    state = get_sync_state(db_session, integration.id)
    assert state.cursor == {"last_date": "2026-03-01"}
    assert is_due(state, now + timedelta(minutes=59)) is False
    assert is_due(state, now + timedelta(hours=1)) is True


def test_record_success_defaults_cursor_to_empty(db_session, make_integration, now):
    integration = make_integration()
    ensure_sync_state(db_session, integration, now)

    state = record_success(
        db_session,
        integration_id=integration.id,
        tenant_id=integration.tenant_id,
        provider="facebook",
        cursor=None,
        now=now,
    )

    assert state.cursor == {}
    assert state.last_success_at == now
    assert state.last_attempt_at == now
