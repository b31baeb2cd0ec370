"""Tests for per-config run leases."""

import pytest

from calstore_sync.errors import LeaseUnavailableError
from calstore_sync.lease import LeaseManager


def test_lease_is_exclusive(db_manager, sync_config):
    first = LeaseManager(db_manager, holder='a')
    second = LeaseManager(db_manager, holder='b')

    first.acquire(sync_config.id)

    with pytest.raises(LeaseUnavailableError) as exc_info:
        second.acquire(sync_config.id)
    assert exc_info.value.retryable


def test_same_holder_cannot_reenter(db_manager, sync_config):
    lease = LeaseManager(db_manager, holder='a')
    lease.acquire(sync_config.id)

    with pytest.raises(LeaseUnavailableError):
        lease.acquire(sync_config.id)


def test_release_frees_the_lease(db_manager, sync_config):
    first = LeaseManager(db_manager, holder='a')
    second = LeaseManager(db_manager, holder='b')

    first.acquire(sync_config.id)
    first.release(sync_config.id)

    second.acquire(sync_config.id)


def test_release_by_other_holder_is_ignored(db_manager, sync_config):
    first = LeaseManager(db_manager, holder='a')
    second = LeaseManager(db_manager, holder='b')

    first.acquire(sync_config.id)
    second.release(sync_config.id)

    assert first.renew(sync_config.id)


def test_expired_lease_is_taken_over(db_manager, sync_config):
    stale = LeaseManager(db_manager, ttl_seconds=0, holder='a')
    fresh = LeaseManager(db_manager, holder='b')

    stale.acquire(sync_config.id)
    fresh.acquire(sync_config.id)

    assert not stale.renew(sync_config.id)
    assert fresh.renew(sync_config.id)
