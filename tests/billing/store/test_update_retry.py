"""Tests for the optimistic read-modify-write helpers."""

import pytest

from ownly.platform.billing.exceptions import ConcurrentUpdateError, OrganizationNotFoundError
from ownly.platform.billing.store.base import update_organization_with_retry
from ownly.platform.billing.store.memory import InMemoryBillingStore
from ownly.platform.billing.subscriptions.models import Organization, PrimaryContact

pytestmark = pytest.mark.unit


class FlakyStore(InMemoryBillingStore):
    """Loses the first ``conflicts`` organization writes to a concurrent writer."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts
        self.writes = 0

    async def update_organization(self, org, expected_version):
        self.writes += 1
        if self.conflicts:
            self.conflicts -= 1
            current = await self.get_organization(org.id)
            current.name = f"{current.name} (edited)"
            await super().update_organization(current, expected_version=current.version)
        return await super().update_organization(org, expected_version)


async def _seed(store) -> None:
    await store.add_organization(
        Organization(
            id="org_1",
            name="Acme",
            primary_contact=PrimaryContact(name="Ada", email="ada@acme.test"),
        )
    )


def _rename(org: Organization) -> bool:
    org.primary_contact.name = "Ada Lovelace"
    return True


async def test_retries_on_conflict_against_fresh_copy():
    store = FlakyStore(conflicts=1)
    await _seed(store)

    updated = await update_organization_with_retry(store, "org_1", _rename)

    assert store.writes == 2
    assert updated.version == 2
    assert updated.name == "Acme (edited)"
    assert updated.primary_contact.name == "Ada Lovelace"


async def test_gives_up_after_attempts():
    store = FlakyStore(conflicts=5)
    await _seed(store)

    with pytest.raises(ConcurrentUpdateError):
        await update_organization_with_retry(store, "org_1", _rename, attempts=2)

    assert store.writes == 2


async def test_unchanged_copy_not_written():
    store = FlakyStore(conflicts=0)
    await _seed(store)

    result = await update_organization_with_retry(store, "org_1", lambda org: False)

    assert store.writes == 0
    assert result.version == 0


async def test_missing_organization():
    with pytest.raises(OrganizationNotFoundError):
        await update_organization_with_retry(InMemoryBillingStore(), "nope", _rename)
