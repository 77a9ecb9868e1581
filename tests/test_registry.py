import asyncio

import pytest

from wallet_autopilot.errors import DelegationNotFound, ValidationError
from wallet_autopilot.storage.models import (
    ActionKind,
    DelegationRequest,
    DelegationScope,
    DelegationStatus,
    ScopeLimits,
)

from conftest import AGENT, OTHER_TOKEN, TOKEN, WALLET, delegation_request, wallet


async def test_register_normalises_and_activates(registry):
    request = delegation_request(delegator=WALLET.upper().replace("0X", "0x"), targets=[TOKEN.upper().replace("0X", "0x")])

    record = await registry.register(request)

    assert record.status == DelegationStatus.ACTIVE
    assert record.delegator == WALLET
    assert record.scope.targets == [TOKEN]
    assert await registry.get(record.id) == record


@pytest.mark.parametrize(
    "changes, message",
    [
        ({"delegator": ""}, "delegator"),
        ({"delegator": "0x1234"}, "not a valid address"),
        ({"delegate": WALLET}, "itself"),
        ({"proof_of_grant": "  "}, "proof_of_grant"),
        ({"scope": DelegationScope(targets=[])}, "at least one target"),
        ({"scope": DelegationScope(targets=[TOKEN], selectors=["0x095ea7"])}, "Malformed selector"),
        ({"scope": DelegationScope(targets=[TOKEN], selectors=["0xa9059cbb"])}, "approve"),
        ({"scope": DelegationScope(targets=[TOKEN], action_kinds=[])}, "action kind"),
        (
            {"scope": DelegationScope(targets=[TOKEN], limits=ScopeLimits(max_actions_per_cycle=-1))},
            "negative",
        ),
    ],
)
async def test_register_rejects_malformed_input(registry, changes, message):
    request = delegation_request().model_copy(update=changes)

    with pytest.raises(ValidationError, match=message):
        await registry.register(request)

    assert await registry.list_active(AGENT) == []


async def test_revoked_delegation_is_gone_from_next_snapshot(registry, delegation):
    assert [d.id for d in await registry.list_active(AGENT)] == [delegation.id]

    await registry.revoke(delegation.id)

    assert await registry.list_active(AGENT) == []
    # Retained for audit.
    assert (await registry.get(delegation.id)).status == DelegationStatus.REVOKED


async def test_revoke_is_idempotent(registry, delegation):
    first = await registry.revoke(delegation.id)
    second = await registry.revoke(delegation.id)

    assert first.status == second.status == DelegationStatus.REVOKED


async def test_unknown_delegation_raises(registry):
    with pytest.raises(DelegationNotFound):
        await registry.revoke("nope")
    with pytest.raises(DelegationNotFound):
        await registry.pause("nope")


async def test_pause_and_resume(registry, delegation):
    await registry.pause(delegation.id)
    assert await registry.list_active(AGENT) == []
    assert not await registry.has_delegation(WALLET, AGENT)

    resumed = await registry.resume(delegation.id)
    assert resumed.status == DelegationStatus.ACTIVE
    assert await registry.has_delegation(WALLET, AGENT)


async def test_revoked_cannot_be_resumed_or_paused(registry, delegation):
    await registry.revoke(delegation.id)

    with pytest.raises(ValidationError):
        await registry.resume(delegation.id)
    assert (await registry.pause(delegation.id)).status == DelegationStatus.REVOKED


async def test_reregistering_pair_keeps_id_and_reactivates(registry, delegation):
    await registry.revoke(delegation.id)

    again = await registry.register(delegation_request(targets=[TOKEN, OTHER_TOKEN, TOKEN]))

    assert again.id == delegation.id
    assert again.status == DelegationStatus.ACTIVE
    assert again.scope.targets == [TOKEN, OTHER_TOKEN]
    assert len(await registry.list_all()) == 1


async def test_list_for_wallet_includes_inactive(registry, delegation):
    other = await registry.register(delegation_request(delegator=wallet(7)))
    await registry.pause(delegation.id)

    mine = await registry.list_for_wallet(WALLET)

    assert [d.id for d in mine] == [delegation.id]
    assert other.id not in {d.id for d in mine}


async def test_non_revoke_scope_does_not_need_approve_selector(registry):
    request = DelegationRequest(
        delegator=WALLET,
        delegate=AGENT,
        scope=DelegationScope(targets=[TOKEN], selectors=["0xa9059cbb"], action_kinds=[ActionKind.CLEANUP]),
        proof_of_grant="0xsig",
    )
    record = await registry.register(request)
    assert record.scope.action_kinds == [ActionKind.CLEANUP]


async def test_concurrent_writes_leave_consistent_snapshots(registry):
    records = await asyncio.gather(
        *(registry.register(delegation_request(delegator=wallet(i))) for i in range(10))
    )
    await asyncio.gather(*(registry.revoke(r.id) for r in records[:5]))

    active = await registry.list_active(AGENT)

    assert {d.id for d in active} == {r.id for r in records[5:]}
