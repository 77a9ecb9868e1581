import asyncio
from datetime import timedelta

import pytest

from wallet_autopilot.agent.executor import OutcomeStatus, TransactionExecutor
from wallet_autopilot.chain.authority import TxStatus
from wallet_autopilot.config import ExecutorConfig
from wallet_autopilot.errors import (
    AuthorityRejected,
    FeeCeilingExceeded,
    TransientExternalError,
)
from wallet_autopilot.storage.models import ActionKind, ExecutionRecord, ExecutionStatus

from conftest import (
    OTHER_SPENDER,
    OTHER_TOKEN,
    SPENDER,
    TOKEN,
    delegation_request,
    make_approval,
    revoke_action,
)


async def _records(store, status=None):
    return await store.list_records(status=status)


# ----------------------------------------------------------------------
# Idempotency
# ----------------------------------------------------------------------


async def test_submits_once_and_records_tx_ref(executor, authority, store, delegation):
    [outcome] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.SUBMITTED
    assert len(authority.submissions) == 1
    intent = authority.submissions[0]
    assert intent.kind == ActionKind.REVOKE
    assert intent.data.startswith("0x095ea7b3")

    [record] = await _records(store)
    assert record.status == ExecutionStatus.PENDING
    assert record.tx_ref == outcome.tx_ref
    assert record.attempt_count == 1


async def test_same_key_twice_submits_once(executor, authority, store, delegation):
    await executor.execute([revoke_action()], delegation)
    [outcome] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.SKIPPED_DUPLICATE
    assert len(authority.submissions) == 1
    assert len(await _records(store, "pending")) == 1


async def test_concurrent_execution_of_same_key_submits_once(executor, authority, store, delegation):
    authority.delay = 0.05

    results = await asyncio.gather(
        executor.execute([revoke_action()], delegation),
        executor.execute([revoke_action()], delegation),
    )

    statuses = sorted(r[0].status.value for r in results)
    assert statuses == ["skipped_duplicate", "submitted"]
    assert len(authority.submissions) == 1
    assert len(await _records(store)) == 1


async def test_confirmed_recently_is_not_resubmitted_on_stale_index(executor, authority, store, delegation):
    [first] = await executor.execute([revoke_action()], delegation)
    authority.statuses[first.tx_ref] = TxStatus.CONFIRMED
    # Indexer still reports the approval as active.
    await executor.reconcile(delegation, [make_approval()])

    [again] = await executor.execute([revoke_action()], delegation)

    assert again.status == OutcomeStatus.SKIPPED_DUPLICATE
    assert len(authority.submissions) == 1


async def test_divergent_payload_for_same_key_fails_loudly(executor, authority, store, delegation):
    action = revoke_action()
    key = action.idempotency_key(delegation.id)
    rogue = ExecutionRecord(
        idempotency_key=key,
        delegation_id=delegation.id,
        token=TOKEN,
        spender=OTHER_SPENDER,
        reason=action.reason,
    )
    await store.begin(rogue, rogue.created_at, timedelta(seconds=0))
    store.release(key)

    [outcome] = await executor.execute([action], delegation)

    assert outcome.status == OutcomeStatus.ERROR
    assert "different payload" in outcome.error
    assert authority.submissions == []


async def test_address_case_does_not_count_as_divergent(registry, store, authority, delegation):
    executor = TransactionExecutor(
        ExecutorConfig(backoff_base_seconds=0, backoff_max_seconds=0), registry, store, authority
    )
    authority.errors.append(TransientExternalError("relay down"))
    await executor.execute([revoke_action()], delegation)

    shouting = revoke_action(token="0x" + "C3" * 20, spender="0x" + "D5" * 20)
    [outcome] = await executor.execute([shouting], delegation)

    assert outcome.status == OutcomeStatus.SUBMITTED
    [record] = await _records(store)
    assert record.attempt_count == 2


# ----------------------------------------------------------------------
# Scope
# ----------------------------------------------------------------------


async def test_target_outside_scope_is_never_submitted(executor, authority, store, delegation):
    [outcome] = await executor.execute([revoke_action(token=OTHER_TOKEN)], delegation)

    assert outcome.status == OutcomeStatus.SKIPPED_OUT_OF_SCOPE
    assert authority.submissions == []
    assert await _records(store) == []


async def test_kind_outside_scope_is_never_submitted(executor, authority, registry):
    record = await registry.register(delegation_request(action_kinds=[ActionKind.CLEANUP]))

    [outcome] = await executor.execute([revoke_action()], record)

    assert outcome.status == OutcomeStatus.SKIPPED_OUT_OF_SCOPE
    assert authority.submissions == []


async def test_scope_is_rechecked_against_current_grant(executor, authority, registry, delegation):
    # Narrowed after the caller captured the delegation.
    await registry.register(delegation_request(targets=[OTHER_TOKEN]))

    [outcome] = await executor.execute([revoke_action(token=TOKEN)], delegation)

    assert outcome.status == OutcomeStatus.SKIPPED_OUT_OF_SCOPE
    assert authority.submissions == []


async def test_max_actions_per_cycle(executor, authority, registry):
    record = await registry.register(delegation_request(max_actions=1))
    actions = [revoke_action(), revoke_action(spender=OTHER_SPENDER)]

    outcomes = await executor.execute(actions, record)

    assert [o.status for o in outcomes] == [OutcomeStatus.SUBMITTED, OutcomeStatus.SKIPPED_OUT_OF_SCOPE]
    assert len(authority.submissions) == 1


async def test_delegation_revoked_after_fetch_gets_no_submissions(executor, authority, registry, delegation):
    fetched = (await registry.list_active(delegation.delegate))[0]
    actions = [revoke_action(), revoke_action(spender=OTHER_SPENDER, reason="risky spender")]

    await registry.revoke(delegation.id)
    outcomes = await executor.execute(actions, fetched)

    assert {o.status for o in outcomes} == {OutcomeStatus.DROPPED_REVOKED}
    assert authority.submissions == []


# ----------------------------------------------------------------------
# Retries and failures
# ----------------------------------------------------------------------


async def test_transient_failure_schedules_backoff(executor, authority, store, delegation):
    authority.errors.append(TransientExternalError("relay down"))

    [outcome] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.RETRY_SCHEDULED
    [record] = await _records(store)
    assert record.status == ExecutionStatus.PENDING
    assert record.tx_ref is None
    assert record.attempt_count == 1
    assert record.next_attempt_at > record.created_at + timedelta(seconds=59)

    # Not due yet.
    [outcome] = await executor.execute([revoke_action()], delegation)
    assert outcome.status == OutcomeStatus.SKIPPED_DUPLICATE
    assert len(authority.submissions) == 1


async def test_due_retry_reuses_the_record(registry, store, authority, delegation):
    executor = TransactionExecutor(
        ExecutorConfig(backoff_base_seconds=0, backoff_max_seconds=0), registry, store, authority
    )
    authority.errors.append(TransientExternalError("relay down"))

    await executor.execute([revoke_action()], delegation)
    [outcome] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.SUBMITTED
    [record] = await _records(store)
    assert record.attempt_count == 2
    assert record.tx_ref == outcome.tx_ref
    assert record.last_error is None


async def test_retries_are_abandoned_at_max_attempts(registry, store, authority, delegation):
    executor = TransactionExecutor(
        ExecutorConfig(max_attempts=2, backoff_base_seconds=0, backoff_max_seconds=0),
        registry,
        store,
        authority,
    )
    authority.always_fail = TransientExternalError("relay down")

    first = await executor.execute([revoke_action()], delegation)
    second = await executor.execute([revoke_action()], delegation)
    third = await executor.execute([revoke_action()], delegation)

    assert first[0].status == OutcomeStatus.RETRY_SCHEDULED
    assert second[0].status == OutcomeStatus.ABANDONED
    assert third[0].status == OutcomeStatus.SKIPPED_FAILED
    [record] = await _records(store)
    assert record.status == ExecutionStatus.ABANDONED
    assert record.attempt_count == 2
    assert len(authority.submissions) == 2


async def test_submission_timeout_is_retryable(registry, store, authority, delegation):
    executor = TransactionExecutor(ExecutorConfig(submit_timeout_seconds=0.01), registry, store, authority)
    authority.delay = 1.0

    [outcome] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.RETRY_SCHEDULED
    assert "timed out" in outcome.error


async def test_rejection_is_terminal(executor, authority, store, registry, delegation):
    authority.errors.append(AuthorityRejected(AuthorityRejected.INSUFFICIENT_SCOPE))

    [outcome] = await executor.execute([revoke_action()], delegation)
    [again] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.FAILED
    assert again.status == OutcomeStatus.SKIPPED_FAILED
    assert len(authority.submissions) == 1
    [record] = await _records(store)
    assert record.status == ExecutionStatus.FAILED
    assert "insufficient_scope" in record.last_error

    # Changing the delegation gives the action a fresh chance.
    await registry.pause(delegation.id)
    await registry.resume(delegation.id)
    [retried] = await executor.execute([revoke_action()], delegation)
    assert retried.status == OutcomeStatus.SUBMITTED


async def test_fee_ceiling_fails_without_blocking_later_cycles(executor, authority, store, delegation):
    authority.errors.append(FeeCeilingExceeded("too expensive"))

    [outcome] = await executor.execute([revoke_action()], delegation)
    [later] = await executor.execute([revoke_action()], delegation)

    assert outcome.status == OutcomeStatus.FAILED
    assert later.status == OutcomeStatus.SUBMITTED
    assert len(await _records(store, "failed")) == 1
    assert len(await _records(store, "pending")) == 1


async def test_fee_ceiling_travels_with_intent(registry, store, authority, delegation):
    executor = TransactionExecutor(ExecutorConfig(max_fee_per_gas_gwei=1.5), registry, store, authority)

    await executor.execute([revoke_action()], delegation)

    assert authority.submissions[0].max_fee_per_gas_wei == 1_500_000_000


@pytest.mark.parametrize("attempts, seconds", [(1, 60), (2, 120), (3, 240), (10, 600)])
async def test_backoff_is_exponential_and_capped(executor, attempts, seconds):
    assert executor.backoff(attempts) == timedelta(seconds=seconds)


# ----------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------


async def test_reconcile_confirms_and_fails_by_receipt(executor, authority, store, delegation):
    actions = [revoke_action(), revoke_action(spender=OTHER_SPENDER)]
    ok, reverted = await executor.execute(actions, delegation)
    authority.statuses[ok.tx_ref] = TxStatus.CONFIRMED
    authority.statuses[reverted.tx_ref] = TxStatus.REVERTED

    changed = await executor.reconcile(delegation, [])

    by_spender = {r.spender: r for r in changed}
    assert by_spender[SPENDER].status == ExecutionStatus.CONFIRMED
    assert by_spender[OTHER_SPENDER].status == ExecutionStatus.FAILED
    assert await _records(store, "pending") == []


async def test_reconcile_keeps_unconfirmed_pending(executor, store, delegation):
    await executor.execute([revoke_action()], delegation)

    assert await executor.reconcile(delegation, [make_approval()]) == []
    assert len(await _records(store, "pending")) == 1


async def test_unsubmitted_record_is_superseded_when_approval_disappears(executor, authority, store, delegation):
    authority.errors.append(TransientExternalError("relay down"))
    await executor.execute([revoke_action()], delegation)

    # Still there: stays pending.
    assert await executor.reconcile(delegation, [make_approval()]) == []
    # User revoked it manually.
    [changed] = await executor.reconcile(delegation, [])

    assert changed.status == ExecutionStatus.SUPERSEDED


async def test_unsubmitted_record_is_superseded_when_no_longer_proposed(registry, store, authority, delegation):
    executor = TransactionExecutor(
        ExecutorConfig(backoff_base_seconds=0, backoff_max_seconds=0), registry, store, authority
    )
    authority.errors.append(TransientExternalError("relay down"))
    await executor.execute([revoke_action()], delegation)

    # Still proposed: left for the retry.
    assert await executor.reconcile(delegation, [make_approval()], [revoke_action()]) == []
    [changed] = await executor.reconcile(delegation, [make_approval()], [])

    assert changed.status == ExecutionStatus.SUPERSEDED
    assert "no longer proposed" in changed.last_error
    assert await _records(store, "pending") == []


async def test_record_in_backoff_is_not_superseded_before_due(executor, authority, store, delegation):
    authority.errors.append(TransientExternalError("relay down"))
    await executor.execute([revoke_action()], delegation)

    assert await executor.reconcile(delegation, [make_approval()], []) == []
    assert len(await _records(store, "pending")) == 1


async def test_settle_fails_unsubmitted_and_follows_submitted(executor, authority, store, registry, delegation):
    authority.errors.append(TransientExternalError("relay down"))
    await executor.execute([revoke_action()], delegation)
    [submitted] = await executor.execute([revoke_action(spender=OTHER_SPENDER)], delegation)
    authority.statuses[submitted.tx_ref] = TxStatus.CONFIRMED

    paused = await registry.pause(delegation.id)
    changed = await executor.settle(paused)

    by_spender = {r.spender: r for r in changed}
    assert by_spender[SPENDER].status == ExecutionStatus.FAILED
    assert "paused" in by_spender[SPENDER].last_error
    assert by_spender[OTHER_SPENDER].status == ExecutionStatus.CONFIRMED
    assert len(authority.submissions) == 2


async def test_list_records_filters(executor, authority, store, registry, delegation):
    other = await registry.register(delegation_request(delegator="0x" + "e7" * 20))
    await executor.execute([revoke_action()], delegation)
    await executor.execute([revoke_action()], other)

    assert len(await store.list_records()) == 2
    assert [r.delegation_id for r in await store.list_records(delegation_id=other.id)] == [other.id]
    assert await store.list_records(status="confirmed") == []
    assert len(await store.list_records(limit=1)) == 1
