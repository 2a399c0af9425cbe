import pytest

from keycard.adapters.storage.async_card_issue_repository import AsyncCardIssueRepository
from keycard.application.services.reader_locks import ReaderLockRegistry
from keycard.application.services.retry_service import RetryService
from keycard.core.types import CardType, IssueStatus
from keycard.exceptions import AgentUnavailable, ReaderBusy, ReaderNotConnected

HOTEL = "HOTEL-1"


async def _failed_issue(ledger, card_type, booking_id="BK-1001"):
    issue = await ledger.create_card_issue(HOTEL, "ROOM-12", booking_id, card_type, {"type": card_type.value})
    await ledger.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    return await ledger.update_card_issue_status(issue.id, IssueStatus.FAILED, error_message="verify mismatch")


@pytest.mark.asyncio
async def test_retry_failed_requeues_only_failed_cards(ledger, make_agent, fast_config, workspace):
    await _failed_issue(ledger, CardType.CLOCK)
    await _failed_issue(ledger, CardType.ROOM)
    await _failed_issue(ledger, CardType.ROOM, booking_id="BK-2002")
    done = await ledger.create_card_issue(HOTEL, "ROOM-12", "BK-1001", CardType.INSTALLATION, {"type": "installation"})
    await ledger.update_card_issue_status(done.id, IssueStatus.DONE, result={"cardUID": "04:00"})

    service = RetryService(ledger, make_agent(), fast_config, workspace=workspace)
    requeued = await service.retry_failed(HOTEL, "BK-1001")

    assert sorted(issue.card_type.value for issue in requeued) == ["clock", "room"]
    assert all(issue.status == IssueStatus.PENDING and issue.retry_count == 1 for issue in requeued)
    other = await ledger.get_card_issues(HOTEL, booking_id="BK-2002")
    assert other[0].status == IssueStatus.FAILED


@pytest.mark.asyncio
async def test_retry_failed_skips_exhausted_issue(db_path, make_agent, fast_config, workspace):
    ledger = AsyncCardIssueRepository(db_path, max_retries=1)
    issue = await _failed_issue(ledger, CardType.CLOCK)
    await ledger.retry_card_issue(issue.id)
    await ledger.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    await ledger.update_card_issue_status(issue.id, IssueStatus.FAILED, error_message="again")

    service = RetryService(ledger, make_agent(), fast_config, workspace=workspace)
    assert await service.retry_failed(HOTEL, "BK-1001") == []
    assert (await ledger.get_card_issue(issue.id)).status == IssueStatus.FAILED


@pytest.mark.asyncio
async def test_replay_pending_encodes_oldest_first(ledger, make_agent, fast_config, workspace):
    for card_type in (CardType.AUTHORIZATION_1, CardType.INSTALLATION, CardType.CLOCK):
        await ledger.create_card_issue(HOTEL, "ROOM-12", "BK-1001", card_type, {"type": card_type.value})
    agent = make_agent(failures={"clock": "verify mismatch"})

    counts = await RetryService(ledger, agent, fast_config, workspace=workspace).replay_pending(HOTEL)

    assert counts == {"success": 2, "failed": 1, "total": 3}
    assert agent.encoded_types == ["authorization_1", "installation", "clock"]
    failed = await ledger.get_card_issues(HOTEL, status=IssueStatus.FAILED)
    assert failed[0].card_type == CardType.CLOCK
    assert failed[0].error_message == "verify mismatch"
    assert len(await ledger.get_card_issues(HOTEL, status=IssueStatus.DONE)) == 2


@pytest.mark.asyncio
async def test_replay_requires_bridge(ledger, make_agent, fast_config, workspace):
    await ledger.create_card_issue(HOTEL, None, "BK-1001", CardType.CLOCK, {"type": "clock"})
    agent = make_agent(available=False)
    with pytest.raises(AgentUnavailable):
        await RetryService(ledger, agent, fast_config, workspace=workspace).replay_pending(HOTEL)
    assert agent.calls == []


@pytest.mark.asyncio
async def test_replay_respects_reader_lock(ledger, make_agent, fast_config, workspace):
    locks = ReaderLockRegistry()
    service = RetryService(ledger, make_agent(), fast_config, locks=locks, workspace=workspace)
    async with locks.hold(HOTEL):
        assert locks.is_busy(HOTEL)
        with pytest.raises(ReaderBusy):
            await service.replay_pending(HOTEL)
    assert not locks.is_busy(HOTEL)


@pytest.mark.asyncio
async def test_replay_limit_takes_oldest_pending(ledger, make_agent, fast_config, workspace):
    for card_type in (CardType.AUTHORIZATION_1, CardType.INSTALLATION, CardType.CLOCK):
        await ledger.create_card_issue(HOTEL, "ROOM-12", "BK-1001", card_type, {"type": card_type.value})
    agent = make_agent()

    counts = await RetryService(ledger, agent, fast_config, workspace=workspace).replay_pending(HOTEL, limit=2)

    assert counts == {"success": 2, "failed": 0, "total": 2}
    assert agent.encoded_types == ["authorization_1", "installation"]
    pending = await ledger.get_card_issues(HOTEL, status=IssueStatus.PENDING)
    assert [issue.card_type for issue in pending] == [CardType.CLOCK]


@pytest.mark.asyncio
async def test_replay_requires_connected_reader(ledger, make_agent, fast_config, workspace):
    await ledger.create_card_issue(HOTEL, None, "BK-1001", CardType.CLOCK, {"type": "clock"})
    agent = make_agent(reader_connected=False)
    with pytest.raises(ReaderNotConnected):
        await RetryService(ledger, agent, fast_config, workspace=workspace).replay_pending(HOTEL)
    assert agent.calls == []
    assert (await ledger.get_card_issues(HOTEL))[0].status == IssueStatus.PENDING


@pytest.mark.asyncio
async def test_replay_counts_unexpected_agent_error_as_failed(ledger, make_agent, fast_config, workspace):
    await ledger.create_card_issue(HOTEL, None, "BK-1001", CardType.CLOCK, {"type": "clock"})
    agent = make_agent(raise_on={"clock": ValueError("Expecting value")})

    counts = await RetryService(ledger, agent, fast_config, workspace=workspace).replay_pending(HOTEL)

    assert counts == {"success": 0, "failed": 1, "total": 1}
    issue = (await ledger.get_card_issues(HOTEL))[0]
    assert issue.status == IssueStatus.FAILED
    assert issue.error_message == "Expecting value"
