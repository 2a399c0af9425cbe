import pytest

from keycard.adapters.storage.async_card_issue_repository import AsyncCardIssueRepository
from keycard.core.types import CardType, IssueStatus
from keycard.exceptions import CardIssueNotFound, StateConflict


@pytest.fixture
async def repo(db_path):
    return AsyncCardIssueRepository(db_path, max_retries=2)


async def _failed_issue(repo, card_type=CardType.CLOCK):
    issue = await repo.create_card_issue("HOTEL-1", "ROOM-12", "BK-1", card_type, {"type": "clock"})
    await repo.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    return await repo.update_card_issue_status(issue.id, IssueStatus.FAILED, error_message="verify mismatch")


@pytest.mark.asyncio
async def test_create_starts_pending(repo):
    issue = await repo.create_card_issue("HOTEL-1", "ROOM-12", "BK-1", CardType.INSTALLATION, {"type": "installation"})
    assert issue.status == IssueStatus.PENDING
    assert issue.retry_count == 0
    assert issue.payload == {"type": "installation"}
    assert issue.completed_at is None
    assert await repo.get_card_issue(issue.id) == issue


@pytest.mark.asyncio
async def test_done_sets_result_and_completed_at(repo):
    issue = await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {"type": "room_access"})
    await repo.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS, agent_id="bridge-1")
    done = await repo.update_card_issue_status(
        issue.id, IssueStatus.DONE, result={"cardUID": "04:A2", "timestamp": "ts"}
    )
    assert done.status == IssueStatus.DONE
    assert done.result == {"cardUID": "04:A2", "timestamp": "ts"}
    assert done.agent_id == "bridge-1"
    assert done.completed_at is not None


@pytest.mark.asyncio
async def test_invalid_transition_rejected(repo):
    issue = await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {})
    with pytest.raises(StateConflict):
        await repo.update_card_issue_status(issue.id, IssueStatus.DONE)


@pytest.mark.asyncio
async def test_retry_requeues_failed_issue(repo):
    failed = await _failed_issue(repo)
    assert failed.error_message == "verify mismatch"
    retried = await repo.retry_card_issue(failed.id)
    assert retried.id == failed.id
    assert retried.status == IssueStatus.PENDING
    assert retried.retry_count == 1
    assert retried.error_message is None
    assert retried.completed_at == failed.completed_at


@pytest.mark.asyncio
async def test_completed_at_set_once(repo):
    failed = await _failed_issue(repo)
    await repo.retry_card_issue(failed.id)
    await repo.update_card_issue_status(failed.id, IssueStatus.IN_PROGRESS)
    done = await repo.update_card_issue_status(failed.id, IssueStatus.DONE, result={"cardUID": "X"})
    assert done.completed_at == failed.completed_at


@pytest.mark.asyncio
async def test_retry_of_done_rejected(repo):
    issue = await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {})
    await repo.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    await repo.update_card_issue_status(issue.id, IssueStatus.DONE, result={"cardUID": "X"})
    with pytest.raises(StateConflict):
        await repo.retry_card_issue(issue.id)


@pytest.mark.asyncio
async def test_retry_limit_enforced(repo):
    failed = await _failed_issue(repo)
    for _ in range(2):
        await repo.retry_card_issue(failed.id)
        await repo.update_card_issue_status(failed.id, IssueStatus.IN_PROGRESS)
        await repo.update_card_issue_status(failed.id, IssueStatus.FAILED, error_message="again")
    with pytest.raises(StateConflict, match="Retry limit"):
        await repo.retry_card_issue(failed.id)


@pytest.mark.asyncio
async def test_create_upserts_by_booking_and_card_type(repo):
    failed = await _failed_issue(repo)
    again = await repo.create_card_issue("HOTEL-1", "ROOM-12", "BK-1", CardType.CLOCK, {"type": "clock", "v": 2})
    assert again.id == failed.id
    assert again.status == IssueStatus.PENDING
    assert again.retry_count == 1
    assert again.payload == {"type": "clock", "v": 2}
    issues = await repo.get_card_issues("HOTEL-1", booking_id="BK-1")
    assert len(issues) == 1


@pytest.mark.asyncio
async def test_create_returns_done_issue_unchanged(repo):
    issue = await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {"type": "room_access"})
    await repo.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    done = await repo.update_card_issue_status(issue.id, IssueStatus.DONE, result={"cardUID": "X"})
    again = await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {"type": "room_access", "v": 2})
    assert again == done


@pytest.mark.asyncio
async def test_list_filters(repo):
    await repo.create_card_issue("HOTEL-1", None, "BK-1", CardType.ROOM, {})
    await repo.create_card_issue("HOTEL-1", None, "BK-2", CardType.ROOM, {})
    await repo.create_card_issue("HOTEL-2", None, "BK-3", CardType.ROOM, {})
    await _failed_issue(repo)

    assert len(await repo.get_card_issues("HOTEL-1")) == 3
    assert [i.booking_id for i in await repo.get_card_issues("HOTEL-1", status=IssueStatus.FAILED)] == ["BK-1"]
    newest_first = await repo.get_card_issues("HOTEL-1", limit=1)
    assert newest_first[0].card_type == CardType.CLOCK
    assert len(await repo.get_card_issues("HOTEL-1", offset=2)) == 1


@pytest.mark.asyncio
async def test_history_records_every_write(repo):
    failed = await _failed_issue(repo)
    history = await repo.get_issue_history(failed.id)
    assert [event.action for event in history] == [
        "Created clock card issue",
        "Set Status to 'in_progress'",
        "Set Status to 'failed'",
    ]


@pytest.mark.asyncio
async def test_unknown_issue(repo):
    assert await repo.get_card_issue("missing") is None
    with pytest.raises(CardIssueNotFound):
        await repo.update_card_issue_status("missing", IssueStatus.IN_PROGRESS)


@pytest.mark.asyncio
async def test_device_logs(repo):
    first = await repo.log_device_event("bridge-1", "device_connected", {"product": "ACR122U"})
    second = await repo.log_device_event("bridge-1", "card_programmed", {"cardUID": "X"}, card_issue_id="i-1")
    await repo.log_device_event("bridge-2", "error", {})
    logs = await repo.get_device_logs("bridge-1")
    assert [log.id for log in logs] == [second.id, first.id]
    assert logs[0].card_issue_id == "i-1"
