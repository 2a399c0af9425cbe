import httpx
import pytest
from httpx import ASGITransport

from keycard.adapters.storage.async_card_issue_repository import AsyncCardIssueRepository
from keycard.adapters.storage.ledger_http_client import LedgerHTTPClient
from keycard.adapters.storage.ledger_http_errors import (
    LedgerClientError,
    LedgerClientNetworkError,
    LedgerClientRateLimitError,
)
from keycard.core.types import CardType, IssueStatus
from keycard.exceptions import CardIssueNotFound, InvalidBooking, StateConflict
from keycard.interfaces.api import create_api_app
from keycard.state import RunRegistry

HOTEL = "HOTEL-1"


@pytest.fixture
def client(db_path, make_agent, fast_config, workspace):
    app = create_api_app(
        AsyncCardIssueRepository(db_path),
        make_agent(),
        fast_config,
        registry=RunRegistry(),
        workspace=workspace,
    )
    return LedgerHTTPClient("http://ledger/", transport=ASGITransport(app=app))


@pytest.mark.asyncio
async def test_issue_lifecycle_over_http(client):
    issue = await client.create_card_issue(HOTEL, "ROOM-12", "BK-1001", CardType.ROOM, {"type": "room", "nights": 3})
    assert issue.status == IssueStatus.PENDING
    assert issue.payload == {"type": "room", "nights": 3}

    await client.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS, agent_id="desk-7")
    done = await client.update_card_issue_status(issue.id, IssueStatus.DONE, result={"cardUID": "04:A2:11"})
    assert done.result == {"cardUID": "04:A2:11"}
    assert done.agent_id == "desk-7"

    fetched = await client.get_card_issue(issue.id)
    assert fetched == done
    history = await client.get_issue_history(issue.id)
    assert [event.action for event in history] == [
        "Created room card issue",
        "Set Status to 'in_progress'",
        "Set Status to 'done'",
    ]


@pytest.mark.asyncio
async def test_list_and_retry_over_http(client):
    issue = await client.create_card_issue(HOTEL, None, "BK-1001", CardType.CLOCK, {"type": "clock"})
    await client.update_card_issue_status(issue.id, IssueStatus.IN_PROGRESS)
    await client.update_card_issue_status(issue.id, IssueStatus.FAILED, error_message="verify mismatch")

    failed = await client.get_card_issues(HOTEL, status=IssueStatus.FAILED, booking_id="BK-1001")
    assert [item.error_message for item in failed] == ["verify mismatch"]

    retried = await client.retry_card_issue(issue.id)
    assert retried.retry_count == 1
    with pytest.raises(StateConflict):
        await client.retry_card_issue(issue.id)


@pytest.mark.asyncio
async def test_http_errors_map_to_domain_errors(client):
    assert await client.get_card_issue("missing") is None
    with pytest.raises(CardIssueNotFound):
        await client.update_card_issue_status("missing", IssueStatus.DONE)
    with pytest.raises(InvalidBooking):
        await client.create_card_issue(HOTEL, None, None, CardType.CLOCK, None)


@pytest.mark.asyncio
async def test_device_logs_over_http(client):
    record = await client.log_device_event("desk-7", "card_programmed", {"cardUID": "04:A2"}, card_issue_id="issue-1")
    assert record.event_type == "card_programmed"
    logs = await client.get_device_logs("desk-7")
    assert [log.card_issue_id for log in logs] == ["issue-1"]


@pytest.mark.asyncio
async def test_network_errors_are_retried_then_raised():
    attempts = []

    def refuse(request):
        attempts.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    client = LedgerHTTPClient(
        "http://ledger",
        max_retries=1,
        backoff_base_seconds=0,
        transport=httpx.MockTransport(refuse),
    )
    with pytest.raises(LedgerClientNetworkError):
        await client.get_card_issues(HOTEL)
    assert attempts == ["/v1/card-issues", "/v1/card-issues"]


@pytest.mark.asyncio
async def test_rate_limit_retries_until_success():
    responses = iter([httpx.Response(429, json={"detail": "slow down"}), httpx.Response(200, json={"cardIssues": []})])
    client = LedgerHTTPClient(
        "http://ledger",
        backoff_base_seconds=0,
        transport=httpx.MockTransport(lambda request: next(responses)),
    )
    assert await client.get_card_issues(HOTEL) == []


def test_classify_http_error():
    assert isinstance(LedgerHTTPClient.classify_http_error(status_code=404, detail="x"), CardIssueNotFound)
    assert isinstance(LedgerHTTPClient.classify_http_error(status_code=409, detail="x"), StateConflict)
    assert isinstance(LedgerHTTPClient.classify_http_error(status_code=422, detail="x"), InvalidBooking)
    assert isinstance(LedgerHTTPClient.classify_http_error(status_code=429, detail="x"), LedgerClientRateLimitError)
    error = LedgerHTTPClient.classify_http_error(status_code=502, detail="bad gateway")
    assert type(error) is LedgerClientError
    assert str(error) == "HTTP 502: bad gateway"


@pytest.mark.asyncio
async def test_empty_or_malformed_bodies_raise_client_errors():
    replies = iter([httpx.Response(200, text=""), httpx.Response(200, text="<html>gateway</html>")])
    client = LedgerHTTPClient("http://ledger", transport=httpx.MockTransport(lambda request: next(replies)))
    with pytest.raises(LedgerClientError, match="cardIssue"):
        await client.create_card_issue(HOTEL, None, "BK-1001", CardType.CLOCK, {"type": "clock"})
    with pytest.raises(LedgerClientError, match="invalid JSON"):
        await client.update_card_issue_status("issue-1", IssueStatus.IN_PROGRESS)


@pytest.mark.asyncio
async def test_oldest_first_listing(client):
    for card_type in (CardType.AUTHORIZATION_1, CardType.INSTALLATION, CardType.CLOCK):
        await client.create_card_issue(HOTEL, None, "BK-1001", card_type, {"type": card_type.value})
    oldest = await client.get_card_issues(HOTEL, limit=2, oldest_first=True)
    assert [issue.card_type for issue in oldest] == [CardType.AUTHORIZATION_1, CardType.INSTALLATION]
