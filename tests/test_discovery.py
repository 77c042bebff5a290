"""Tests for ChangeDiscovery and ThreadFetcher against a mocked GmailClient."""

from __future__ import annotations

from unittest.mock import MagicMock, call, patch

import pytest

from gmail_sync.core.exceptions import CursorInvalidError, NetworkError
from gmail_sync.core.models import FetchResult, MessageStub
from gmail_sync.pipeline.discovery import ChangeDiscovery
from gmail_sync.pipeline.fetcher import ThreadFetcher


@pytest.fixture
def client() -> MagicMock:
    mock = MagicMock()
    mock.get_profile.return_value = {"emailAddress": "me@acme.io", "historyId": "105"}
    return mock


def stubs(*thread_ids: str) -> list[MessageStub]:
    return [MessageStub(f"m-{tid}-{i}", tid) for i, tid in enumerate(thread_ids)]


class TestChangeDiscovery:
    """Incremental feed, first sync and invalid-cursor fallback."""

    def test_incremental_uses_history(self, client: MagicMock) -> None:
        client.list_history.return_value = ({"T1", "T2"}, "105")

        result = ChangeDiscovery().discover(client, "100")

        client.list_history.assert_called_once_with("100")
        client.discover_message_ids.assert_not_called()
        assert result.thread_ids == frozenset({"T1", "T2"})
        assert result.cursor == "105"
        assert result.full_scan is False
        assert result.account_email == "me@acme.io"

    def test_cursor_is_head_read_before_discovery(self, client: MagicMock) -> None:
        client.list_history.return_value = (set(), "110")

        result = ChangeDiscovery().discover(client, "100")

        assert result.cursor == "105"

    def test_first_sync_is_bounded_full_scan(self, client: MagicMock) -> None:
        client.discover_message_ids.return_value = iter(
            [stubs("T1", "T1", "T2"), stubs("T3", "T4", "T5")]
        )
        discovery = ChangeDiscovery(first_sync_max_messages=4, first_sync_query="-in:chats")

        result = discovery.discover(client, None)

        client.discover_message_ids.assert_called_once_with("INBOX", 4, "-in:chats")
        client.list_history.assert_not_called()
        assert result.thread_ids == frozenset({"T1", "T2", "T3"})
        assert result.full_scan is True
        assert result.cursor_invalidated is False
        assert result.cursor == "105"

    def test_invalid_cursor_falls_back_to_full_scan(self, client: MagicMock) -> None:
        client.list_history.side_effect = CursorInvalidError("expired")
        client.discover_message_ids.return_value = iter([stubs("T7")])

        result = ChangeDiscovery().discover(client, "1")

        assert result.thread_ids == frozenset({"T7"})
        assert result.full_scan is True
        assert result.cursor_invalidated is True
        assert result.cursor == "105"

    def test_other_errors_propagate(self, client: MagicMock) -> None:
        client.list_history.side_effect = NetworkError("down")

        with pytest.raises(NetworkError):
            ChangeDiscovery().discover(client, "100")

    def test_empty_mailbox(self, client: MagicMock) -> None:
        client.discover_message_ids.return_value = iter([])

        result = ChangeDiscovery().discover(client, None)

        assert result.thread_ids == frozenset()
        assert result.cursor == "105"


class TestThreadFetcher:
    """Fixed-size batches with a pause between them."""

    def test_batches_of_five_with_delay(self) -> None:
        client = MagicMock()
        client.fetch_threads.side_effect = lambda ids: FetchResult(
            threads=tuple({"id": tid} for tid in ids)
        )
        ids = [f"T{i}" for i in range(12)]

        with patch("gmail_sync.pipeline.fetcher.time.sleep") as mock_sleep:
            result = ThreadFetcher(batch_size=5, inter_batch_delay_seconds=1.0).fetch(client, ids)

        assert client.fetch_threads.call_args_list == [
            call(ids[0:5]), call(ids[5:10]), call(ids[10:12])
        ]
        assert mock_sleep.call_args_list == [call(1.0), call(1.0)]
        assert len(result.threads) == 12
        assert result.failed == ()

    def test_per_thread_failures_collected(self) -> None:
        client = MagicMock()
        client.fetch_threads.return_value = FetchResult(threads=({"id": "T1"},), failed=("T2",))

        result = ThreadFetcher(inter_batch_delay_seconds=0).fetch(client, ["T1", "T2"])

        assert result.failed == ("T2",)

    def test_unavailable_kept_apart_from_failed(self) -> None:
        client = MagicMock()
        client.fetch_threads.side_effect = [
            FetchResult(failed=("T1",), unavailable=("T2",)),
            FetchResult(unavailable=("T3",)),
        ]

        result = ThreadFetcher(batch_size=2, inter_batch_delay_seconds=0).fetch(
            client, ["T1", "T2", "T3"]
        )

        assert result.failed == ("T1",)
        assert result.unavailable == ("T2", "T3")

    def test_failing_batch_does_not_abort_others(self) -> None:
        client = MagicMock()
        client.fetch_threads.side_effect = [
            NetworkError("down"),
            FetchResult(threads=({"id": "T3"},)),
        ]

        result = ThreadFetcher(batch_size=2, inter_batch_delay_seconds=0).fetch(
            client, ["T1", "T2", "T3"]
        )

        assert [t["id"] for t in result.threads] == ["T3"]
        assert result.failed == ("T1", "T2")

    def test_empty_input(self) -> None:
        client = MagicMock()

        assert ThreadFetcher().fetch(client, []) == FetchResult()
        client.fetch_threads.assert_not_called()
