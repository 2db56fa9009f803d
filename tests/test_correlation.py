"""Tests for outbound request correlation."""

import logging

import pytest

from mcp_session.jsonrpc import (
    CancellationToken,
    ConnectionClosedError,
    CorrelationTable,
    JsonRpcException,
    RequestCancelledError,
)
from mcp_session.jsonrpc.correlation import MAX_ABANDONED_IDS


def result(id, value=None):
    return {"jsonrpc": "2.0", "id": id, "result": value or {}}


class TestIssue:
    """Tests for id allocation."""

    async def test_ids_are_unique_among_outstanding(self):
        """No two outstanding requests share an id."""
        table = CorrelationTable()
        ids = [table.issue("ping").id for _ in range(100)]
        assert len(set(ids)) == 100
        assert len(table) == 100

    async def test_ids_are_not_reused_after_resolution(self):
        """A resolved id is never handed out again."""
        table = CorrelationTable()
        first = table.issue("ping")
        table.resolve(result(first.id))
        second = table.issue("ping")
        assert second.id != first.id

    async def test_uses_given_cancellation_token(self):
        """The caller's token is attached to the pending request."""
        table = CorrelationTable()
        token = CancellationToken()
        assert table.issue("ping", cancellation_token=token).cancellation_token is token


class TestResolve:
    """Tests for delivering responses."""

    async def test_out_of_order_responses_reach_the_right_waiter(self):
        """Responses are matched by id, not by arrival order."""
        table = CorrelationTable()
        a = table.issue("tools/call")
        b = table.issue("tools/call")

        assert table.resolve(result(b.id, {"who": "b"}))
        assert table.resolve(result(a.id, {"who": "a"}))

        assert await a.future == {"who": "a"}
        assert await b.future == {"who": "b"}
        assert len(table) == 0

    async def test_error_responses_raise(self):
        """Error responses fail the waiter with the peer's error."""
        table = CorrelationTable()
        pending = table.issue("tools/call")
        table.resolve({"jsonrpc": "2.0", "id": pending.id, "error": {"code": -32602, "message": "bad"}})

        with pytest.raises(JsonRpcException) as exc_info:
            await pending.future
        assert exc_info.value.code == -32602

    async def test_unknown_ids_are_dropped(self, caplog):
        """A response nobody is waiting for is logged and ignored."""
        table = CorrelationTable()
        with caplog.at_level(logging.WARNING):
            assert not table.resolve(result(999))
        assert "unknown id" in caplog.text

    async def test_late_response_after_cancel_is_discarded(self, caplog):
        """Cancelling resolves the waiter once; the late response is dropped quietly."""
        table = CorrelationTable()
        pending = table.issue("tools/call")
        table.cancel(pending.id, "user gave up")

        with pytest.raises(RequestCancelledError):
            await pending.future

        with caplog.at_level(logging.WARNING):
            assert not table.resolve(result(pending.id))
        assert "unknown id" not in caplog.text

    async def test_remembers_a_bounded_number_of_abandoned_ids(self, caplog):
        """Only the most recently abandoned ids are remembered."""
        table = CorrelationTable()
        abandoned = []
        for _ in range(MAX_ABANDONED_IDS + 1):
            pending = table.issue("ping")
            table.cancel(pending.id)
            pending.future.exception()
            abandoned.append(pending.id)

        with caplog.at_level(logging.WARNING):
            assert not table.resolve(result(abandoned[-1]))
            assert "unknown id" not in caplog.text
            assert not table.resolve(result(abandoned[0]))
        assert "unknown id" in caplog.text


class TestFailAll:
    """Tests for teardown."""

    async def test_fails_every_pending_request(self):
        """Outstanding requests fail with ConnectionClosedError."""
        table = CorrelationTable()
        pending = [table.issue("ping") for _ in range(3)]

        assert table.fail_all() == 3
        for req in pending:
            with pytest.raises(ConnectionClosedError):
                await req.future

    async def test_runs_once(self):
        """A second fail_all does nothing."""
        table = CorrelationTable()
        table.issue("ping")
        assert table.fail_all() == 1
        assert table.fail_all() == 0

    async def test_refuses_new_requests(self):
        """No requests can be issued after teardown."""
        table = CorrelationTable()
        table.fail_all()
        with pytest.raises(ConnectionClosedError):
            table.issue("ping")
