"""Tests for cursor pagination."""

import pytest

from mcp_session.jsonrpc import JSONRPC_INVALID_PARAMS, ProtocolError
from mcp_session.pagination import CursorCodec, InvalidCursor, iterate_pages, paginate

ITEMS = [f"item-{n}" for n in range(120)]


def page(items, cursor, codec, kind="things"):
    return paginate(items, cursor, kind=kind, key=str, page_size=50, codec=codec)


class TestPaginate:
    """Tests for paginate."""

    def test_walks_all_pages(self):
        """Following nextCursor yields every item exactly once."""
        codec = CursorCodec()
        first, cursor = page(ITEMS, None, codec)
        second, cursor = page(ITEMS, cursor, codec)
        third, cursor = page(ITEMS, cursor, codec)

        assert (len(first), len(second), len(third)) == (50, 50, 20)
        assert cursor is None
        assert first + second + third == ITEMS

    def test_single_page(self):
        """A short list has no next cursor."""
        items, cursor = page(ITEMS[:10], None, CursorCodec())
        assert items == ITEMS[:10]
        assert cursor is None

    def test_empty_list(self):
        """An empty list is one empty page."""
        assert page([], None, CursorCodec()) == ([], None)

    def test_rejects_garbage(self):
        """Cursors that aren't ours are InvalidParams."""
        with pytest.raises(InvalidCursor) as exc_info:
            page(ITEMS, "not a cursor!", CursorCodec())
        assert exc_info.value.code == JSONRPC_INVALID_PARAMS

    def test_rejects_foreign_cursors(self):
        """A cursor signed by another server is refused."""
        _, cursor = page(ITEMS, None, CursorCodec(b"one"))
        with pytest.raises(InvalidCursor):
            page(ITEMS, cursor, CursorCodec(b"two"))

    def test_shared_secret_cursors(self):
        """Codecs with the same secret accept each other's cursors."""
        _, cursor = page(ITEMS, None, CursorCodec(b"shared"))
        items, _ = page(ITEMS, cursor, CursorCodec(b"shared"))
        assert items[0] == "item-50"

    def test_rejects_cursor_for_other_list(self):
        """A tools cursor can't be used to list prompts."""
        codec = CursorCodec()
        _, cursor = page(ITEMS, None, codec, kind="tools")
        with pytest.raises(InvalidCursor):
            page(ITEMS, cursor, codec, kind="prompts")

    def test_rejects_cursor_after_list_changed(self):
        """A cursor issued before the list changed is refused."""
        codec = CursorCodec()
        _, cursor = page(ITEMS, None, codec)
        with pytest.raises(InvalidCursor):
            page(ITEMS[1:], cursor, codec)

    def test_rejects_tampered_cursor(self):
        """Flipping bytes in the cursor breaks its signature."""
        codec = CursorCodec()
        _, cursor = page(ITEMS, None, codec)
        tampered = ("A" if cursor[0] != "A" else "B") + cursor[1:]
        with pytest.raises(InvalidCursor):
            page(ITEMS, tampered, codec)


class TestIteratePages:
    """Tests for iterate_pages."""

    async def test_fetches_lazily(self):
        """Pages are only fetched as the iteration reaches them."""
        fetched = []

        async def fetch(cursor):
            fetched.append(cursor)
            return {None: (["a", "b"], "c1"), "c1": (["c"], None)}[cursor]

        iterator = iterate_pages(fetch)
        assert await anext(iterator) == "a"
        assert fetched == [None]
        assert [item async for item in iterator] == ["b", "c"]
        assert fetched == [None, "c1"]

    async def test_repeated_cursor_is_an_error(self):
        """A server handing out the same cursor twice would loop forever."""

        async def fetch(cursor):
            return ["x"], "same"

        with pytest.raises(ProtocolError):
            async for _ in iterate_pages(fetch):
                pass
