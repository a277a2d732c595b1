import asyncio
import json

from conversation_history.history.errors import SessionNotFoundError
from conversation_history.history.models import ConversationMessage, MessageBody
from conversation_history.history.store import MESSAGES_FILE, METADATA_FILE, SessionStore
from tests.history.base import HistoryTestCase


def _message(session_id: str, uuid: str, content: str, parent: str | None = None) -> ConversationMessage:
    return ConversationMessage(
        uuid=uuid,
        parent_uuid=parent,
        session_id=session_id,
        type="user",
        message=MessageBody(role="user", content=content),
        timestamp="2026-02-19T10:00:00.000Z",
        cwd="/work",
    )


class SessionStoreTests(HistoryTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._root = self._tmp_dir / "store"
        self._store = SessionStore(self._root, cwd="/work", version="2.0.0", user_type="internal")

    def test_create_session_writes_layout(self) -> None:
        sid = asyncio.run(self._store.create_session("My chat"))

        session_dir = self._root / sid
        self.assertTrue((session_dir / MESSAGES_FILE).exists())
        self.assertEqual("", (session_dir / MESSAGES_FILE).read_text(encoding="utf-8"))
        raw = (session_dir / METADATA_FILE).read_text(encoding="utf-8")
        self.assertIn('\n  "title": "My chat"', raw)
        metadata = json.loads(raw)
        self.assertEqual(sid, metadata["sessionId"])
        self.assertEqual(0, metadata["messageCount"])
        self.assertEqual("/work", metadata["cwd"])
        self.assertEqual("2.0.0", metadata["version"])
        self.assertEqual("internal", metadata["userType"])
        self.assertFalse(metadata["hasSummary"])

    def test_create_session_defaults_title(self) -> None:
        sid = asyncio.run(self._store.create_session())
        metadata = asyncio.run(self._store.read_metadata(sid))
        self.assertTrue(metadata.title.startswith("Session "))

    def test_load_missing_session_raises_not_found(self) -> None:
        with self.assertRaises(SessionNotFoundError) as ctx:
            asyncio.run(self._store.load_session("missing"))
        self.assertEqual("missing", ctx.exception.session_id)

    def test_load_skips_malformed_lines(self) -> None:
        records = self.capture_warnings()

        async def scenario() -> list[ConversationMessage]:
            sid = await self._store.create_session()
            await self._store.append_message(sid, _message(sid, "u1", "first"))
            with open(self._store.messages_path(sid), "a", encoding="utf-8") as f:
                f.write('{"truncated": \n')
                f.write("\n")
                f.write('{"type": "user"}\n')
            await self._store.append_message(sid, _message(sid, "u2", "second", "u1"))
            return await self._store.load_session(sid)

        loaded = asyncio.run(scenario())
        self.assertEqual(["u1", "u2"], [m.uuid for m in loaded])
        self.assertEqual(2, len([r for r in records if "malformed" in r]))

    def test_append_preserves_order(self) -> None:
        async def scenario() -> list[ConversationMessage]:
            sid = await self._store.create_session()
            for i in range(5):
                await self._store.append_message(sid, _message(sid, f"u{i}", f"m{i}"))
            return await self._store.load_session(sid)

        self.assertEqual([f"u{i}" for i in range(5)], [m.uuid for m in asyncio.run(scenario())])

    def test_append_to_missing_session_raises_not_found(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            asyncio.run(self._store.append_message("nope", _message("nope", "u1", "x")))

    def test_save_session_overwrites_and_creates_directories(self) -> None:
        async def scenario() -> list[ConversationMessage]:
            await self._store.save_session("imported", [_message("imported", "a", "1")])
            await self._store.save_session("imported", [_message("imported", "b", "2"), _message("imported", "c", "3")])
            await self._store.append_message("imported", _message("imported", "d", "4"))
            return await self._store.load_session("imported")

        loaded = asyncio.run(scenario())
        self.assertEqual(["b", "c", "d"], [m.uuid for m in loaded])

    def test_list_sessions_sorted_by_updated_desc(self) -> None:
        async def scenario() -> list[str]:
            ids = [await self._store.create_session(f"s{i}") for i in range(3)]
            await self._store.update_metadata(ids[0], {"updated": "2022-01-01T00:00:00.000Z"})
            await self._store.update_metadata(ids[1], {"updated": "2020-01-01T00:00:00.000Z"})
            await self._store.update_metadata(ids[2], {"updated": "2021-01-01T00:00:00.000Z"})
            sessions = await self._store.list_sessions()
            return [s.title for s in sessions]

        self.assertEqual(["s0", "s2", "s1"], asyncio.run(scenario()))

    def test_list_sessions_skips_unreadable_metadata(self) -> None:
        records = self.capture_warnings()

        async def scenario() -> list[str]:
            good = await self._store.create_session("good")
            bad = await self._store.create_session("bad")
            self._store.metadata_path(bad).write_text("{not json", encoding="utf-8")
            return [good, *(s.session_id for s in await self._store.list_sessions())]

        good, *listed = asyncio.run(scenario())
        self.assertEqual([good], listed)
        self.assertTrue(any("Failed to read session metadata" in r for r in records))

    def test_list_sessions_without_root_is_empty(self) -> None:
        self.assertEqual([], asyncio.run(self._store.list_sessions()))

    def test_delete_is_idempotent(self) -> None:
        async def scenario() -> bool:
            sid = await self._store.create_session()
            await self._store.delete_session(sid)
            await self._store.delete_session(sid)
            return await self._store.session_exists(sid)

        self.assertFalse(asyncio.run(scenario()))

    def test_update_metadata_merges_fields(self) -> None:
        async def scenario():
            sid = await self._store.create_session("before")
            await self._store.update_metadata(sid, {"title": "after", "messageCount": 7})
            return await self._store.read_metadata(sid)

        metadata = asyncio.run(scenario())
        self.assertEqual("after", metadata.title)
        self.assertEqual(7, metadata.message_count)
        self.assertEqual("/work", metadata.cwd)

    def test_rejects_path_like_session_ids(self) -> None:
        with self.assertRaises(ValueError):
            self._store.session_dir("../escape")

    def test_atomic_write_leaves_no_temp_files(self) -> None:
        sid = asyncio.run(self._store.create_session())
        asyncio.run(self._store.update_metadata(sid, {"title": "x"}))
        names = sorted(p.name for p in (self._root / sid).iterdir())
        self.assertEqual([MESSAGES_FILE, METADATA_FILE], names)
