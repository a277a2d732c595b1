import asyncio
import contextlib
import io

from conversation_history.__main__ import run_command
from conversation_history.bootstrap import HistoryRuntime
from conversation_history.history import CheckpointAdapter, ContextRecoveryEngine, SessionNotFoundError
from tests.history.base import HistoryTestCase


class RunCommandTests(HistoryTestCase):
    def setUp(self) -> None:
        super().setUp()
        self._runtime = HistoryRuntime(
            history=self._history,
            recovery=ContextRecoveryEngine(self._history),
            checkpoints=CheckpointAdapter(self._history),
            compressor=None,
            log_descriptions=[],
        )

    def _run(self, prepare, argv_for):
        async def scenario():
            context = await prepare()
            out = io.StringIO()
            with contextlib.redirect_stdout(out):
                code = await run_command(self._runtime, argv_for(context), token_limit=1000)
            return context, code, out.getvalue()

        return asyncio.run(scenario())

    async def _session_with_messages(self) -> str:
        sid = await self._history.create_session("CLI session")
        await self._runtime.checkpoints.save_complete_conversation(
            sid,
            [{"role": "user", "content": "Hello there"}, {"role": "assistant", "content": "General Kenobi"}],
        )
        return sid

    def test_list(self) -> None:
        sid, code, output = self._run(self._session_with_messages, lambda sid: ["list"])
        self.assertEqual(0, code)
        self.assertIn("CLI session", output)
        self.assertIn(sid, output)

    def test_list_empty(self) -> None:
        async def nothing():
            return None

        _, code, output = self._run(nothing, lambda _: ["list"])
        self.assertEqual(0, code)
        self.assertIn("No sessions.", output)

    def test_show(self) -> None:
        _, code, output = self._run(self._session_with_messages, lambda sid: ["show", sid])
        self.assertEqual(0, code)
        self.assertIn("Session summary: CLI session", output)
        self.assertIn("user: Hello there", output)
        self.assertIn("assistant: General Kenobi", output)

    def test_resume(self) -> None:
        _, code, output = self._run(self._session_with_messages, lambda sid: ["resume", sid, "500"])
        self.assertEqual(0, code)
        self.assertIn("Resume window: 2 messages", output)
        self.assertIn("limit 500", output)

    def test_title_and_delete(self) -> None:
        sid, code, output = self._run(self._session_with_messages, lambda sid: ["title", sid, "Renamed", "session"])
        self.assertEqual(0, code)
        self.assertIn("Renamed session", output)

        async def delete():
            await run_command(self._runtime, ["delete", sid], token_limit=1000)
            return await self._history.list_sessions()

        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual([], asyncio.run(delete()))

    def test_prune(self) -> None:
        _, code, output = self._run(self._session_with_messages, lambda sid: ["prune"])
        self.assertEqual(0, code)
        self.assertIn("Pruned 0 sessions.", output)

    def test_bad_usage(self) -> None:
        async def nothing():
            return None

        for argv in ([], ["show"], ["frobnicate"]):
            _, code, output = self._run(nothing, lambda _: argv)
            self.assertEqual(2, code)
            self.assertIn("usage:", output)

    def test_missing_session_propagates(self) -> None:
        with self.assertRaises(SessionNotFoundError):
            with contextlib.redirect_stdout(io.StringIO()):
                asyncio.run(run_command(self._runtime, ["show", "missing"], token_limit=1000))
