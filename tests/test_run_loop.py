import os
import sys
import tempfile
import time
import unittest
from pathlib import Path


AGENT_SCRIPT = """
import json, os
from datetime import datetime, timezone

out = os.environ["COUNCIL_OUTBOX"]
doc = {
    "thread_id": os.environ["COUNCIL_THREAD_ID"],
    "message_id": "msg_000000_agnt",
    "from": os.environ["COUNCIL_REPO"],
    "to": "app",
    "type": "resolution",
    "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    "summary": "fixed nonce encoding",
}
tmp = os.path.join(out, "reply.tmp")
with open(tmp, "w") as f:
    json.dump(doc, f)
os.replace(tmp, os.path.join(out, "reply_api_to_app.json"))
print("done")
"""


class TestRunLoop(unittest.TestCase):
    def _with_home(self):
        old_home = os.environ.get("COUNCIL_HOME")
        td_ctx = tempfile.TemporaryDirectory()
        td = td_ctx.__enter__()
        os.environ["COUNCIL_HOME"] = str(Path(td) / ".council")

        def cleanup() -> None:
            td_ctx.__exit__(None, None, None)
            if old_home is None:
                os.environ.pop("COUNCIL_HOME", None)
            else:
                os.environ["COUNCIL_HOME"] = old_home

        return td, cleanup

    def _thread(self, td: str):
        from council.kernel.thread import create_thread
        from council.kernel.workspace import init_workspace
        from council.paths import registry_path

        init_workspace()
        lines = ["repos:"]
        for name in ("app", "api"):
            (Path(td) / name).mkdir(exist_ok=True)
            lines += [f"  {name}:", f'    path: "{(Path(td) / name).as_posix()}"']
        registry_path().write_text("\n".join(lines) + "\n", encoding="utf-8")
        return create_thread("checkout", ["app", "api"])

    def _send(self, thread_id: str, *, frm: str, to: str, type: str = "question", summary: str = "s"):
        from council.kernel.mailbox import create_message, write_outbox_message

        msg = create_message(thread_id=thread_id, from_=frm, to=to, type=type, summary=summary)
        write_outbox_message(msg)
        return msg

    def test_ticks_on_outbox_activity_until_resolved(self) -> None:
        from council.daemon.run_loop import RunLoop
        from council.kernel.thread import load_thread_state

        td, cleanup = self._with_home()
        loop = None
        try:
            state = self._thread(td)
            loop = RunLoop(state.id, home=None, tick_delay=0.1)
            loop.start()
            self.assertTrue(loop.is_running())

            self._send(state.id, frm="app", to="api", summary="why 500?")
            for _ in range(100):
                if loop.results:
                    break
                time.sleep(0.05)
            self.assertEqual(load_thread_state(state.id).pending_for, ["api"])

            self._send(state.id, frm="api", to="app", type="resolution", summary="fixed")
            self.assertEqual(loop.wait(10), "resolved")
            self.assertFalse(loop.is_running())
            self.assertFalse(loop.watcher.is_active())
            st = load_thread_state(state.id)
            self.assertEqual(st.status, "resolved")
            self.assertEqual(st.pending_for, [])
        finally:
            if loop is not None:
                loop.stop()
            cleanup()

    def test_existing_outbox_is_ticked_on_start(self) -> None:
        from council.daemon.run_loop import RunLoop

        td, cleanup = self._with_home()
        try:
            state = self._thread(td)
            self._send(state.id, frm="app", to="api", type="resolution", summary="already fixed")
            loop = RunLoop(state.id, tick_delay=0.05)
            self.assertEqual(loop.run(timeout=10), "resolved")
            self.assertEqual(len(loop.results), 1)
        finally:
            cleanup()

    def test_max_turns_closes_thread_as_blocked(self) -> None:
        from council.daemon.run_loop import RunLoop
        from council.kernel.thread import load_thread_state, save_thread_state, thread_paths

        td, cleanup = self._with_home()
        try:
            state = self._thread(td)
            st = load_thread_state(state.id)
            st.turn = 2
            save_thread_state(st)
            self._send(state.id, frm="app", to="api")

            loop = RunLoop(state.id, tick_delay=0.05, max_turns=2)
            self.assertEqual(loop.run(timeout=10), "max_turns")
            st = load_thread_state(state.id)
            self.assertEqual(st.status, "blocked")
            self.assertEqual(st.turn, 2)
            self.assertIn("max turns", thread_paths(state.id).resolution.read_text(encoding="utf-8"))
        finally:
            cleanup()

    def test_timeout_stops_loop(self) -> None:
        from council.daemon.run_loop import RunLoop
        from council.kernel.thread import load_thread_state

        td, cleanup = self._with_home()
        try:
            state = self._thread(td)
            loop = RunLoop(state.id, tick_delay=0.05)
            self.assertEqual(loop.run(timeout=0.3), "timeout")
            self.assertFalse(loop.watcher.is_active())
            self.assertEqual(load_thread_state(state.id).status, "active")
        finally:
            cleanup()

    def test_filesystem_error_in_tick_is_logged_and_loop_survives(self) -> None:
        from unittest import mock

        from council.daemon.run_loop import RunLoop

        td, cleanup = self._with_home()
        loop = None
        try:
            state = self._thread(td)
            loop = RunLoop(state.id, tick_delay=0.05)
            failing = mock.Mock(side_effect=PermissionError("inbox is read-only"))
            with mock.patch("council.daemon.run_loop.run_tick", failing):
                loop.start()
                with self.assertLogs("council.run_loop", level="ERROR") as logs:
                    loop.schedule_tick()
                    for _ in range(100):
                        if failing.call_count:
                            break
                        time.sleep(0.05)
                    time.sleep(0.1)
            self.assertGreaterEqual(failing.call_count, 1)
            self.assertTrue(any("tick failed" in line for line in logs.output))
            self.assertTrue(loop.is_running())
            self.assertEqual(loop.results, [])
        finally:
            if loop is not None:
                loop.stop()
            cleanup()

    def test_rejects_inactive_thread(self) -> None:
        from council.daemon.run_loop import RunLoop
        from council.errors import ThreadNotActiveError
        from council.kernel.thread import close_thread

        td, cleanup = self._with_home()
        try:
            state = self._thread(td)
            close_thread(state.id, status="abandoned")
            with self.assertRaises(ThreadNotActiveError):
                RunLoop(state.id).start()
        finally:
            cleanup()

    def test_spawned_agent_response_resolves_thread(self) -> None:
        from council.daemon.run_loop import RunLoop
        from council.kernel.thread import load_thread_state, save_thread_state
        from council.runners.spawner import SpawnOptions, Supervisor

        td, cleanup = self._with_home()
        sup = Supervisor()
        try:
            state = self._thread(td)
            st = load_thread_state(state.id)
            st.pending_for = ["api"]
            save_thread_state(st)

            opts = SpawnOptions(command=sys.executable, extra_args=["-c", AGENT_SCRIPT])
            loop = RunLoop(state.id, sup, spawn=True, spawn_options=opts, tick_delay=0.1)
            self.assertEqual(loop.run(timeout=30), "resolved")

            sessions = sup.get_thread_sessions(state.id)
            self.assertEqual([s.repo for s in sessions], ["api"])
            self.assertEqual(load_thread_state(state.id).status, "resolved")
        finally:
            sup.kill_all()
            cleanup()


if __name__ == "__main__":
    unittest.main()
