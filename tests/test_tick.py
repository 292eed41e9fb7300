import json
import os
import tempfile
import unittest
from pathlib import Path


class TestTick(unittest.TestCase):
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

    def _thread(self, repos):
        from council.kernel.thread import create_thread, thread_paths
        from council.kernel.workspace import init_workspace

        init_workspace()
        state = create_thread("checkout fails", repos)
        return state, thread_paths(state.id)

    def _put(self, paths, name: str, **fields) -> None:
        doc = {"thread_id": paths.thread_id, "summary": "s", "type": "question"}
        doc.update(fields)
        if "from_" in doc:
            doc["from"] = doc.pop("from_")
        (paths.outbox / name).write_text(json.dumps(doc), encoding="utf-8")

    def _set(self, thread_id: str, **changes):
        from council.kernel.thread import load_thread_state, save_thread_state

        st = load_thread_state(thread_id)
        for k, v in changes.items():
            setattr(st, k, v)
        save_thread_state(st)
        return st

    def test_question_is_delivered_and_recipient_pending(self) -> None:
        from council.kernel.mailbox import create_message, write_outbox_message
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            msg = create_message(thread_id=state.id, from_="A", to="B", type="question", summary="why 500?")
            written = write_outbox_message(msg)
            before = paths.transcript.read_text(encoding="utf-8")

            result = run_tick(state.id)

            self.assertEqual(result.status, "active")
            self.assertEqual(result.turn, 1)
            self.assertEqual(result.new_pending_repos, ["B"])
            self.assertEqual([m.message_id for m in result.processed_messages], [msg.message_id])
            self.assertEqual(result.undelivered, [])

            st = load_thread_state(state.id)
            self.assertEqual(st.turn, 1)
            self.assertEqual(st.pending_for, ["B"])
            self.assertEqual(st.last_message_from, "A")
            self.assertEqual(st.last_message_to, "B")
            self.assertFalse(written.exists())
            self.assertTrue((paths.inbox / written.name).exists())

            added = paths.transcript.read_text(encoding="utf-8")[len(before):]
            lines = [ln for ln in added.splitlines() if ln.strip()]
            self.assertEqual(len(lines), 1)
            self.assertIn("A -> B: why 500?", lines[0])
            self.assertNotIn("(question)", lines[0])
        finally:
            cleanup()

    def test_resolution_resolves_thread(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            self._set(state.id, pending_for=["B"])
            self._put(
                paths,
                "r.json",
                message_id="msg_1",
                from_="B",
                to="A",
                type="resolution",
                summary="fixed nonce encoding",
                timestamp="2024-01-15T10:00:00.000Z",
            )

            result = run_tick(state.id)
            self.assertEqual(result.status, "resolved")
            st = load_thread_state(state.id)
            self.assertEqual(st.status, "resolved")
            self.assertEqual(st.pending_for, [])
            self.assertEqual(st.turn, 1)
            self.assertIn("fixed nonce encoding (resolution)", paths.transcript.read_text(encoding="utf-8"))
        finally:
            cleanup()

    def test_resolution_overrides_question_addressing(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B", "C"])
            self._put(paths, "1.json", message_id="m1", from_="A", to="C", timestamp="2024-01-15T10:00:00.000Z")
            self._put(
                paths, "2.json", message_id="m2", from_="B", to="A", type="resolution", timestamp="2024-01-15T10:00:05.000Z"
            )

            result = run_tick(state.id)
            self.assertEqual(result.status, "resolved")
            self.assertEqual(result.new_pending_repos, ["C", "A"])
            st = load_thread_state(state.id)
            self.assertEqual(st.pending_for, [])
            self.assertEqual(st.status, "resolved")
        finally:
            cleanup()

    def test_broadcast_pends_everyone_but_sender(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B", "C"])
            self._put(
                paths,
                "b.json",
                message_id="m1",
                from_="A",
                to="ALL",
                type="context_injection",
                timestamp="2024-01-15T10:00:00.000Z",
            )
            run_tick(state.id)
            self.assertEqual(sorted(load_thread_state(state.id).pending_for), ["B", "C"])
        finally:
            cleanup()

    def test_pending_set_is_replaced_not_merged(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B", "C"])
            self._set(state.id, pending_for=["C"])
            self._put(paths, "1.json", message_id="m1", from_="A", to="B", timestamp="2024-01-15T10:00:00.000Z")

            result = run_tick(state.id)
            self.assertEqual(result.pending_repos, ["C"])
            self.assertEqual(load_thread_state(state.id).pending_for, ["B"])
        finally:
            cleanup()

    def test_empty_outbox_ticks_increment_turn_and_keep_pending(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, _ = self._thread(["A", "B"])
            first = run_tick(state.id)
            after_first = load_thread_state(state.id)
            second = run_tick(state.id)
            after_second = load_thread_state(state.id)

            self.assertEqual((first.turn, second.turn), (1, 2))
            self.assertEqual(after_first.pending_for, after_second.pending_for)
            self.assertEqual(after_second.status, "active")
        finally:
            cleanup()

    def test_transcript_follows_timestamp_order(self) -> None:
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            # Filename order is the reverse of timestamp order.
            self._put(paths, "a.json", message_id="m2", from_="B", to="A", summary="second", timestamp="2024-01-15T10:00:09.000Z")
            self._put(paths, "z.json", message_id="m1", from_="A", to="B", summary="first", timestamp="2024-01-15T10:00:01.000Z")

            result = run_tick(state.id)
            self.assertEqual([m.message_id for m in result.processed_messages], ["m1", "m2"])
            text = paths.transcript.read_text(encoding="utf-8")
            self.assertLess(text.index("first"), text.index("second"))
            self.assertEqual(sorted(p.name for p in paths.inbox.iterdir()), ["a.json", "z.json"])
        finally:
            cleanup()

    def test_human_messages_use_human_arrow(self) -> None:
        from council.kernel.human import ask
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            ask(state.id, to="A", summary="check the logs", questions=["any 500s?"])
            result = run_tick(state.id)
            self.assertEqual(result.new_pending_repos, ["A"])
            self.assertIn("HUMAN >>> A: check the logs", paths.transcript.read_text(encoding="utf-8"))
        finally:
            cleanup()

    def test_max_turns_short_circuits_without_mutation(self) -> None:
        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            self._set(state.id, turn=3, pending_for=["B"])
            self._put(paths, "1.json", message_id="m1", from_="B", to="A", timestamp="2024-01-15T10:00:00.000Z")
            transcript_before = paths.transcript.read_text(encoding="utf-8")

            result = run_tick(state.id, max_turns=3)
            self.assertEqual(result.status, "max_turns")
            self.assertEqual(result.turn, 3)

            st = load_thread_state(state.id)
            self.assertEqual(st.turn, 3)
            self.assertEqual(st.pending_for, ["B"])
            self.assertTrue((paths.outbox / "1.json").exists())
            self.assertEqual(paths.transcript.read_text(encoding="utf-8"), transcript_before)
        finally:
            cleanup()

    def test_max_turns_defaults_to_registry(self) -> None:
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, _ = self._thread(["A", "B"])
            self._set(state.id, turn=14)
            self.assertEqual(run_tick(state.id).status, "max_turns")
        finally:
            cleanup()

    def test_inactive_thread_is_rejected_before_mutation(self) -> None:
        from council.errors import ThreadNotActiveError
        from council.kernel.thread import close_thread, load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            self._put(paths, "1.json", message_id="m1", from_="A", to="B", timestamp="2024-01-15T10:00:00.000Z")
            close_thread(state.id, status="paused")

            with self.assertRaises(ThreadNotActiveError):
                run_tick(state.id)
            st = load_thread_state(state.id)
            self.assertEqual(st.turn, 0)
            self.assertEqual(st.status, "paused")
            self.assertTrue((paths.outbox / "1.json").exists())
        finally:
            cleanup()

    def test_unknown_thread(self) -> None:
        from council.errors import ThreadNotFoundError
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            from council.kernel.workspace import init_workspace

            init_workspace()
            with self.assertRaises(ThreadNotFoundError) as ctx:
                run_tick("th_missing")
            self.assertEqual(ctx.exception.code, "thread_not_found")
        finally:
            cleanup()

    def test_invalid_file_stays_in_outbox(self) -> None:
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            (paths.outbox / "partial.json").write_text('{"thread_id": "', encoding="utf-8")
            result = run_tick(state.id)
            self.assertEqual(result.processed_messages, [])
            self.assertTrue((paths.outbox / "partial.json").exists())
        finally:
            cleanup()

    def test_concurrent_ticks_on_one_thread_serialize(self) -> None:
        import threading

        from council.kernel.thread import load_thread_state
        from council.kernel.tick import run_tick

        _, cleanup = self._with_home()
        try:
            state, paths = self._thread(["A", "B"])
            for i in range(5):
                self._put(
                    paths,
                    f"m{i}.json",
                    message_id=f"msg_{i}",
                    from_="A",
                    to="B",
                    summary=f"note-{i}",
                    timestamp=f"2024-01-15T10:00:0{i}.000Z",
                )

            results = []
            errors = []
            start = threading.Barrier(8)

            def worker() -> None:
                try:
                    start.wait()
                    results.append(run_tick(state.id))
                except Exception as e:
                    errors.append(e)

            workers = [threading.Thread(target=worker) for _ in range(8)]
            for t in workers:
                t.start()
            for t in workers:
                t.join(30)

            self.assertEqual(errors, [])
            self.assertEqual(sorted(r.turn for r in results), list(range(1, 9)))
            processed = [m.message_id for r in results for m in r.processed_messages]
            self.assertEqual(sorted(processed), [f"msg_{i}" for i in range(5)])
            self.assertEqual(len(list(paths.inbox.iterdir())), 5)
            self.assertEqual(list(paths.outbox.iterdir()), [])

            text = paths.transcript.read_text(encoding="utf-8")
            for i in range(5):
                self.assertEqual(sum(1 for ln in text.splitlines() if f"A -> B: note-{i}" in ln), 1)
            self.assertEqual(load_thread_state(state.id).turn, 8)
        finally:
            cleanup()


if __name__ == "__main__":
    unittest.main()
