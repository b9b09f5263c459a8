import json
import tempfile
import threading
import unittest
from pathlib import Path

from dashboard_backend.history_store import HistoryStore, make_message


def _pair(index: int):
    return [make_message("user", f"question {index}"), make_message("model", f"answer {index}")]


class HistoryStoreTests(unittest.TestCase):
    def test_keeps_most_recent_entries_fifo(self) -> None:
        store = HistoryStore(limit=20)

        for index in range(25):
            store.append("conv", _pair(index))

        history = store.get("conv")
        self.assertEqual(len(history), 20)
        self.assertEqual(history[0].joined_text(), "question 15")
        self.assertEqual(history[-1].joined_text(), "answer 24")

    def test_get_returns_copy(self) -> None:
        store = HistoryStore()
        store.append("conv", _pair(1))

        store.get("conv").clear()

        self.assertEqual(len(store.get("conv")), 2)

    def test_clear_and_list(self) -> None:
        store = HistoryStore()
        store.append("a", _pair(1))
        store.append("b", _pair(2))

        store.clear("a")

        self.assertEqual(store.get("a"), [])
        self.assertEqual(store.list_conversations(), ["b"])

    def test_rejects_non_positive_limit(self) -> None:
        with self.assertRaises(ValueError):
            HistoryStore(limit=0)

    def test_persists_and_hydrates(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "nested" / "history.json"
            HistoryStore(path, limit=4).append("conv", _pair(1) + _pair(2) + _pair(3))

            reloaded = HistoryStore(path, limit=4)

            self.assertEqual([m.joined_text() for m in reloaded.get("conv")], ["question 2", "answer 2", "question 3", "answer 3"])
            payload = json.loads(path.read_text(encoding="utf-8"))
            self.assertEqual(payload["conversations"]["conv"][0]["role"], "user")

    def test_corrupt_file_starts_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "history.json"
            path.write_text("{not json", encoding="utf-8")

            with self.assertLogs("dashboard.history", level="WARNING"):
                store = HistoryStore(path)

            self.assertEqual(store.list_conversations(), [])

    def test_invalid_message_is_skipped_on_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "history.json"
            valid = make_message("user", "kept", timestamp=2).model_dump()
            payload = {"conversations": {"c": [{"role": "assistant", "parts": [], "timestamp": 1}, valid]}}
            path.write_text(json.dumps(payload), encoding="utf-8")

            with self.assertLogs("dashboard.history", level="WARNING"):
                store = HistoryStore(path)

            self.assertEqual([m.joined_text() for m in store.get("c")], ["kept"])

    def test_concurrent_pairs_stay_adjacent(self) -> None:
        store = HistoryStore(limit=1000)
        threads = [threading.Thread(target=store.append, args=("conv", _pair(i))) for i in range(50)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        history = store.get("conv")
        self.assertEqual(len(history), 100)
        for user, model in zip(history[::2], history[1::2]):
            self.assertEqual(user.role, "user")
            self.assertEqual(user.joined_text().split()[-1], model.joined_text().split()[-1])


if __name__ == "__main__":
    unittest.main()
