import unittest
from unittest import mock

from entries import EntryReconciler, latest_entry, normalize_entry, to_number_or_none
from fakes import FakeRecordStore
from remote import BackendError
from state import EditingContext, EntryForm, SessionState, ValidationError


def signed_in_state(user_id="user-1"):
    return SessionState(session_id="sid", user_id=user_id, access_token="token")


class NormalizationTests(unittest.TestCase):
    def test_to_number_or_none(self):
        self.assertEqual(to_number_or_none(" 70.2 "), 70.2)
        self.assertEqual(to_number_or_none("70"), 70)
        self.assertIsInstance(to_number_or_none("70.0"), int)
        self.assertIsNone(to_number_or_none(""))
        self.assertIsNone(to_number_or_none("   "))
        self.assertIsNone(to_number_or_none(None))
        self.assertIsNone(to_number_or_none("abc"))
        self.assertIsNone(to_number_or_none("inf"))
        self.assertIsNone(to_number_or_none("nan"))

    def test_blank_knee_pain_defaults_to_zero(self):
        row = normalize_entry(EntryForm(date="2024-01-05", weight="70.2", knee_pain=""), "user-1")
        self.assertEqual(row["date"], "2024-01-05")
        self.assertEqual(row["weight"], 70.2)
        self.assertEqual(row["knee_pain"], 0)
        self.assertEqual(row["user_id"], "user-1")
        self.assertIsNone(row["bp_s"])
        self.assertIsNone(row["notes"])

    def test_integer_columns_round_and_knee_is_clamped(self):
        row = normalize_entry(
            EntryForm(date="2024-01-05", bp_s="120.6", bp_d="80", exercise_min="30.4", knee_pain="15"),
            "user-1",
        )
        self.assertEqual(row["bp_s"], 121)
        self.assertEqual(row["bp_d"], 80)
        self.assertEqual(row["exercise_min"], 30)
        self.assertEqual(row["knee_pain"], 10)
        row = normalize_entry(EntryForm(date="2024-01-05", knee_pain="-2"), "user-1")
        self.assertEqual(row["knee_pain"], 0)

    def test_notes_kept_as_typed_unless_blank(self):
        row = normalize_entry(EntryForm(date="2024-01-05", notes="  sore left knee "), "user-1")
        self.assertEqual(row["notes"], "  sore left knee ")
        row = normalize_entry(EntryForm(date="2024-01-05", notes=" \n "), "user-1")
        self.assertIsNone(row["notes"])

    def test_date_is_required_and_must_be_a_calendar_day(self):
        with self.assertRaises(ValidationError):
            normalize_entry(EntryForm(date=""), "user-1")
        with self.assertRaises(ValidationError):
            normalize_entry(EntryForm(date="2024-02-30"), "user-1")
        with self.assertRaises(ValidationError):
            normalize_entry(EntryForm(date="05/01/2024"), "user-1")


class EntryReconcilerTests(unittest.TestCase):
    def setUp(self):
        self.store = FakeRecordStore()
        self.state = signed_in_state()
        self.reconciler = EntryReconciler(self.store, self.state)

    def _rows(self, **filters):
        return self.store.rows("body_entries", user_id="user-1", **filters)

    def test_save_creates_one_normalized_entry(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70.2", knee_pain=""))
        rows = self._rows(date="2024-01-05")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["weight"], 70.2)
        self.assertEqual(rows[0]["knee_pain"], 0)
        self.assertEqual(self.state.entries[0]["id"], rows[0]["id"])

    def test_save_without_date_makes_no_remote_call(self):
        with self.assertRaises(ValidationError):
            self.reconciler.save(EntryForm(date="", weight="70"))
        self.assertEqual(self.store.calls, [])
        self.assertEqual(self._rows(), [])

    def test_save_requires_sign_in(self):
        reconciler = EntryReconciler(self.store, SessionState(session_id="anon"))
        with self.assertRaises(ValidationError):
            reconciler.save(EntryForm(date="2024-01-05"))
        self.assertEqual(self.store.calls, [])

    def test_saving_same_date_twice_updates_in_place(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.reconciler.save(EntryForm(date="2024-01-05", weight="69.5", notes="after run"))
        rows = self._rows(date="2024-01-05")
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]["weight"], 69.5)
        self.assertEqual(rows[0]["notes"], "after run")

    def test_save_resets_form_and_edit_session(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.reconciler.start_edit(self.state.entries[0])
        self.assertEqual(self.state.form.weight, "70")
        self.reconciler.save(self.state.form, self.state.editing)
        self.assertIsNone(self.state.editing)
        self.assertEqual(self.state.form.weight, "")
        self.assertEqual(self.state.form.knee_pain, "0")
        self.assertFalse(self.state.is_busy("entries"))

    def test_edit_that_moves_the_date_leaves_one_entry_under_new_date(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        record = self.state.entries[0]
        self.reconciler.start_edit(record)
        form = EntryForm(date="2024-01-06", weight="71", knee_pain="3")
        self.reconciler.save(form, self.state.editing)
        self.assertEqual(self._rows(date="2024-01-05"), [])
        moved = self._rows(date="2024-01-06")
        self.assertEqual(len(moved), 1)
        self.assertEqual(moved[0]["weight"], 71)
        self.assertEqual(moved[0]["knee_pain"], 3)
        self.assertIn(("delete", "body_entries"), self.store.calls)

    def test_edit_keeping_the_date_does_not_delete(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.store.calls.clear()
        editing = EditingContext(self.state.entries[0]["id"], "2024-01-05")
        self.reconciler.save(EntryForm(date="2024-01-05", weight="72"), editing)
        self.assertNotIn(("delete", "body_entries"), self.store.calls)
        self.assertEqual(self._rows()[0]["weight"], 72)

    def test_backend_failure_keeps_form_and_releases_busy(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.reconciler.start_edit(self.state.entries[0])
        editing = self.state.editing
        self.store.fail_next["upsert"] = BackendError("permission denied", status_code=403)
        form = EntryForm(date="2024-01-05", weight="68")
        self.state.form = form
        with self.assertRaises(BackendError):
            self.reconciler.save(form, editing)
        self.assertIs(self.state.form, form)
        self.assertEqual(self.state.editing, editing)
        self.assertFalse(self.state.is_busy("entries"))

    def test_delete_requires_confirmation(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.store.calls.clear()
        record_id = self.state.entries[0]["id"]
        self.assertFalse(self.reconciler.delete(record_id, confirmed=False))
        self.assertEqual(self.store.calls, [])
        self.assertEqual(len(self._rows()), 1)

    def test_delete_confirmed_removes_and_cancels_matching_edit(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        record = self.state.entries[0]
        self.reconciler.start_edit(record)
        self.assertTrue(self.reconciler.delete(record["id"], confirmed=True))
        self.assertEqual(self._rows(), [])
        self.assertEqual(self.state.entries, [])
        self.assertIsNone(self.state.editing)

    def test_delete_is_scoped_to_the_user(self):
        self.store.insert("body_entries", {"user_id": "user-2", "date": "2024-01-05", "id": "other"})
        self.reconciler.delete("other", confirmed=True)
        self.assertEqual(len(self.store.rows("body_entries", user_id="user-2")), 1)

    def test_load_orders_newest_date_first_and_only_own_rows(self):
        for day in ("2024-01-03", "2024-01-07", "2024-01-05"):
            self.store.insert("body_entries", {"user_id": "user-1", "date": day})
        self.store.insert("body_entries", {"user_id": "user-2", "date": "2024-01-09"})
        rows = self.reconciler.load()
        self.assertEqual([r["date"] for r in rows], ["2024-01-07", "2024-01-05", "2024-01-03"])
        self.assertEqual(latest_entry(rows)["date"], "2024-01-07")
        self.assertIsNone(latest_entry([]))

    def test_edit_onto_an_occupied_date_merges_into_one_row(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.reconciler.save(EntryForm(date="2024-01-06", weight="80", notes="old note"))
        moving = next(e for e in self.state.entries if e["date"] == "2024-01-05")
        self.reconciler.start_edit(moving)
        self.reconciler.save(EntryForm(date="2024-01-06", weight="71", knee_pain="2"), self.state.editing)
        self.assertEqual(self._rows(date="2024-01-05"), [])
        (row,) = self._rows(date="2024-01-06")
        self.assertEqual(row["weight"], 71)
        self.assertEqual(row["knee_pain"], 2)
        self.assertIsNone(row["notes"])
        self.assertEqual([e["date"] for e in self.state.entries], ["2024-01-06"])

    def test_load_breaks_date_ties_by_newest_created(self):
        rows = self.store.tables["body_entries"]
        rows.append({"id": "a", "user_id": "user-1", "date": "2024-01-05", "created_at": 1})
        rows.append({"id": "b", "user_id": "user-1", "date": "2024-01-05", "created_at": 3})
        rows.append({"id": "c", "user_id": "user-1", "date": "2024-01-04", "created_at": 5})
        self.assertEqual([r["id"] for r in self.reconciler.load()], ["b", "a", "c"])

    def test_load_asks_for_date_then_created_descending(self):
        store = mock.Mock()
        store.select.return_value = []
        EntryReconciler(store, self.state).load()
        store.select.assert_called_once_with(
            "body_entries", {"user_id": "user-1"}, order=(("date", True), ("created_at", True))
        )

    def test_superseded_load_is_discarded(self):
        self.store.insert("body_entries", {"user_id": "user-1", "date": "2024-01-05"})
        newer = []

        def issue_newer_load():
            # B is issued and answered while A is still in flight.
            self.store.insert("body_entries", {"user_id": "user-1", "date": "2024-01-06"})
            newer.append(EntryReconciler(self.store, self.state).load())

        original_select = self.store.select

        def slow_select(*args, **kwargs):
            self.store.select = original_select
            issue_newer_load()
            return [{"id": "stale", "user_id": "user-1", "date": "1999-01-01"}]

        self.store.select = slow_select
        result = self.reconciler.load()
        self.assertIsNone(result)
        self.assertEqual([r["date"] for r in self.state.entries], ["2024-01-06", "2024-01-05"])
        self.assertEqual(newer[0], self.state.entries)

    def test_cancel_edit_resets_form(self):
        self.reconciler.save(EntryForm(date="2024-01-05", weight="70"))
        self.reconciler.start_edit(self.state.entries[0])
        self.reconciler.cancel_edit()
        self.assertIsNone(self.state.editing)
        self.assertEqual(self.state.form.weight, "")


if __name__ == "__main__":
    unittest.main()
