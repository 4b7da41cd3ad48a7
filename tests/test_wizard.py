import pytest

from household_budget.csv_import import parse_bank_csv
from household_budget.validators import PersistenceError, ValidationError
from household_budget.wizard import (
    CATEGORIZE,
    DONE,
    FAILED,
    MAX_COMMIT_ATTEMPTS,
    NOTHING_TO_IMPORT,
    PREVIEW,
    UPLOAD,
    ImportBlockedError,
    ImportWizard,
    WizardStateError,
)

CSV_TEXT = (
    "Date,Amount,Description\n"
    "2026-01-05,12.50,SAFEWAY #1234\n"
    "2026-01-06,bad,Broken row\n"
    "2026-01-07,40.00,SHELL OIL\n"
    "2026-01-08,3.25,STARBUCKS\n"
)


class RecordingStore:
    """Persists committed rows keyed by idempotency key, optionally failing first."""

    def __init__(self, failures=0):
        self.failures = failures
        self.calls = 0
        self.batches = {}

    def persist(self, rows, idempotency_key):
        self.calls += 1
        if self.failures:
            self.failures -= 1
            raise PersistenceError("database is locked")
        if idempotency_key not in self.batches:
            self.batches[idempotency_key] = list(rows)
        return len(self.batches[idempotency_key])

    @property
    def persisted_rows(self):
        return [row for rows in self.batches.values() for row in rows]


def loaded_wizard():
    wizard = ImportWizard.start(category_count=2)
    wizard.load(parse_bank_csv(CSV_TEXT))
    return wizard


def categorized_wizard(keep=(0, 1, 2)):
    wizard = loaded_wizard()
    wizard.select(list(keep), {0: {"category_id": "groceries", "match_type": "keyword", "confidence": "high"}})
    wizard.assign({index: category for index, category in {1: "gas", 2: "coffee"}.items() if index in keep})
    return wizard


def test_start_is_blocked_without_categories():
    with pytest.raises(ImportBlockedError):
        ImportWizard.start(category_count=0)


def test_load_moves_to_preview_and_keeps_row_errors():
    wizard = loaded_wizard()

    assert wizard.state == PREVIEW
    assert len(wizard.candidates) == 3
    assert wizard.row_errors == [{"row_number": 3, "reason": "Invalid amount"}]
    assert wizard.default_selection() == [0, 1, 2]


def test_header_only_upload_stays_in_upload():
    wizard = ImportWizard.start(category_count=1)

    state = wizard.load(parse_bank_csv("Date,Amount,Description\n"))

    assert state == UPLOAD
    assert wizard.message == NOTHING_TO_IMPORT


def test_duplicate_flags_drive_default_selection():
    wizard = loaded_wizard()

    wizard.flag_duplicates([False, True, False])

    assert wizard.default_selection() == [0, 2]
    with pytest.raises(ValueError):
        wizard.flag_duplicates([True])


def test_edit_row_revalidates_and_clears_duplicate_flag():
    wizard = loaded_wizard()
    wizard.flag_duplicates([True, False, False])

    edited = wizard.edit_row(0, date="2026-01-09", amount="13.10", description="  Safeway Fuel ")

    assert edited["date"] == "2026-01-09"
    assert edited["amount_cents"] == 1310
    assert edited["description"] == "Safeway Fuel"
    assert wizard.duplicates[0] is False
    with pytest.raises(ValidationError):
        wizard.edit_row(1, date="2026-13-01")
    with pytest.raises(ValidationError):
        wizard.edit_row(1, description="x" * 101)
    with pytest.raises(ValidationError):
        wizard.edit_row(7, amount="1")


def test_select_requires_rows_and_prefills_suggestions():
    wizard = loaded_wizard()
    with pytest.raises(ValidationError):
        wizard.select([])

    wizard.select([2, 0], {0: {"category_id": "groceries", "match_type": "keyword", "confidence": "high", "suggested_name": "Groceries"}})

    assert wizard.state == CATEGORIZE
    assert wizard.selected == [0, 2]
    assert wizard.assignments == {0: "groceries", 2: None}
    assert wizard.suggestions[2]["match_type"] == "none"


def test_assign_only_accepts_selected_rows():
    wizard = loaded_wizard()
    wizard.select([0])

    with pytest.raises(ValidationError):
        wizard.assign({1: "gas"})


def test_commit_requires_every_row_categorized():
    wizard = loaded_wizard()
    wizard.select([0, 1])
    store = RecordingStore()

    with pytest.raises(ValidationError):
        wizard.commit(store.persist)

    assert wizard.state == CATEGORIZE
    assert store.calls == 0


def test_commit_rejects_unknown_categories():
    wizard = categorized_wizard()

    with pytest.raises(ValidationError):
        wizard.commit(RecordingStore().persist, valid_category_ids={"groceries", "gas"})


def test_commit_persists_exactly_the_accepted_rows():
    wizard = categorized_wizard(keep=(0, 2))
    wizard.assignments[2] = "gas"
    store = RecordingStore()

    imported = wizard.commit(store.persist)

    assert imported == 2
    assert wizard.state == DONE
    assert [row["description"] for row in store.persisted_rows] == ["SAFEWAY #1234", "STARBUCKS"]
    assert [row["manual"] for row in store.persisted_rows] == [False, True]


def test_retry_after_transient_failure_does_not_double_insert():
    wizard = categorized_wizard()
    store = RecordingStore(failures=1)

    with pytest.raises(PersistenceError):
        wizard.commit(store.persist)
    assert wizard.state == CATEGORIZE
    assert wizard.last_error

    first_key = wizard.idempotency_key
    assert wizard.commit(store.persist) == 3
    assert wizard.idempotency_key == first_key
    assert len(store.persisted_rows) == 3
    assert wizard.last_error is None


def test_repeated_failures_move_to_failed():
    wizard = categorized_wizard()
    store = RecordingStore(failures=MAX_COMMIT_ATTEMPTS)

    for _ in range(MAX_COMMIT_ATTEMPTS):
        with pytest.raises(PersistenceError):
            wizard.commit(store.persist)

    assert wizard.state == FAILED
    assert store.persisted_rows == []
    with pytest.raises(WizardStateError):
        wizard.commit(store.persist)


def test_illegal_transitions_raise():
    wizard = ImportWizard.start(category_count=1)

    with pytest.raises(WizardStateError):
        wizard.select([0])
    with pytest.raises(WizardStateError):
        wizard.assign({0: "x"})
    with pytest.raises(WizardStateError):
        wizard.commit(RecordingStore().persist)


def test_cancel_resets_to_fresh_upload():
    wizard = categorized_wizard()
    old_key = wizard.idempotency_key

    wizard.cancel()

    assert wizard.state == UPLOAD
    assert wizard.candidates == []
    assert wizard.assignments == {}
    assert wizard.idempotency_key != old_key


def test_fail_and_cancel_are_rejected_after_done():
    wizard = categorized_wizard()
    wizard.commit(RecordingStore().persist)

    with pytest.raises(WizardStateError):
        wizard.cancel()
    with pytest.raises(WizardStateError):
        wizard.fail("late")


def test_fail_moves_non_terminal_wizard_to_failed():
    wizard = loaded_wizard()

    wizard.fail("Upload abandoned")

    assert wizard.state == FAILED
    assert wizard.message == "Upload abandoned"


def test_state_survives_serialization():
    wizard = categorized_wizard()
    restored = ImportWizard.from_dict(wizard.to_dict())

    assert restored.state == CATEGORIZE
    assert restored.import_id == wizard.import_id
    assert restored.idempotency_key == wizard.idempotency_key
    assert restored.assignments == {0: "groceries", 1: "gas", 2: "coffee"}
    assert restored.rows_to_commit() == wizard.rows_to_commit()


def test_from_dict_rejects_unknown_state():
    payload = ImportWizard().to_dict()
    payload["state"] = "exploded"

    with pytest.raises(WizardStateError):
        ImportWizard.from_dict(payload)
