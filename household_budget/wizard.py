"""CSV import wizard.

The wizard is a plain value object: every step is a method call that either
moves it to the next state or raises ``WizardStateError``.  Nothing touches the
database except the ``persist`` callable handed to :meth:`ImportWizard.commit`,
so a wizard can be serialized with :meth:`to_dict` between requests and driven
directly from tests.
"""

import uuid

from .csv_import import RowError, validate_row_date, validate_row_description
from .validators import PersistenceError, ValidationError, to_cents


UPLOAD = "upload"
PREVIEW = "preview"
CATEGORIZE = "categorize"
COMMITTING = "committing"
DONE = "done"
FAILED = "failed"

STATES = (UPLOAD, PREVIEW, CATEGORIZE, COMMITTING, DONE, FAILED)
TERMINAL_STATES = {DONE, FAILED}
MAX_COMMIT_ATTEMPTS = 3

NOTHING_TO_IMPORT = "nothing to import"
COMMIT_FAILED_MESSAGE = "Import failed. Nothing was saved, please try again."


class WizardStateError(RuntimeError):
    pass


class ImportBlockedError(WizardStateError):
    pass


class ImportWizard:
    def __init__(self, import_id=None, idempotency_key=None):
        self.import_id = import_id or str(uuid.uuid4())
        self.idempotency_key = idempotency_key or str(uuid.uuid4())
        self._reset()

    def _reset(self):
        self.state = UPLOAD
        self.candidates = []
        self.row_errors = []
        self.duplicates = []
        self.selected = []
        self.suggestions = {}
        self.assignments = {}
        self.message = ""
        self.last_error = None
        self.commit_attempts = 0
        self.imported_count = 0

    @classmethod
    def start(cls, category_count, **kwargs):
        if not category_count:
            raise ImportBlockedError("Create at least one category before importing transactions")
        return cls(**kwargs)

    @property
    def is_terminal(self):
        return self.state in TERMINAL_STATES

    def _require(self, *states):
        if self.state not in states:
            raise WizardStateError(f"Cannot do that while the import is in the '{self.state}' step")

    def _check_index(self, index):
        if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(self.candidates):
            raise ValidationError(f"Unknown row: {index}")
        return index

    def load(self, parse_result):
        self._require(UPLOAD)
        self.candidates = [dict(candidate) for candidate in parse_result.transactions]
        self.row_errors = [{"row_number": number, "reason": reason} for number, reason in parse_result.errors]
        self.duplicates = [False] * len(self.candidates)
        if not self.candidates:
            self.message = NOTHING_TO_IMPORT
            return self.state
        self.message = ""
        self.state = PREVIEW
        return self.state

    def flag_duplicates(self, flags):
        self._require(PREVIEW)
        flags = [bool(flag) for flag in flags]
        if len(flags) != len(self.candidates):
            raise ValueError("One duplicate flag is required per candidate row")
        self.duplicates = flags

    def edit_row(self, index, date=None, amount=None, description=None):
        self._require(PREVIEW)
        candidate = dict(self.candidates[self._check_index(index)])
        try:
            if date is not None:
                candidate["date"] = validate_row_date(date)
            if description is not None:
                candidate["description"] = validate_row_description(description)
        except RowError as exc:
            raise ValidationError(str(exc)) from None
        if amount is not None:
            candidate["amount_cents"] = to_cents(amount, allow_negative=True)
        self.candidates[index] = candidate
        self.duplicates[index] = False
        return candidate

    def default_selection(self):
        return [index for index, duplicate in enumerate(self.duplicates) if not duplicate]

    def select(self, indexes, suggestions=None):
        self._require(PREVIEW)
        selected = sorted({self._check_index(index) for index in indexes})
        if not selected:
            raise ValidationError("Please select at least one row to import")

        suggestions = suggestions or {}
        self.selected = selected
        self.suggestions = {}
        self.assignments = {}
        for index in selected:
            suggestion = dict(suggestions.get(index) or {})
            self.suggestions[index] = {
                "category_id": suggestion.get("category_id"),
                "match_type": suggestion.get("match_type", "none"),
                "confidence": suggestion.get("confidence", "low"),
                "suggested_name": suggestion.get("suggested_name", ""),
            }
            self.assignments[index] = suggestion.get("category_id")
        self.state = CATEGORIZE
        return self.state

    def assign(self, assignments):
        self._require(CATEGORIZE)
        for index, category_id in assignments.items():
            index = self._check_index(index)
            if index not in self.selected:
                raise ValidationError(f"Row {index} was not selected for import")
            self.assignments[index] = category_id or None

    def rows_to_commit(self):
        rows = []
        for index in self.selected:
            candidate = self.candidates[index]
            category_id = self.assignments.get(index)
            suggested = self.suggestions.get(index, {}).get("category_id")
            rows.append(
                {
                    "index": index,
                    "row_number": candidate["row_number"],
                    "date": candidate["date"],
                    "amount_cents": candidate["amount_cents"],
                    "description": candidate["description"],
                    "category_id": category_id,
                    "manual": category_id != suggested,
                }
            )
        return rows

    def commit(self, persist, valid_category_ids=None):
        self._require(CATEGORIZE)
        rows = self.rows_to_commit()
        missing = [row["row_number"] for row in rows if not row["category_id"]]
        if missing:
            raise ValidationError(f"Choose a category for every row (rows {', '.join(map(str, missing))})")
        if valid_category_ids is not None:
            unknown = sorted({row["category_id"] for row in rows} - set(valid_category_ids))
            if unknown:
                raise ValidationError("Selected category was not found")

        self.state = COMMITTING
        self.commit_attempts += 1
        try:
            imported = persist(rows, self.idempotency_key)
        except PersistenceError:
            self.last_error = COMMIT_FAILED_MESSAGE
            if self.commit_attempts >= MAX_COMMIT_ATTEMPTS:
                self.state = FAILED
                self.message = "Import failed after several attempts"
            else:
                self.state = CATEGORIZE
            raise
        except Exception:
            self.state = FAILED
            self.message = COMMIT_FAILED_MESSAGE
            raise

        self.imported_count = imported
        self.last_error = None
        self.state = DONE
        return imported

    def fail(self, reason):
        if self.is_terminal:
            raise WizardStateError("The import has already finished")
        self.state = FAILED
        self.message = reason

    def cancel(self):
        if self.is_terminal:
            raise WizardStateError("The import has already finished")
        self.idempotency_key = str(uuid.uuid4())
        self._reset()

    def to_dict(self):
        return {
            "import_id": self.import_id,
            "idempotency_key": self.idempotency_key,
            "state": self.state,
            "candidates": self.candidates,
            "row_errors": self.row_errors,
            "duplicates": self.duplicates,
            "selected": self.selected,
            "suggestions": {str(index): value for index, value in self.suggestions.items()},
            "assignments": {str(index): value for index, value in self.assignments.items()},
            "message": self.message,
            "last_error": self.last_error,
            "commit_attempts": self.commit_attempts,
            "imported_count": self.imported_count,
        }

    @classmethod
    def from_dict(cls, payload):
        if payload.get("state") not in STATES:
            raise WizardStateError(f"Unknown import state: {payload.get('state')}")
        wizard = cls(import_id=payload["import_id"], idempotency_key=payload["idempotency_key"])
        wizard.state = payload["state"]
        wizard.candidates = [dict(candidate) for candidate in payload.get("candidates", [])]
        wizard.row_errors = list(payload.get("row_errors", []))
        wizard.duplicates = [bool(flag) for flag in payload.get("duplicates", [])]
        wizard.selected = [int(index) for index in payload.get("selected", [])]
        wizard.suggestions = {int(index): value for index, value in (payload.get("suggestions") or {}).items()}
        wizard.assignments = {int(index): value for index, value in (payload.get("assignments") or {}).items()}
        wizard.message = payload.get("message", "")
        wizard.last_error = payload.get("last_error")
        wizard.commit_attempts = int(payload.get("commit_attempts", 0))
        wizard.imported_count = int(payload.get("imported_count", 0))
        return wizard
