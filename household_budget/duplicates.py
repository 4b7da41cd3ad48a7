import re
from dataclasses import dataclass

from rapidfuzz import fuzz


DEFAULT_SIMILARITY_THRESHOLD = 80


@dataclass(frozen=True)
class DuplicateMatch:
    index: int
    existing: dict
    similarity: float

    def to_dict(self):
        return {
            "index": self.index,
            "existing_id": self.existing.get("id"),
            "similarity": round(self.similarity, 1),
        }


def normalize_description(value):
    return re.sub(r"\s+", " ", (value or "").strip()).casefold()


def fingerprint(transaction):
    return (
        transaction["date"],
        int(transaction["amount_cents"]),
        normalize_description(transaction.get("description")),
    )


def description_similarity(left, right):
    left = normalize_description(left)
    right = normalize_description(right)
    if left == right:
        return 100.0
    return fuzz.ratio(left, right)


def find_duplicates(candidates, existing, similarity_threshold=DEFAULT_SIMILARITY_THRESHOLD):
    by_date_amount = {}
    for record in (dict(row) for row in existing):
        key = (record["date"], int(record["amount_cents"]))
        by_date_amount.setdefault(key, []).append(record)

    matches = []
    for index, candidate in enumerate(candidates):
        key = (candidate["date"], int(candidate["amount_cents"]))
        best = None
        for record in by_date_amount.get(key, []):
            similarity = description_similarity(candidate.get("description"), record.get("description"))
            if similarity == 100.0:
                best = DuplicateMatch(index, record, similarity)
                break
            if similarity >= similarity_threshold and best is None:
                best = DuplicateMatch(index, record, similarity)
        if best is not None:
            matches.append(best)
    return matches


def duplicate_flags(candidates, existing, similarity_threshold=DEFAULT_SIMILARITY_THRESHOLD):
    flagged = {match.index for match in find_duplicates(candidates, existing, similarity_threshold)}
    return [index in flagged for index in range(len(candidates))]
