import re
from dataclasses import dataclass


NEW_CATEGORY_NAME = "New Category"
MIN_SUGGESTED_NAME_LENGTH = 3
MAX_SUGGESTED_NAME_LENGTH = 30

# Scanned top to bottom; the first keyword contained in the description wins.
MERCHANT_KEYWORDS = [
    ("shell", "Gas"),
    ("chevron", "Gas"),
    ("exxon", "Gas"),
    ("mobil", "Gas"),
    ("bp", "Gas"),
    ("arco", "Gas"),
    ("texaco", "Gas"),
    ("gasbuddy", "Gas"),
    ("fuel", "Gas"),
    ("76", "Gas"),
    ("safeway", "Groceries"),
    ("walmart", "Groceries"),
    ("target", "Groceries"),
    ("costco", "Groceries"),
    ("whole foods", "Groceries"),
    ("trader joe", "Groceries"),
    ("kroger", "Groceries"),
    ("albertsons", "Groceries"),
    ("publix", "Groceries"),
    ("aldi", "Groceries"),
    ("food lion", "Groceries"),
    ("wegmans", "Groceries"),
    ("heb", "Groceries"),
    ("market", "Groceries"),
    ("starbucks", "Coffee"),
    ("dunkin", "Coffee"),
    ("peet", "Coffee"),
    ("mcdonald", "Dining"),
    ("burger king", "Dining"),
    ("wendy", "Dining"),
    ("taco bell", "Dining"),
    ("chipotle", "Dining"),
    ("subway", "Dining"),
    ("panera", "Dining"),
    ("domino", "Dining"),
    ("pizza hut", "Dining"),
    ("restaurant", "Dining"),
    ("cafe", "Dining"),
    ("bar & grill", "Dining"),
    ("bistro", "Dining"),
    ("uber", "Transportation"),
    ("lyft", "Transportation"),
    ("transit", "Transportation"),
    ("parking", "Parking"),
    ("netflix", "Entertainment"),
    ("spotify", "Entertainment"),
    ("hulu", "Entertainment"),
    ("disney", "Entertainment"),
    ("hbo", "Entertainment"),
    ("amazon prime", "Entertainment"),
    ("youtube", "Entertainment"),
    ("cinema", "Entertainment"),
    ("theater", "Entertainment"),
    ("amc", "Entertainment"),
    ("amazon", "Shopping"),
    ("ebay", "Shopping"),
    ("etsy", "Shopping"),
    ("cvs", "Pharmacy"),
    ("walgreens", "Pharmacy"),
    ("rite aid", "Pharmacy"),
    ("pharmacy", "Pharmacy"),
    ("gym", "Fitness"),
    ("fitness", "Fitness"),
    ("electric", "Utilities"),
    ("power", "Utilities"),
    ("water", "Utilities"),
    ("internet", "Utilities"),
    ("phone", "Utilities"),
]

LEGAL_SUFFIX_RE = re.compile(r"\b(LLC|Inc|Corp|Ltd|Co|Company)\b", re.IGNORECASE)
STORE_NUMBER_RE = re.compile(r"#?\d+")
NON_LETTER_RE = re.compile(r"[^a-zA-Z\s-]")
PAYMENT_PROCESSOR_RE = re.compile(r"^(PAYPAL \*|KLARNA\*|DD \*)", re.IGNORECASE)


@dataclass(frozen=True)
class CategoryMatch:
    category_id: object = None
    match_type: str = "none"
    confidence: str = "low"

    def to_dict(self):
        return {
            "category_id": self.category_id,
            "match_type": self.match_type,
            "confidence": self.confidence,
        }


def clean_merchant_name(description):
    cleaned = LEGAL_SUFFIX_RE.sub("", description or "")
    cleaned = STORE_NUMBER_RE.sub("", cleaned)
    cleaned = NON_LETTER_RE.sub("", cleaned)
    cleaned = re.sub(r"\s+", " ", cleaned).strip()
    return " ".join(word[:1].upper() + word[1:].lower() for word in cleaned.split(" "))


def suggest_category_name(description):
    lower_desc = (description or "").lower()
    for keyword, category_name in MERCHANT_KEYWORDS:
        if keyword in lower_desc:
            return category_name

    cleaned = clean_merchant_name(description)
    if not MIN_SUGGESTED_NAME_LENGTH <= len(cleaned) <= MAX_SUGGESTED_NAME_LENGTH:
        return NEW_CATEGORY_NAME
    return cleaned


def extract_merchant_name(description):
    cleaned = PAYMENT_PROCESSOR_RE.sub("", (description or "").strip())
    parts = [part for part in re.split(r"[\s-]+", cleaned) if part]
    return " ".join(parts[:2]).strip().lower()


def _match_by_keyword(description, keywords):
    normalized = (description or "").lower()
    for keyword in keywords:
        if keyword["keyword"] and keyword["keyword"] in normalized:
            return keyword["category_id"]
    return None


def _match_by_history(description, patterns):
    merchant_name = extract_merchant_name(description)
    if not merchant_name:
        return None

    for pattern in patterns:
        if pattern["merchant_name"].lower() == merchant_name:
            return pattern["category_id"]

    for pattern in patterns:
        learned = pattern["merchant_name"].lower()
        if learned and (learned in merchant_name or merchant_name in learned):
            return pattern["category_id"]
    return None


def match_category(description, keywords=(), patterns=()):
    category_id = _match_by_keyword(description, keywords)
    if category_id:
        return CategoryMatch(category_id, "keyword", "high")

    category_id = _match_by_history(description, patterns)
    if category_id:
        return CategoryMatch(category_id, "historical", "medium")

    return CategoryMatch()


def match_categories(descriptions, keywords=(), patterns=()):
    keywords = list(keywords)
    patterns = list(patterns)
    return [match_category(description, keywords, patterns) for description in descriptions]
