from household_budget.categorize import (
    NEW_CATEGORY_NAME,
    CategoryMatch,
    clean_merchant_name,
    extract_merchant_name,
    match_categories,
    match_category,
    suggest_category_name,
)


def test_suggest_category_name_uses_first_keyword_in_order():
    assert suggest_category_name("Shell Gas Station #4421") == "Gas"
    assert suggest_category_name("STARBUCKS STORE 00123") == "Coffee"
    # "amazon prime" is listed before "amazon"
    assert suggest_category_name("AMAZON PRIME VIDEO") == "Entertainment"
    assert suggest_category_name("AMAZON MKTPLACE") == "Shopping"


def test_suggest_category_name_cleans_unknown_merchants():
    assert suggest_category_name("ACME Plumbing LLC #552") == "Acme Plumbing"
    assert clean_merchant_name("joe's  hardware-store Inc") == "Joes Hardware-store"


def test_suggest_category_name_falls_back_for_bad_lengths():
    assert suggest_category_name("") == NEW_CATEGORY_NAME
    assert suggest_category_name("XY 1234") == NEW_CATEGORY_NAME
    assert suggest_category_name("Zqv " * 10) == NEW_CATEGORY_NAME


def test_extract_merchant_name_strips_payment_processors():
    assert extract_merchant_name("PAYPAL *SPOTIFYAB 4029357733") == "spotifyab 4029357733"
    assert extract_merchant_name("DD *DOORDASH BURGER PLACE") == "doordash burger"
    assert extract_merchant_name("   ") == ""


def test_match_category_prefers_keywords_over_history():
    keywords = [{"keyword": "corner", "category_id": "cat-keyword"}]
    patterns = [{"merchant_name": "corner store", "category_id": "cat-history"}]

    match = match_category("CORNER STORE 22", keywords, patterns)

    assert match == CategoryMatch("cat-keyword", "keyword", "high")


def test_match_category_uses_history_exact_then_partial():
    patterns = [
        {"merchant_name": "blue bottle", "category_id": "cat-partial"},
        {"merchant_name": "blue bottle coffee", "category_id": "cat-other"},
    ]

    exact = match_category("Blue Bottle #3", patterns=[{"merchant_name": "blue bottle", "category_id": "cat-exact"}])
    partial = match_category("BLUE BOTTLECO", patterns=patterns)

    assert exact.to_dict() == {"category_id": "cat-exact", "match_type": "historical", "confidence": "medium"}
    assert partial.category_id == "cat-partial"


def test_match_category_without_signal_is_low_confidence():
    match = match_category("UNKNOWN VENDOR", keywords=[], patterns=[])

    assert match.category_id is None
    assert match.match_type == "none"
    assert match.confidence == "low"


def test_match_categories_keeps_input_order():
    keywords = [{"keyword": "rent", "category_id": "housing"}]

    matches = match_categories(["Monthly RENT", "Other"], keywords)

    assert [match.category_id for match in matches] == ["housing", None]
