"""
Series Builder

Groups transactions into candidate recurring-charge series, one per
(normalized merchant key, account).

Normalization has to make "NETFLIX.COM*1A2B3" and "NETFLIX.COM*4C5D6"
the same merchant, while keeping "GOOGLE *YOUTUBE" apart from
"GOOGLE *STORAGE". Pure transform, no I/O.
"""

import re
from collections import defaultdict
from typing import Iterable, Optional

from recurwatch.models.transaction import CandidateSeries, Transaction


# Wallet and payment-processor prefixes that say nothing about the merchant
_PREFIX_PATTERN = re.compile(
    r"^(?:(?:APLPAY|APPLEPAY|APPLE PAY)\s+|(?:SQ|SP|TST|PAYPAL|PP)\s*\*\s*)"
)

# A token that looks like a reference number: has a digit, no spaces
_REFERENCE_TOKEN = re.compile(r"^[A-Z]*\d[A-Z0-9\-/.:]*$")

# Store or reference number glued to the last word (HULU1234)
_GLUED_DIGITS = re.compile(r"(?<=[A-Z])\d{3,}$")

_TRAILING_PUNCTUATION = " .,-_*/#:;"


def normalize_merchant(description: str) -> str:
    """
    Derive the merchant key from a raw bank description.

    Rules, in order:
    1. Fold to upper case
    2. Strip wallet/processor prefixes (APLPAY, SQ *, TST*, PAYPAL * ...)
    3. Drop trailing "*" segments that carry a digit (reference codes)
    4. Drop "#" markers and trailing reference-number tokens
    5. Collapse whitespace and trailing punctuation

    An unparsable description falls back to its raw (upper-cased) text,
    and a blank one to "UNKNOWN", so every transaction gets a key.
    """
    raw = " ".join((description or "").split()).upper()
    if not raw:
        return "UNKNOWN"

    text = raw
    while True:
        stripped = _PREFIX_PATTERN.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped

    if "*" in text:
        segments = [s.strip() for s in text.split("*")]
        while len(segments) > 1 and (not segments[-1] or re.search(r"\d", segments[-1])):
            segments.pop()
        text = " ".join(s for s in segments if s)

    text = text.replace("#", " ")

    tokens = text.split()
    while len(tokens) > 1 and _REFERENCE_TOKEN.match(tokens[-1]):
        tokens.pop()
    text = " ".join(tokens)

    text = _GLUED_DIGITS.sub("", text)
    text = " ".join(text.split()).rstrip(_TRAILING_PUNCTUATION)

    return text or raw


def build_series(
    transactions: Iterable[Transaction],
    account_id: Optional[int] = None,
) -> list[CandidateSeries]:
    """
    Group expense transactions into candidate series.

    Archived transactions and credits (amount >= 0) are skipped. If
    account_id is given, only that account's transactions are used.

    Returns:
        One series per (merchant key, account), sorted by key then
        account; each series is sorted ascending by date.
    """
    groups: dict[tuple[str, int], list[Transaction]] = defaultdict(list)

    for txn in transactions:
        if txn.archived or not txn.is_expense:
            continue
        if account_id is not None and txn.account_id != account_id:
            continue
        groups[(normalize_merchant(txn.description), txn.account_id)].append(txn)

    return [
        CandidateSeries(merchant_key=key, account_id=account, transactions=tuple(txns))
        for (key, account), txns in sorted(groups.items())
    ]
