"""One-off pricing for a single translation.

All amounts are in cents. The word count is estimated from the file size when
the caller does not know it.
"""

import math
from typing import Any

from doc_translator.schemas import FileRecord, PriceQuote

MB = 1024 * 1024

CURRENCY = "usd"
BASE_PRICE = 500
PER_WORD_CENTS = 2
PER_PAGE_CENTS = 200
AVG_BYTES_PER_WORD = 5

# (threshold in bytes, surcharge in cents), largest first
SIZE_SURCHARGES = ((10 * MB, 300), (5 * MB, 150))


def _clamp(value: Any) -> int:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return 0
    if not math.isfinite(parsed) or parsed < 0:
        return 0
    return int(parsed)


def estimate_words_from_size(file_size: int) -> int:
    if not file_size:
        return 0
    return file_size // AVG_BYTES_PER_WORD


def size_surcharge(file_size: int) -> int:
    for threshold, surcharge in SIZE_SURCHARGES:
        if file_size > threshold:
            return surcharge
    return 0


def calculate_one_off_price(word_count: Any = None, page_count: Any = None, file_size: Any = 0) -> PriceQuote:
    size = _clamp(file_size)
    words = _clamp(word_count) or estimate_words_from_size(size)
    pages = _clamp(page_count)

    word_cost = words * PER_WORD_CENTS
    page_cost = pages * PER_PAGE_CENTS
    surcharge = size_surcharge(size)
    amount = max(BASE_PRICE, BASE_PRICE + word_cost + page_cost + surcharge)

    return PriceQuote(
        amount=amount,
        currency=CURRENCY,
        breakdown={
            "base_price": BASE_PRICE,
            "word_cost": word_cost,
            "page_cost": page_cost,
            "large_file_surcharge": surcharge,
            "word_count": words,
            "page_count": pages,
        },
    )


def quote_for_file(file: FileRecord, word_count: int | None = None) -> PriceQuote:
    return calculate_one_off_price(word_count=word_count, page_count=file.page_count, file_size=file.file_size)
