"""Output record model, field validation and sink normalization."""

from __future__ import annotations

import logging
import numbers
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping
from urllib.parse import quote, unquote, urlparse

LOGGER = logging.getLogger(__name__)

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_PRICE_STRING_RE = re.compile(r"^(\.*[0-9])+$")
_EARLIEST_DATE = date(1990, 1, 1)
# Characters left untouched by encodeURI-style encoding.
_URL_SAFE_CHARS = ";,/?:@&=+$-_.!~*'()#"


class RecordKind(str, Enum):
    """Which sink schema a crawler's records belong to."""

    WHOLESALE = "data"
    RETAIL = "merchandise"

    @property
    def label(self) -> str:
        return "retail" if self is RecordKind.RETAIL else "wholesale"


MANDATORY_FIELDS = ("product", "country", "date", "type", "page_url", "unit", "currency", "prices")
OPTIONAL_FIELDS = ("region", "grade", "variety", "origin")


def is_valid_product(product: Any) -> bool:
    return isinstance(product, str) and bool(product.strip())


def validate_date(value: Any, *, reference: date | None = None) -> tuple[bool, list[str]]:
    """Return whether ``value`` is a ``YYYY-MM-DD`` date after 1990-01-01 and not in the future."""

    if not isinstance(value, str):
        return False, ["Date is not a string"]
    if not _DATE_RE.match(value):
        return False, [f"Date format is wrong: {value}"]
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError:
        return False, [f"Date is invalid: {value}"]
    if parsed > (reference or date.today()):
        return False, [f"Date must not be in the future: {value}"]
    if parsed <= _EARLIEST_DATE:
        return False, [f"Date must be after {_EARLIEST_DATE.isoformat()}: {value}"]
    return True, []


def is_valid_type(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 1


def is_valid_page_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def is_valid_unit(value: Any) -> bool:
    return isinstance(value, str)


def is_valid_currency(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 3


def is_valid_country(value: Any) -> bool:
    return isinstance(value, str) and len(value) == 2


def is_valid_price(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, numbers.Real):
        number = float(value)
    elif isinstance(value, str) and _PRICE_STRING_RE.match(value):
        try:
            number = float(value)
        except ValueError:
            return False
    else:
        return False
    return number == number and number > 0


def validate_prices(prices: Mapping[str, Any] | None) -> tuple[bool, list[str]]:
    """A price group is valid when the average, or both bounds, are valid."""

    prices = prices or {}
    price_avg = prices.get("price_avg")
    price_min = prices.get("price_min")
    price_max = prices.get("price_max")
    avg_ok = is_valid_price(price_avg)
    min_ok = is_valid_price(price_min)
    max_ok = is_valid_price(price_max)
    if avg_ok or (min_ok and max_ok):
        return True, []

    messages: list[str] = []
    if not avg_ok:
        messages.append(f"Invalid price_avg: [{price_avg}]")
    if not min_ok:
        messages.append(f"Invalid price_min: [{price_min}]")
    if not max_ok:
        messages.append(f"Invalid price_max: [{price_max}]")
    return False, messages


_FIELD_VALIDATORS = {
    "product": is_valid_product,
    "country": is_valid_country,
    "type": is_valid_type,
    "page_url": is_valid_page_url,
    "unit": is_valid_unit,
    "currency": is_valid_currency,
}


@dataclass(slots=True)
class PriceRecord:
    """One normalized wholesale price observation."""

    product: str | None = None
    country: str | None = None
    date: str | None = None
    type: str | None = None
    page_url: str | None = None
    unit: str | None = None
    currency: str | None = None
    prices: dict[str, Any] = field(default_factory=dict)
    region: str | None = None
    grade: str | None = None
    variety: str | None = None
    origin: str | None = None

    def validation_errors(self, *, reference: date | None = None) -> list[str]:
        errors: list[str] = []
        for name in MANDATORY_FIELDS:
            value = getattr(self, name)
            if not value:
                errors.append(f"Missing {name}")
                continue
            if name == "date":
                ok, messages = validate_date(value, reference=reference)
                errors.extend(messages if not ok else [])
            elif name == "prices":
                ok, messages = validate_prices(value)
                errors.extend(messages if not ok else [])
            elif not _FIELD_VALIDATORS[name](value):
                errors.append(f"Invalid {name}: [{value}]")
        return errors

    def is_valid(self, *, reference: date | None = None) -> bool:
        errors = self.validation_errors(reference=reference)
        if errors:
            LOGGER.debug("Invalid record %s: %s", self.product, "; ".join(errors))
            return False
        return True

    def valid_prices(self) -> dict[str, Any]:
        prices: dict[str, Any] = {}
        price_avg = self.prices.get("price_avg")
        price_min = self.prices.get("price_min")
        price_max = self.prices.get("price_max")
        if is_valid_price(price_avg):
            prices["price_avg"] = price_avg
        if is_valid_price(price_min) and is_valid_price(price_max):
            prices["price_min"] = price_min
            prices["price_max"] = price_max
        return prices

    def to_data(self) -> dict[str, Any]:
        data: dict[str, Any] = dict(self.valid_prices())
        data.update(
            product=self.product,
            country=self.country,
            page_url=self.page_url,
            currency=self.currency,
            date=self.date,
            type=self.type,
            unit=self.unit,
        )
        for name in OPTIONAL_FIELDS:
            value = getattr(self, name)
            if value:
                data[name] = value
        return data

    def defined_values(self, *, required_only: bool = False) -> dict[str, Any]:
        names = MANDATORY_FIELDS if required_only else MANDATORY_FIELDS + OPTIONAL_FIELDS
        return {name: getattr(self, name) for name in names if getattr(self, name)}

    def defined_fields(self, *, required_only: bool = False) -> list[str]:
        return list(self.defined_values(required_only=required_only))

    def missing_fields(self) -> list[str]:
        defined = self.defined_values()
        return [name for name in MANDATORY_FIELDS + OPTIONAL_FIELDS if name not in defined]

    def missing_required_fields(self) -> list[str]:
        defined = self.defined_values(required_only=True)
        return [name for name in MANDATORY_FIELDS if name not in defined]


class RecordFactory:
    """Build records from per-source defaults overlaid with explicit values."""

    _PRICE_KEYS = ("price_min", "price_avg", "price_max")

    def __init__(self, defaults: Mapping[str, Any] | None = None) -> None:
        self._defaults = dict(defaults or {})

    def create(self, **values: Any) -> PriceRecord:
        merged = {**self._defaults, **{key: value for key, value in values.items() if value is not None}}
        prices = dict(merged.pop("prices", None) or {})
        for key in self._PRICE_KEYS:
            if key in merged:
                prices[key] = merged.pop(key)
        unknown = set(merged) - set(MANDATORY_FIELDS) - set(OPTIONAL_FIELDS)
        if unknown:
            raise TypeError(f"Unknown record fields: {', '.join(sorted(unknown))}")
        return PriceRecord(prices=prices, **merged)


def is_valid_entry(entry: Mapping[str, Any], *, reference: date | None = None) -> bool:
    """Validate a flat record mapping as produced by HTML parsers."""

    known = set(MANDATORY_FIELDS) | set(OPTIONAL_FIELDS) | set(RecordFactory._PRICE_KEYS)
    values = {key: value for key, value in entry.items() if key in known}
    return RecordFactory().create(**values).is_valid(reference=reference)


def round_price(value: Any) -> Any:
    """Round fractional prices to 9 decimals; whole prices pass through untouched."""

    if value is None or isinstance(value, bool):
        return value
    try:
        number = float(value)
    except (TypeError, ValueError):
        return value
    if number % 1:
        return round(number, 9)
    return value


def encode_page_url(url: Any) -> Any:
    if not isinstance(url, str):
        return url
    if url == unquote(url):
        return quote(url, safe=_URL_SAFE_CHARS)
    return url


_WHOLESALE_KEYS = {
    "product": "productRaw",
    "variety": "varietyRaw",
    "grade": "gradeRaw",
    "unit": "unitRaw",
    "region": "regionRaw",
    "origin": "originRaw",
    "country": "countryId",
    "type": "type",
    "page_url": "pageUrl",
    "image_url": "imageUrl",
    "date": "date",
    "currency": "currency",
    "price_min": "priceMin",
    "price_max": "priceMax",
    "price_avg": "priceAvg",
    "memo": "memo",
    "volume": "volume",
    "volume_unit": "volumeUnit",
}
_RETAIL_KEYS = {
    "category": "category",
    "currency": "currency",
    "country": "countryId",
    "name": "name",
    "image_url": "imageUrl",
    "date": "date",
    "origin": "origin",
    "region": "region",
    "original_price": "originalPrice",
    "page_url": "pageUrl",
    "price": "price",
    "unit": "unit",
}


def normalize_for_sink(
    record: PriceRecord | Mapping[str, Any],
    source_id: Any,
    run_hash: str,
    kind: RecordKind = RecordKind.WHOLESALE,
) -> dict[str, Any]:
    """Convert a buffered record into the sink's wire payload."""

    data = record.to_data() if isinstance(record, PriceRecord) else dict(record)
    for key in ("price_min", "price_max", "price_avg", "price", "original_price"):
        if key in data:
            data[key] = round_price(data[key])
    if "page_url" in data:
        data["page_url"] = encode_page_url(data["page_url"])

    key_map = _RETAIL_KEYS if kind is RecordKind.RETAIL else _WHOLESALE_KEYS
    payload: dict[str, Any] = {"sourceId": source_id, "hash": run_hash}
    for key, wire_key in key_map.items():
        if key in data and data[key] is not None:
            payload[wire_key] = data[key]
    return payload


def record_date(record: PriceRecord | Mapping[str, Any]) -> str | None:
    if isinstance(record, PriceRecord):
        return record.date
    value = record.get("date")
    return value if isinstance(value, str) else None
