from __future__ import annotations

import re
from datetime import date, datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from integrationhub.core.errors import TransformValidationError
from integrationhub.services.transforms.engine import TransformRegistry


# Named date patterns accepted by date_format.from / date_format.to.
DATE_FORMATS: dict[str, str] = {
    "DD/MM/YYYY": "%d/%m/%Y",
    "MM/DD/YYYY": "%m/%d/%Y",
    "YYYY-MM-DD": "%Y-%m-%d",
    "DD/MM/YYYY HH:mm": "%d/%m/%Y %H:%M",
    "YYYY-MM-DD HH:mm:ss": "%Y-%m-%d %H:%M:%S",
}
ISO8601 = "ISO8601"

# Gematria values, final letter forms included.
HEBREW_LETTER_VALUES: dict[str, int] = {
    "א": 1, "ב": 2, "ג": 3, "ד": 4, "ה": 5, "ו": 6, "ז": 7, "ח": 8, "ט": 9,
    "י": 10, "כ": 20, "ך": 20, "ל": 30, "מ": 40, "ם": 40, "נ": 50, "ן": 50,
    "ס": 60, "ע": 70, "פ": 80, "ף": 80, "צ": 90, "ץ": 90,
    "ק": 100, "ר": 200, "ש": 300, "ת": 400,
}

_NIKUD = re.compile("[\u0591-\u05C7]")
_LEADING_NUMBER = re.compile(r"^\s*([+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)")
_JS_GROUP_REF = re.compile(r"\$(\d+)")
_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def _param(params: dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in params:
            return params[name]
    return default


def _require_str(value: Any, transform_type: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"{transform_type} transform requires string input")
    return value


def trim(value: Any, params: dict[str, Any]) -> str:
    return _require_str(value, "trim").strip()


def uppercase(value: Any, params: dict[str, Any]) -> str:
    return _require_str(value, "uppercase").upper()


def lowercase(value: Any, params: dict[str, Any]) -> str:
    return _require_str(value, "lowercase").lower()


def replace(value: Any, params: dict[str, Any]) -> str:
    text = _require_str(value, "replace")
    pattern = params["pattern"]
    replacement = str(params["replacement"])
    if not _param(params, "use_regex", "useRegex", default=False):
        return text.replace(str(pattern), replacement)
    flags_spec = str(_param(params, "regex_flags", "regexFlags", default="g"))
    flags = 0
    for flag in flags_spec:
        flags |= _REGEX_FLAGS.get(flag, 0)
    try:
        compiled = re.compile(str(pattern), flags)
    except re.error as exc:
        raise TransformValidationError(f"invalid regex pattern: {exc}", {"pattern": pattern}) from exc
    # Accept $1-style group references alongside Python's \1.
    python_replacement = _JS_GROUP_REF.sub(r"\\g<\1>", replacement)
    return compiled.sub(python_replacement, text, count=0 if "g" in flags_spec else 1)


def truncate(value: Any, params: dict[str, Any]) -> str:
    text = _require_str(value, "truncate")
    max_length = _param(params, "max_length", "maxLength")
    if isinstance(max_length, bool) or not isinstance(max_length, int) or max_length <= 0:
        raise TransformValidationError("truncate transform requires positive max_length parameter")
    return text[:max_length]


def hebrew_reverse(value: Any, params: dict[str, Any]) -> str:
    # Legacy ERPs without RTL support expect visual order.
    return _require_str(value, "hebrew_reverse")[::-1]


def strip_nikud(value: Any, params: dict[str, Any]) -> str:
    return _NIKUD.sub("", _require_str(value, "strip_nikud"))


def hebrew_numbers(value: Any, params: dict[str, Any]) -> str:
    text = _require_str(value, "hebrew_numbers")
    return str(sum(HEBREW_LETTER_VALUES.get(char, 0) for char in text))


def parse_date(text: str, fmt: str) -> datetime:
    if fmt == ISO8601:
        return datetime.fromisoformat(text.strip())
    pattern = DATE_FORMATS.get(fmt)
    if pattern is None:
        raise ValueError(f"unsupported date format: {fmt}")
    return datetime.strptime(text.strip(), pattern)


def format_date(value: datetime, fmt: str) -> str:
    if fmt == ISO8601:
        return value.isoformat(timespec="seconds")
    pattern = DATE_FORMATS.get(fmt)
    if pattern is None:
        raise ValueError(f"unsupported date format: {fmt}")
    return value.strftime(pattern)


def date_format(value: Any, params: dict[str, Any]) -> str:
    text = _require_str(value, "date_format")
    source_fmt, target_fmt = params["from"], params["to"]
    for fmt in (source_fmt, target_fmt):
        if fmt != ISO8601 and fmt not in DATE_FORMATS:
            raise TransformValidationError(
                f"unsupported date format: {fmt}",
                {"supported_formats": [ISO8601, *DATE_FORMATS]},
            )
    try:
        parsed = parse_date(text, source_fmt)
    except ValueError as exc:
        raise ValueError(f"date format conversion failed: {exc}") from exc
    return format_date(parsed, target_fmt)


def date_add(value: Any, params: dict[str, Any]) -> str:
    text = _require_str(value, "date_add")
    days = params["days"]
    if isinstance(days, bool) or not isinstance(days, int):
        raise TransformValidationError("date_add transform requires integer days parameter")
    try:
        parsed = parse_date(text, "YYYY-MM-DD")
    except ValueError as exc:
        raise ValueError(f"date add failed: {exc}") from exc
    return format_date(parsed + timedelta(days=days), "YYYY-MM-DD")


def date_now(value: Any, params: dict[str, Any]) -> str:
    fmt = _param(params, "format", default="YYYY-MM-DD")
    today = date.today()
    return format_date(datetime(today.year, today.month, today.day), fmt)


def to_number(value: Any, params: dict[str, Any] | None = None) -> int | float:
    if isinstance(value, bool):
        raise TypeError("to_number transform requires string or number input")
    if isinstance(value, (int, float)):
        return value
    if not isinstance(value, str):
        raise TypeError("to_number transform requires string or number input")
    match = _LEADING_NUMBER.match(value)
    if match is None:
        raise ValueError(f'cannot convert "{value}" to number')
    token = match.group(1)
    number = float(token)
    if number.is_integer() and re.fullmatch(r"[+-]?\d+", token):
        return int(token)
    return number


def round_number(value: Any, params: dict[str, Any]) -> int | float:
    number = to_number(value)
    decimals = params["decimals"]
    if isinstance(decimals, bool) or not isinstance(decimals, int):
        raise TransformValidationError("round transform requires integer decimals parameter")
    try:
        quantized = Decimal(str(number)).quantize(Decimal(1).scaleb(-decimals), rounding=ROUND_HALF_UP)
    except InvalidOperation as exc:
        raise ValueError(f"cannot round {number!r}") from exc
    if decimals <= 0:
        return int(quantized)
    return float(quantized)


def currency(value: Any, params: dict[str, Any]) -> str:
    number = to_number(value)
    symbol = params.get("symbol") or "$"
    return f"{symbol}{number:,.2f}"


def _lookup_key(value: Any) -> str:
    # Match keys the way JSON-configured maps spell them.
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def map_value(value: Any, params: dict[str, Any]) -> Any:
    values = params["values"]
    if not isinstance(values, dict):
        raise TransformValidationError("map transform requires values object")
    key = _lookup_key(value)
    if key not in values:
        raise KeyError(f'value "{key}" not found in map; available: {", ".join(map(str, values))}')
    return values[key]


def conditional(value: Any, params: dict[str, Any]) -> Any:
    condition = params["if"]
    if not isinstance(condition, dict) or "equals" not in condition:
        raise TransformValidationError('conditional transform only supports the "equals" condition')
    return params["then"] if value == condition["equals"] else params["else"]


def register_builtins(registry: TransformRegistry) -> TransformRegistry:
    registry.register("trim", trim)
    registry.register("uppercase", uppercase)
    registry.register("lowercase", lowercase)
    registry.register("replace", replace, ("pattern", "replacement"))
    registry.register("truncate", truncate, (("max_length", "maxLength"),))
    registry.register("hebrew_reverse", hebrew_reverse)
    registry.register("strip_nikud", strip_nikud)
    registry.register("hebrew_numbers", hebrew_numbers)
    registry.register("date_format", date_format, ("from", "to"))
    registry.register("date_add", date_add, ("days",))
    registry.register("date_now", date_now)
    registry.register("to_number", to_number)
    registry.register("round", round_number, ("decimals",))
    registry.register("currency", currency)
    registry.register("map", map_value, ("values",))
    registry.register("conditional", conditional, ("if", "then", "else"))
    return registry
