"""Temporal and monetary query parsing.

Turns raw query text into a concrete date range, an amount range and a
routing decision. Pure and deterministic for a given `now`; no I/O.
"""

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from src.contracts.rag_search_v1 import AmountRange, DateRange, RoutingStrategy, TemporalIntent
from src.core.config import config

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sep": 9, "sept": 9, "october": 10,
    "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_MONTH = r"(?P<month>january|february|march|april|may|june|july|august|september|sept|october|november|december|jan|feb|mar|apr|jun|jul|aug|sep|oct|nov|dec)"
_UNIT = r"(?P<unit>minutes?|hours?|days?|weeks?|months?)"
_DOC = r"(?:receipts?|purchases?|expenses?)"

_FILLER_WORDS = frozenset({"show", "me", "all", "list", "find", "get", "give"})
_STOP_WORDS = frozenset(
    {"and", "or", "the", "for", "with", "from", "all", "my", "in", "on", "at", "of", "within", "during", "past"}
)
# Generic document nouns: present in most queries, carry no semantic signal.
_DOCUMENT_NOUNS = frozenset(
    {"receipt", "receipts", "purchase", "purchases", "expense", "expenses", "transaction", "transactions"}
)
_CURRENCY_WORDS = frozenset({"rm", "myr", "usd", "ringgit", "dollar", "dollars"})
_TOKEN = re.compile(r"[^\W_]+")


def shift_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    year, month = divmod(index, 12)
    month += 1
    last = _last_day_of_month(year, month)
    return date(year, month, min(day.day, last))


def _last_day_of_month(year: int, month: int) -> int:
    if month == 12:
        return 31
    return (date(year, month + 1, 1) - timedelta(days=1)).day


def _monday(day: date) -> date:
    return day - timedelta(days=day.weekday())


def _back(now: datetime, amount: int, unit: str) -> date:
    unit = unit.rstrip("s")
    if unit == "minute":
        return (now - timedelta(minutes=amount)).date()
    if unit == "hour":
        return (now - timedelta(hours=amount)).date()
    if unit == "week":
        return now.date() - timedelta(weeks=amount)
    if unit == "month":
        return shift_months(now.date(), -amount)
    return now.date() - timedelta(days=amount)


def _count(raw: str) -> int:
    return 1 if raw in ("a", "one") else int(raw)


# ---------------------------------------------------------------------------
# Date handlers: (match, now) -> DateRange
# ---------------------------------------------------------------------------


def _single(day: date) -> DateRange:
    return DateRange(start=day, end=day)


def _today(m: re.Match, now: datetime) -> DateRange:
    return _single(now.date())


def _yesterday(m: re.Match, now: datetime) -> DateRange:
    return _single(now.date() - timedelta(days=1))


def _this_week(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=_monday(now.date()), end=now.date())


def _last_week(m: re.Match, now: datetime) -> DateRange:
    start = _monday(now.date()) - timedelta(days=7)
    return DateRange(start=start, end=start + timedelta(days=6))


def _this_month(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=now.date().replace(day=1), end=now.date())


def _last_month(m: re.Match, now: datetime) -> DateRange:
    first_this = now.date().replace(day=1)
    end = first_this - timedelta(days=1)
    return DateRange(start=end.replace(day=1), end=end)


def _this_year(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=date(now.year, 1, 1), end=now.date())


def _last_year(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=date(now.year - 1, 1, 1), end=date(now.year - 1, 12, 31))


def _recent(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=now.date() - timedelta(days=7), end=now.date())


def _named_day(m: re.Match, now: datetime) -> DateRange:
    """"june 27" or "27 june"; a date that would lie in the future means last year."""
    month = _MONTHS[m.group("month")]
    day = int(m.group("day"))
    year_raw = m.groupdict().get("year")
    if year_raw:
        return _single(date(int(year_raw), month, day))
    target = date(now.year, month, day)
    if target > now.date():
        target = date(now.year - 1, month, day)
    return _single(target)


def _named_month(m: re.Match, now: datetime) -> DateRange:
    month = _MONTHS[m.group("month")]
    year_raw = m.groupdict().get("year")
    year = int(year_raw) if year_raw else now.year
    if not year_raw and date(year, month, 1) > now.date():
        year -= 1
    return DateRange(start=date(year, month, 1), end=date(year, month, _last_day_of_month(year, month)))


def _iso_day(m: re.Match, now: datetime) -> DateRange:
    return _single(date.fromisoformat(m.group("a")))


def _iso_range(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=date.fromisoformat(m.group("a")), end=date.fromisoformat(m.group("b")))


def _last_n(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=_back(now, _count(m.group("n")), m.group("unit")), end=now.date())


def _from_n_ago(m: re.Match, now: datetime) -> DateRange:
    return DateRange(start=_back(now, _count(m.group("n")), m.group("unit")), end=now.date())


def _exact_n_ago(m: re.Match, now: datetime) -> DateRange:
    return _single(_back(now, _count(m.group("n")), m.group("unit")))


def _period_phrase(m: re.Match, now: datetime) -> DateRange:
    phrase = " ".join(m.group("period").split())
    handler = {
        "last week": _last_week,
        "this week": _this_week,
        "last month": _last_month,
        "this month": _this_month,
    }.get(phrase, _recent)
    return handler(m, now)


def _malay(m: re.Match, now: datetime) -> DateRange:
    phrase = " ".join(m.group(0).split())
    if phrase == "hari ini":
        return _today(m, now)
    if phrase == "semalam":
        return _yesterday(m, now)
    if phrase == "minggu lepas":
        return _last_week(m, now)
    return _last_month(m, now)


@dataclass(frozen=True)
class _TemporalPattern:
    regex: re.Pattern[str]
    handler: Callable[[re.Match, datetime], DateRange]
    priority: int
    hybrid_capable: bool = True
    open_ended: bool = False


def _p(pattern: str, handler, priority: int, **kw) -> _TemporalPattern:
    return _TemporalPattern(re.compile(pattern, re.IGNORECASE), handler, priority, **kw)


_PERIOD = r"(?P<period>last\s+week|this\s+week|last\s+month|this\s+month)"

# Lower priority number wins; within one priority the earlier entry wins.
TEMPORAL_PATTERNS: tuple[_TemporalPattern, ...] = (
    _p(r"\b(?P<a>\d{4}-\d{2}-\d{2})\s*(?:to|until|-|–)\s*(?P<b>\d{4}-\d{2}-\d{2})\b", _iso_range, 0),
    _p(r"\b(?P<a>\d{4}-\d{2}-\d{2})\b", _iso_day, 0),
    _p(rf"\bon\s+(?P<day>\d{{1,2}})\s+{_MONTH}(?:\s+(?P<year>\d{{4}}))?\b", _named_day, 0),
    _p(rf"\bon\s+{_MONTH}\s+(?P<day>\d{{1,2}})(?:\s*,?\s+(?P<year>\d{{4}}))?\b", _named_day, 0),
    _p(r"\b(?:today|today's)(?:\s+" + _DOC + r")?\b", _today, 1),
    _p(r"\b(?:yesterday|yesterday's)(?:\s+" + _DOC + r")?\b", _yesterday, 1),
    _p(rf"\b(?:find|get|show|give)\s+(?:me\s+)?(?:all\s+)?{_DOC}\s+(?:from|in|during)\s+{_PERIOD}\b", _period_phrase, 1),
    _p(rf"\bfrom\s+(?P<n>\d+|a|one)\s+{_UNIT}\s+(?:ago|back)\b", _from_n_ago, 1, open_ended=True),
    _p(rf"\bfrom\s+{_MONTH}\s+(?P<day>\d{{1,2}})\b", _named_day, 1),
    _p(rf"\b{_MONTH}\s+(?P<day>\d{{1,2}})\b", _named_day, 1),
    _p(r"\b(?:last|past)\s+(?P<n>hour|minute)\b", lambda m, now: _single(now.date()), 1),
    _p(rf"\b{_DOC}\s+(?:from|in|during)\s+{_PERIOD}\b", _period_phrase, 2),
    _p(r"\b(?:this|current)\s+week\b", _this_week, 2),
    _p(r"\b(?:last|previous)\s+week\b", _last_week, 2),
    _p(r"\b(?:this|current)\s+month\b", _this_month, 2),
    _p(r"\b(?:last|previous)\s+month\b", _last_month, 2),
    _p(r"\b(?:this|current)\s+year\b", _this_year, 2),
    _p(r"\b(?:last|previous)\s+year\b", _last_year, 2),
    _p(rf"\b(?P<n>\d+|a|one)\s+{_UNIT}\s+(?:ago|back)\b", _exact_n_ago, 2),
    _p(r"\b(?:hari\s+ini|semalam|minggu\s+lepas|bulan\s+lepas)\b", _malay, 2),
    _p(rf"\b(?:recent|latest|last)\s+{_DOC}\b", _recent, 2, hybrid_capable=False),
    _p(rf"\b(?:within|in)\s+the\s+(?:last|past)\s+(?P<n>\d+)\s+{_UNIT}\b", _last_n, 3),
    _p(rf"\b(?:last|past)\s+(?P<n>\d+)\s+{_UNIT}\b", _last_n, 3),
    _p(rf"\b(?:in|from|during)\s+{_MONTH}(?:\s+(?P<year>\d{{4}}))?\b", _named_month, 3),
    _p(rf"\b(?:recent|latest)\s+[a-z\s]+?\s+{_DOC}\b", _recent, 4),
)


# ---------------------------------------------------------------------------
# Amount patterns
# ---------------------------------------------------------------------------

_CUR = r"(?:\$|rm|myr|usd)"
_NUM = r"\d+(?:,\d{3})*(?:\.\d{1,2})?"
_CUR_SUFFIX = r"(?:\s*(?P<suffix>usd|myr|rm|dollars?|ringgit))?"

_AMOUNT_BETWEEN = re.compile(
    rf"\bbetween\s+(?P<c1>{_CUR})?\s*(?P<a>{_NUM})\s+and\s+(?P<c2>{_CUR})?\s*(?P<b>{_NUM}){_CUR_SUFFIX}\b",
    re.IGNORECASE,
)
_AMOUNT_RANGE = re.compile(
    rf"(?<![\w.-])(?P<c1>{_CUR})?\s*(?P<a>{_NUM})\s*(?:to|-|–)\s*(?P<c2>{_CUR})?\s*(?P<b>{_NUM}){_CUR_SUFFIX}\b(?![-/])",
    re.IGNORECASE,
)
_AMOUNT_OVER = re.compile(
    rf"\b(?:over|above|more\s+than|greater\s+than)\s*(?P<c1>{_CUR})?\s*(?P<a>{_NUM}){_CUR_SUFFIX}\b",
    re.IGNORECASE,
)
_AMOUNT_UNDER = re.compile(
    rf"\b(?:under|below|less\s+than|cheaper\s+than)\s*(?P<c1>{_CUR})?\s*(?P<a>{_NUM}){_CUR_SUFFIX}\b",
    re.IGNORECASE,
)


def _currency(match: re.Match, default_currency: str) -> str:
    tokens = [match.groupdict().get(k) for k in ("c1", "c2", "suffix")]
    for token in tokens:
        if not token:
            continue
        token = token.lower()
        if token in ("rm", "myr", "ringgit"):
            return "MYR"
        if token == "usd":
            return "USD"
    return default_currency


def _amount(raw: str) -> float:
    return float(raw.replace(",", ""))


def parse_amount(text: str, default_currency: str) -> tuple[AmountRange | None, str | None]:
    """Return (amount range, matched phrase). Explicit ranges first, then over/under."""
    for regex in (_AMOUNT_BETWEEN, _AMOUNT_RANGE):
        m = regex.search(text)
        if m:
            low, high = sorted((_amount(m.group("a")), _amount(m.group("b"))))
            return (
                AmountRange(
                    min=low,
                    max=high,
                    currency=_currency(m, default_currency),
                    min_inclusive=True,
                    max_inclusive=True,
                ),
                m.group(0),
            )
    m = _AMOUNT_OVER.search(text)
    if m:
        return AmountRange(min=_amount(m.group("a")), currency=_currency(m, default_currency)), m.group(0)
    m = _AMOUNT_UNDER.search(text)
    if m:
        return AmountRange(max=_amount(m.group("a")), currency=_currency(m, default_currency)), m.group(0)
    return None, None


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedTemporalQuery:
    original_query: str
    temporal_intent: TemporalIntent
    date_range: DateRange | None = None
    amount_range: AmountRange | None = None
    query_type: str = "general"
    confidence: float = 0.5
    semantic_terms: list[str] = field(default_factory=list)
    matched_phrase: str | None = None

    @property
    def routing_strategy(self) -> RoutingStrategy:
        return self.temporal_intent.routing_strategy

    @property
    def has_filters(self) -> bool:
        return self.date_range is not None or self.amount_range is not None


def extract_semantic_terms(text: str, *phrases: str | None) -> list[str]:
    """Residual content words once temporal/monetary phrases are removed."""
    cleaned = text.lower()
    for phrase in phrases:
        if phrase:
            cleaned = cleaned.replace(phrase.lower(), " ")
    terms: list[str] = []
    for token in _TOKEN.findall(cleaned):
        if len(token) <= 2 or token.isdigit():
            continue
        if token in _FILLER_WORDS or token in _STOP_WORDS:
            continue
        if token in _DOCUMENT_NOUNS or token in _CURRENCY_WORDS:
            continue
        if token not in terms:
            terms.append(token)
    return terms


def reference_now(now: datetime | None) -> datetime:
    if now is not None:
        return now
    try:
        tz = ZoneInfo(config.user_timezone)
    except (ZoneInfoNotFoundError, ValueError):
        tz = ZoneInfo("UTC")
    return datetime.now(tz)


def _match_date(text: str, now: datetime) -> tuple[DateRange, re.Match, _TemporalPattern] | None:
    candidates: list[tuple[int, int, re.Match, _TemporalPattern]] = []
    for order, pattern in enumerate(TEMPORAL_PATTERNS):
        m = pattern.regex.search(text)
        if m:
            candidates.append((pattern.priority, order, m, pattern))
    candidates.sort(key=lambda c: (c[0], c[1]))
    for _, _, m, pattern in candidates:
        try:
            date_range = pattern.handler(m, now)
        except (ValueError, OverflowError):
            # e.g. "feb 31" or an absurd offset; try the next candidate.
            continue
        return date_range.ordered(), m, pattern
    return None


def parse_temporal_query(
    query: str,
    now: datetime | None = None,
    default_currency: str | None = None,
) -> ParsedTemporalQuery:
    """Classify a query into date range, amount range and routing strategy."""
    text = " ".join((query or "").lower().split())
    reference = reference_now(now)
    currency = (default_currency or config.default_currency).upper()

    query_type = "general"
    confidence = 0.5
    date_range: DateRange | None = None
    date_phrase: str | None = None
    pattern: _TemporalPattern | None = None

    matched = _match_date(text, reference)
    if matched is not None:
        date_range, m, pattern = matched
        date_phrase = m.group(0)
        query_type = "temporal"
        confidence += 0.3

    residual = text.replace(date_phrase, " ") if date_phrase else text
    amount_range, amount_phrase = parse_amount(residual, currency)

    terms = extract_semantic_terms(text, date_phrase, amount_phrase)
    has_semantic = bool(terms)

    if date_range is not None and pattern is not None:
        hybrid = (has_semantic and pattern.hybrid_capable) or pattern.open_ended
        if hybrid:
            strategy = RoutingStrategy.HYBRID_TEMPORAL_SEMANTIC
            query_type = "hybrid_temporal"
            confidence += 0.2
        elif has_semantic:
            strategy = RoutingStrategy.SEMANTIC_ONLY
        else:
            strategy = RoutingStrategy.DATE_FILTER_ONLY
        intent = TemporalIntent(
            is_temporal_query=True,
            has_semantic_content=has_semantic or pattern.open_ended,
            routing_strategy=strategy,
            temporal_confidence=0.8,
            semantic_terms=terms,
        )
    else:
        intent = TemporalIntent(
            is_temporal_query=False,
            has_semantic_content=has_semantic,
            routing_strategy=RoutingStrategy.SEMANTIC_ONLY,
            temporal_confidence=0.8 if amount_range is not None else 0.0,
            semantic_terms=terms,
        )

    if amount_range is not None:
        query_type = "amount" if query_type == "general" else "mixed"
        confidence += 0.3

    return ParsedTemporalQuery(
        original_query=query,
        temporal_intent=intent,
        date_range=date_range,
        amount_range=amount_range,
        query_type=query_type,
        confidence=min(1.0, confidence),
        semantic_terms=terms,
        matched_phrase=date_phrase,
    )
