"""Smart suggestions for a date filter that emptied a non-empty candidate set."""

from collections import Counter
from datetime import date, timedelta

from src.contracts.rag_search_v1 import (
    DateAnalysis,
    DateRange,
    DateSuggestion,
    SmartSuggestions,
    UnifiedSearchResult,
)
from src.orchestrators.rag.filters import result_date
from src.orchestrators.rag.temporal_parser import shift_months

MAX_SUGGESTIONS = 3


def _count_in(histogram: Counter[date], date_range: DateRange) -> int:
    return sum(n for day, n in histogram.items() if date_range.contains(day))


def _distance(day: date, date_range: DateRange) -> int:
    if day < date_range.start:
        return (date_range.start - day).days
    if day > date_range.end:
        return (day - date_range.end).days
    return 0


def analyze_available_dates(results: list[UnifiedSearchResult], requested: DateRange) -> DateAnalysis:
    histogram: Counter[date] = Counter()
    for result in results:
        day = result_date(result)
        if day is not None:
            histogram[day] += 1
    if not histogram:
        return DateAnalysis()

    earliest, latest = min(histogram), max(histogram)
    first_of_month = latest.replace(day=1)
    latest_month = DateRange(
        start=first_of_month,
        end=shift_months(first_of_month, 1) - timedelta(days=1),
    )
    nearest = min(histogram, key=lambda d: (_distance(d, requested), d))
    monday = nearest - timedelta(days=nearest.weekday())
    nearest_week = DateRange(start=monday, end=monday + timedelta(days=6))
    span = DateRange(start=earliest, end=latest)

    suggestions: list[DateSuggestion] = []
    seen: set[tuple[date, date]] = set()
    candidates = (
        ("latest_month", latest_month.start.strftime("%B %Y"), latest_month),
        ("nearest_week", f"the week of {monday.isoformat()}", nearest_week),
        ("full_span", f"{earliest.isoformat()} to {latest.isoformat()}", span),
    )
    for kind, label, date_range in candidates:
        key = (date_range.start, date_range.end)
        if key in seen:
            continue
        seen.add(key)
        suggestions.append(
            DateSuggestion(
                kind=kind,
                label=label,
                date_range=date_range,
                receipt_count=_count_in(histogram, date_range),
            )
        )

    return DateAnalysis(
        available_dates={d.isoformat(): n for d, n in sorted(histogram.items())},
        earliest=earliest,
        latest=latest,
        total_receipts=sum(histogram.values()),
        suggestions=suggestions[:MAX_SUGGESTIONS],
    )


def zero_results_message(requested: DateRange, analysis: DateAnalysis) -> str:
    period = f"{requested.start.isoformat()} to {requested.end.isoformat()}"
    if not analysis.suggestions or analysis.earliest is None or analysis.latest is None:
        return f"No results found for {period}."
    best = analysis.suggestions[0]
    return (
        f"No results found for {period}. Your matching documents are dated between "
        f"{analysis.earliest.isoformat()} and {analysis.latest.isoformat()}; "
        f"try {best.label} ({best.receipt_count} found)."
    )


def build_smart_suggestions(results: list[UnifiedSearchResult], requested: DateRange) -> SmartSuggestions:
    analysis = analyze_available_dates(results, requested)
    return SmartSuggestions(
        date_analysis=analysis,
        follow_up_suggestions=[f"Show results from {s.label}" for s in analysis.suggestions],
        enhanced_message=zero_results_message(requested, analysis),
    )
