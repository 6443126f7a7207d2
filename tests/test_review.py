import io

from rich.console import Console

import filmweb_export as fe
from conftest import make_record


def matched(source_id, title, confidence, duration=117):
    record = make_record(source_id=source_id, title=title)
    record.match = fe.ResolvedMatch(
        confidence=confidence,
        candidate=fe.MatchCandidate(f"tt{source_id:07d}", title, duration, "broad"),
        query_title=title,
    )
    return record


def test_only_pending_matches_are_asked_in_title_order():
    records = [
        matched(1, "Zorro", fe.CONFIDENCE_NEEDS_REVIEW),
        matched(2, "Amadeus", fe.CONFIDENCE_CONFIRMED),
        matched(3, "bambi", fe.CONFIDENCE_NEEDS_REVIEW),
        make_record(source_id=4, title="Nothing"),
    ]
    asked = []

    def decide(record):
        asked.append(record.canonical_title)
        return record.canonical_title == "Zorro"

    summary = fe.review_matches(records, decide)

    assert asked == ["bambi", "Zorro"]
    assert summary == fe.ReviewSummary(confirmed=1, rejected=1)
    assert records[0].match.confidence == fe.CONFIDENCE_CONFIRMED
    assert records[2].match.confidence == fe.CONFIDENCE_NOT_FOUND
    assert records[2].match.candidate is None


def test_console_decider_reprompts_until_yes_or_no():
    console = Console(file=io.StringIO(), width=200)
    decider = fe.ConsoleDecider(console, stream=io.StringIO("maybe\nYes\n"))

    assert decider(matched(1, "Seksmisja", fe.CONFIDENCE_NEEDS_REVIEW)) is True
    output = console.file.getvalue()
    assert "https://www.imdb.com/title/tt0000001/" in output
    assert "Please answer y or n." in output


def test_console_decider_defaults_to_no():
    console = Console(file=io.StringIO(), width=200)
    assert fe.ConsoleDecider(console, stream=io.StringIO("\n"))(matched(1, "A", fe.CONFIDENCE_NEEDS_REVIEW)) is False
    # exhausted input
    assert fe.ConsoleDecider(console, stream=io.StringIO(""))(matched(1, "A", fe.CONFIDENCE_NEEDS_REVIEW)) is False


def test_build_decider_modes():
    console = Console(file=io.StringIO())
    record = matched(1, "A", fe.CONFIDENCE_NEEDS_REVIEW)
    assert fe.build_decider("accept", console)(record) is True
    assert fe.build_decider("reject", console)(record) is False
    assert isinstance(fe.build_decider("ask", console), fe.ConsoleDecider)
