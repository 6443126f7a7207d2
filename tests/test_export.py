import csv

import filmweb_export as fe
from conftest import make_record


def confirmed(source_id, category=fe.CATEGORY_FILM, rating=None, external_id=None, confidence=fe.CONFIDENCE_CONFIRMED):
    record = make_record(source_id=source_id, title=f"Title {source_id}", category=category, rating=rating)
    record.match = fe.ResolvedMatch(
        confidence=confidence,
        candidate=fe.MatchCandidate(external_id or f"tt{source_id:07d}", f"IMDb {source_id}", 118),
    )
    return record


def read_rows(path):
    with path.open(encoding="utf-8", newline="") as handle:
        return list(csv.reader(handle))


def test_export_bucket():
    assert fe.export_bucket(make_record(rating=fe.UserRating(7, False))) == fe.BUCKET_GENERIC
    assert fe.export_bucket(make_record(rating=fe.UserRating(9, True))) == fe.BUCKET_FAVORITED
    assert fe.export_bucket(make_record(rating=None)) == fe.BUCKET_WANT2SEE


def test_build_export_row():
    row = fe.build_export_row(confirmed(86311, rating=fe.UserRating(8, False)))
    assert len(row) == len(fe.EXPORT_HEADER) == 13
    assert row[0] == "tt0086311"
    assert row[1] == "8"
    assert row[3] == "IMDb 86311"
    assert row[4] == "https://www.imdb.com/title/tt0086311/"
    assert row[5] == "movie"
    assert row[7] == "118"
    assert row[8] == "1984"

    watch = fe.build_export_row(confirmed(5, category=fe.CATEGORY_WANT2SEE))
    assert watch[1] == fe.NO_VOTE


def test_sink_writes_confirmed_titles_once_per_file(tmp_path):
    sink = fe.ExportSink(tmp_path / "out")
    sink.open()
    try:
        assert sink.write(confirmed(1, rating=fe.UserRating(7, False)))
        assert not sink.write(confirmed(2, rating=fe.UserRating(6, False), external_id="tt0000001"))
        assert sink.write(confirmed(3, rating=fe.UserRating(10, True)))
        assert sink.write(confirmed(4, category=fe.CATEGORY_WANT2SEE))
        assert not sink.write(confirmed(5, rating=fe.UserRating(5, False), confidence=fe.CONFIDENCE_NEEDS_REVIEW))
        assert not sink.write(make_record(source_id=6))
    finally:
        sink.close()

    out = tmp_path / "out"
    generic = read_rows(out / "generic.csv")
    assert generic[0] == list(fe.EXPORT_HEADER)
    assert [row[0] for row in generic[1:]] == ["tt0000001"]
    assert [row[0] for row in read_rows(out / "favorited.csv")[1:]] == ["tt0000003"]
    want2see = read_rows(out / "want2see.csv")
    assert [(row[0], row[1]) for row in want2see[1:]] == [("tt0000004", "no.vote")]
    assert sink.written == {"generic": 1, "favorited": 1, "want2see": 1}


def test_not_found_file(tmp_path):
    sink = fe.ExportSink(tmp_path)
    assert sink.write_not_found([make_record(source_id=9, title="Rejs", year=1970)]) == 1
    rows = read_rows(tmp_path / "not_found.csv")
    assert rows[1] == ["9", "Rejs", "1970", "film", "https://www.filmweb.pl/film/9"]
