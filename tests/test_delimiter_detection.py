from tabular_ingest.domain.imports.processors.delimiter import (
    count_outside_quotes,
    detect_delimiter,
    detect_file_delimiter,
)


def test_detects_comma():
    lines = ["name,age,city", "John,25,New York", "Jane,30,Boston"]

    assert detect_delimiter(lines) == ","


def test_detects_semicolon():
    lines = ["name;age;city", "John;25;New York", "Jane;30;Boston", "Bob;35;Chicago"]

    assert detect_delimiter(lines) == ";"


def test_detects_tab():
    lines = ["name\tage\tcity", "John\t25\tNew York", "Jane\t30\tBoston"]

    assert detect_delimiter(lines) == "\t"


def test_ignores_delimiters_inside_quotes():
    lines = [
        "name;age;city",
        '"John, Doe";25;"New York, NY"',
        '"Jane; Smith";30;Boston',
        "Bob;35;Chicago",
    ]

    assert detect_delimiter(lines) == ";"


def test_quoted_commas_do_not_outvote_semicolons():
    # Two commas per line, all quoted; semicolons are the real separator
    lines = ['"a,b,c";x', '"d,e,f";y', '"g,h,i";z']

    assert detect_delimiter(lines) == ";"


def test_count_handles_doubled_quotes():
    assert count_outside_quotes('"say ""hi"", ok",2,3', ",") == 2
    assert count_outside_quotes("'it''s, fine',2", ",") == 1


def test_defaults_to_comma_for_empty_input():
    assert detect_delimiter([]) == ","
    assert detect_delimiter(["", "   "]) == ","


def test_defaults_to_comma_without_any_candidate():
    assert detect_delimiter(["just text", "more text"]) == ","


def test_ties_are_broken_by_total_occurrences():
    # Both are perfectly consistent; semicolon appears more often
    lines = ["a,b;c;d", "e,f;g;h"]

    assert detect_delimiter(lines) == ";"


def test_only_first_five_lines_are_sampled():
    lines = ["a;b;c"] * 5 + ["a,b,c,d,e,f,g"] * 50

    assert detect_delimiter(lines) == ";"


def test_is_deterministic():
    lines = ["id|name;x,y", "1|a;b,c", "2|d;e,f"]

    results = {detect_delimiter(list(lines)) for _ in range(10)}

    assert len(results) == 1


def test_detect_file_delimiter_reads_file(write_file):
    path = write_file("data.csv", "a;b;c\n1;2;3\n4;5;6\n")

    assert detect_file_delimiter(path) == ";"


def test_detect_file_delimiter_falls_back_for_missing_file(tmp_path):
    assert detect_file_delimiter(str(tmp_path / "missing.csv")) == ","


def test_ragged_semicolons_fall_back_to_comma():
    # Comma never occurs, so its all-zero counts are the most consistent
    assert detect_delimiter(["a;b", "c;d;e"]) == ","


def test_ragged_candidate_loses_to_consistent_one():
    lines = ["a;b,c", "d;e;f,g", "h,i"]

    assert detect_delimiter(lines) == ","
