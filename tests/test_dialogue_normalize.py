from voxline.dialogue.normalize import (
    canonicalize,
    comparison_key,
    normalize_quotes_and_dashes,
    strip_quotes,
)


def test_canonicalize_trims_and_collapses_whitespace():
    assert canonicalize("  Hello \t there\n  friend ") == "Hello there friend"


def test_canonicalize_preserves_case_and_punctuation():
    assert canonicalize("Stop right THERE, criminal scum!") == "Stop right THERE, criminal scum!"


def test_comparison_key_is_case_insensitive():
    assert comparison_key("Hello There") == comparison_key("hELLO   there")


def test_comparison_key_maps_typographic_quotes():
    assert comparison_key("“It’s you” — again") == comparison_key('"it\'s you" - again')


def test_normalize_quotes_and_dashes():
    assert normalize_quotes_and_dashes("‘a’ “b” c–d e—f") == "'a' \"b\" c-d e-f"


def test_strip_quotes_removes_single_and_double():
    assert strip_quotes("“Don’t,” he said") == "Dont, he said"
